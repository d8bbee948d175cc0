"""
Django settings for TenderIndex backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',')
]

# Application definition
INSTALLED_APPS = [
    'daphne',  # ASGI server for Channels
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'channels',
    'apps.authn',
    'apps.docs',
    'apps.indexing',
    'apps.rag',
    'apps.usage',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Database
# Using environment variable for database URL
DATABASE_URL = os.getenv('DATABASE_URL', '')
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
            }
        }
    else:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.sqlite3',
                'NAME': BASE_DIR / 'db.sqlite3',
            }
        }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Redis
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')

# =============================================================================
# Django Channels (WebSocket Support)
# =============================================================================
CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels_redis.core.RedisChannelLayer',
        'CONFIG': {
            'hosts': [REDIS_URL],
        },
    },
}

# =============================================================================
# Blob storage
# =============================================================================
# "local" writes under BLOB_ROOT, "s3" uses boto3 with the S3_* settings
BLOB_BACKEND = os.getenv('BLOB_BACKEND', 'local')
BLOB_ROOT = Path(os.getenv('BLOB_ROOT', '/data/blobs'))
UPLOAD_BUCKET = os.getenv('UPLOAD_BUCKET', 'uploads')
INDEX_BUCKET = os.getenv('INDEX_BUCKET', 'indexes')

S3_REGION = os.getenv('S3_REGION', '') or None
S3_ENDPOINT_URL = os.getenv('S3_ENDPOINT_URL', '')

# Maximum upload size in bytes (50MB default)
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', 50 * 1024 * 1024))

# Files beyond this many archive entries are skipped
MAX_ARCHIVE_ENTRIES = int(os.getenv('MAX_ARCHIVE_ENTRIES', '2000'))

# Scratch directory for artifact builds
INDEX_WORKSPACE_ROOT = Path(os.getenv('INDEX_WORKSPACE_ROOT', '/tmp/tenderindex-workspace'))

# =============================================================================
# Pipeline
# =============================================================================
CHUNK_SIZE = int(os.getenv('CHUNK_SIZE', '1024'))
CHUNK_OVERLAP = int(os.getenv('CHUNK_OVERLAP', '160'))
EMBED_BATCH_SIZE = int(os.getenv('EMBED_BATCH_SIZE', '128'))

# Lock TTLs in milliseconds
STAGE_LOCK_TTL_MS = int(os.getenv('STAGE_LOCK_TTL_MS', '60000'))
INDEX_LOCK_TTL_MS = int(os.getenv('INDEX_LOCK_TTL_MS', str(30 * 60 * 1000)))
PROGRESS_TTL_SECONDS = int(os.getenv('PROGRESS_TTL_SECONDS', str(12 * 60 * 60)))

# Job queue retries
JOB_MAX_ATTEMPTS = int(os.getenv('JOB_MAX_ATTEMPTS', '3'))
JOB_BACKOFF_BASE_SECONDS = float(os.getenv('JOB_BACKOFF_BASE_SECONDS', '2'))
JOB_STALL_TIMEOUT_SECONDS = int(os.getenv('JOB_STALL_TIMEOUT_SECONDS', str(35 * 60)))

# A tender is PARTIAL once this share of its documents is READY
PARTIAL_READY_THRESHOLD = min(1.0, float(os.getenv('PARTIAL_READY_THRESHOLD', '0.2')))

# =============================================================================
# Retrieval
# =============================================================================
RETRIEVAL_TOP_K = int(os.getenv('RETRIEVAL_TOP_K', '8'))
MAX_ARTIFACT_CACHE_ENTRIES = int(os.getenv('MAX_ARTIFACT_CACHE_ENTRIES', '5'))
MAX_ARTIFACT_CACHE_BYTES = int(os.getenv('MAX_ARTIFACT_CACHE_BYTES', str(512 * 1024 * 1024)))

# =============================================================================
# Embedding and LLM providers
# =============================================================================
# openai | ollama | fallback
EMBEDDING_PROVIDER = os.getenv('EMBEDDING_PROVIDER', 'fallback')
EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'text-embedding-3-small')
EMBEDDING_TIMEOUT = int(os.getenv('EMBEDDING_TIMEOUT', '60'))

# openai | ollama
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'openai')

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://api.openai.com')
OPENAI_CHAT_MODEL = os.getenv('OPENAI_CHAT_MODEL', 'gpt-4o-mini')
OPENAI_TIMEOUT = int(os.getenv('OPENAI_TIMEOUT', '120'))

OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
OLLAMA_EMBED_MODEL = os.getenv('OLLAMA_EMBED_MODEL', 'nomic-embed-text')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'gemma:7b')

# LLM Timeout settings (in seconds) - increase for slower hardware
OLLAMA_CHAT_TIMEOUT = int(os.getenv('OLLAMA_CHAT_TIMEOUT', '600'))  # 10 min
OLLAMA_EMBED_TIMEOUT = int(os.getenv('OLLAMA_EMBED_TIMEOUT', '120'))  # 2 min

# =============================================================================
# Plans
# =============================================================================
PLAN_ENFORCEMENT_ENABLED = os.getenv('PLAN_ENFORCEMENT_ENABLED', 'True').lower() in ('true', '1', 'yes')

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.authn': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.indexing': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.usage': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
