"""
Composition root for the pipeline.

A PipelineRuntime bundles every collaborator the stages, workers and views
need. The indexing AppConfig builds one lazily from settings; tests build
their own from fakes and install it with set_runtime().
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import redis
from django.apps import apps
from django.conf import settings

from apps.docs.storage import BlobStore, build_blob_store
from apps.indexing.builder import default_workspace_root
from apps.indexing.chunker import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE
from apps.indexing.embedder import Embedder, build_embedding_client
from apps.indexing.locks import LockManager
from apps.indexing.progress import PROGRESS_TTL_SECONDS, ProgressStore
from apps.indexing.publisher import publish_snapshot
from apps.indexing.queue import JobQueue
from apps.rag.llm_client import BaseLLMClient, build_llm_client
from apps.rag.loader import ArtifactLoader

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    redis: redis.Redis
    blobs: BlobStore
    locks: LockManager
    progress: ProgressStore
    queue: JobQueue
    embedder: Embedder
    artifacts: ArtifactLoader
    upload_bucket: str
    index_bucket: str
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    workspace_root: Optional[Path] = None
    llm: Optional[BaseLLMClient] = None

    def get_llm(self) -> BaseLLMClient:
        """The LLM client, built on first use so workers never need one."""
        if self.llm is None:
            self.llm = build_llm_client()
        return self.llm


def build_runtime() -> PipelineRuntime:
    """Build a runtime from Django settings."""
    client = redis.Redis.from_url(settings.REDIS_URL)
    blobs = build_blob_store()
    index_bucket = getattr(settings, 'INDEX_BUCKET', 'indexes')

    runtime = PipelineRuntime(
        redis=client,
        blobs=blobs,
        locks=LockManager(client),
        progress=ProgressStore(
            client,
            ttl_seconds=int(getattr(settings, 'PROGRESS_TTL_SECONDS', PROGRESS_TTL_SECONDS)),
            publish=publish_snapshot,
        ),
        queue=JobQueue(),
        embedder=Embedder(build_embedding_client()),
        artifacts=ArtifactLoader(blobs, index_bucket),
        upload_bucket=getattr(settings, 'UPLOAD_BUCKET', 'uploads'),
        index_bucket=index_bucket,
        chunk_size=int(getattr(settings, 'CHUNK_SIZE', DEFAULT_CHUNK_SIZE)),
        chunk_overlap=int(getattr(settings, 'CHUNK_OVERLAP', DEFAULT_CHUNK_OVERLAP)),
        workspace_root=default_workspace_root(),
    )
    logger.info(
        f"Pipeline runtime ready: embeddings={runtime.embedder.model}, "
        f"chunk_size={runtime.chunk_size}, overlap={runtime.chunk_overlap}"
    )
    return runtime


def get_runtime() -> PipelineRuntime:
    return apps.get_app_config('indexing').runtime


def set_runtime(runtime: Optional[PipelineRuntime]) -> None:
    """Install a runtime (or None to rebuild from settings on next use)."""
    apps.get_app_config('indexing').runtime = runtime
