"""
Error taxonomy for the ingestion pipeline.

Stages raise one of these so the worker can decide between a queue-level
retry and a permanent failure:

- InputError: corrupt or unsupported payloads. Permanent.
- ProviderError: embedding / LLM provider failures. Retried by the queue.
- InfrastructureError: storage or lock store unreachable. Retried by the queue.
- ConsistencyError: checksum or docHash mismatch. Permanent, never auto-repaired.
"""

# Maximum length of an error message recorded on a Document / Upload / Artifact
MAX_ERROR_LENGTH = 500


class PipelineError(Exception):
    """Base class for pipeline failures."""
    permanent = False


class InputError(PipelineError):
    """The document itself cannot be processed."""
    permanent = True


class ProviderError(PipelineError):
    """An outbound model provider failed."""


class InfrastructureError(PipelineError):
    """Storage or coordination backend failed."""


class ConsistencyError(PipelineError):
    """Stored data does not match what was expected."""
    permanent = True


def is_permanent(error: Exception) -> bool:
    """True if retrying the job cannot help."""
    return bool(getattr(error, 'permanent', False))


def truncate_error(error) -> str:
    """Human-readable error text capped at MAX_ERROR_LENGTH characters."""
    message = str(error) or error.__class__.__name__
    return message[:MAX_ERROR_LENGTH]
