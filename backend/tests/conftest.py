"""
Shared fixtures: an in-process pipeline runtime backed by fakeredis, a
temporary blob store, deterministic fallback embeddings and a scripted LLM.
"""
from typing import List, Optional

import fakeredis
import pytest

from apps.docs.storage import LocalBlobStore
from apps.indexing.embedder import Embedder
from apps.indexing.locks import LockManager
from apps.indexing.models import JobKind
from apps.indexing.progress import ProgressStore
from apps.indexing.queue import JobQueue
from apps.indexing.runtime import PipelineRuntime, set_runtime
from apps.indexing.stages import build_stages
from apps.indexing.worker import run_job
from apps.rag.llm_client import BaseLLMClient, LLMMessage, LLMResponse
from apps.rag.loader import ArtifactLoader

UPLOAD_BUCKET = 'uploads'
INDEX_BUCKET = 'indexes'


class FakeLLM(BaseLLMClient):
    """Returns a fixed reply (or raises a fixed error) and records every call."""

    def __init__(self, reply: str = "The deadline is 12 May [1].", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[List[LLMMessage]] = []

    def chat(self, messages, temperature=0.2, max_tokens=500):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.reply, model=self.model_name)

    @property
    def model_name(self) -> str:
        return 'fake-llm'


@pytest.fixture(autouse=True)
def in_memory_channel_layer(settings):
    settings.CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis()
    yield client
    client.flushall()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(root=tmp_path / 'blobs')


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def runtime(redis_client, blobs, tmp_path, fake_llm):
    """A small-chunk runtime: 20 character windows, 5 characters of overlap."""
    return PipelineRuntime(
        redis=redis_client,
        blobs=blobs,
        locks=LockManager(redis_client),
        progress=ProgressStore(redis_client, publish=None),
        queue=JobQueue(max_attempts=3, backoff_base=0),
        embedder=Embedder(None, batch_size=4),
        artifacts=ArtifactLoader(blobs, INDEX_BUCKET),
        upload_bucket=UPLOAD_BUCKET,
        index_bucket=INDEX_BUCKET,
        chunk_size=20,
        chunk_overlap=5,
        workspace_root=tmp_path / 'workspace',
        llm=fake_llm,
    )


@pytest.fixture
def installed_runtime(runtime):
    """The runtime above, returned by get_runtime() for the duration of a test."""
    set_runtime(runtime)
    yield runtime
    set_runtime(None)


@pytest.fixture
def org_headers():
    return {'HTTP_X_ORG_ID': 'org-1', 'HTTP_X_USER_ID': 'user-1'}


def claim_next(runtime):
    for kind in JobKind:
        job = runtime.queue.claim(kind.value)
        if job is not None:
            return job
    return None


def drain(runtime, limit: int = 200) -> int:
    """
    Run queued jobs in-process until the queue is empty.

    Jobs are claimed and run directly rather than through the worker pool,
    which recycles database connections between jobs.
    """
    stages = build_stages(runtime)
    processed = 0
    while processed < limit:
        job = claim_next(runtime)
        if job is None:
            break
        run_job(stages, runtime.queue, job)
        processed += 1
    return processed
