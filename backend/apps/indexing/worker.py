"""
Stage worker pool - processes pipeline jobs.

One thread per concurrency slot per job kind. Each thread:
1. Claims the next queued job of its kind (SELECT FOR UPDATE SKIP LOCKED)
2. Decodes the tagged payload and runs the stage handler
3. Completes the job, or records the failure for a backoff retry
4. Runs the stage's failure hook once a job is dead

Run as: python manage.py run_worker [--stage KIND] [--once]
"""
import time
import signal
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from django.conf import settings
from django.db import close_old_connections

from apps.indexing.errors import is_permanent
from apps.indexing.locks import start_eviction_policy_check
from apps.indexing.models import JobKind, PipelineJob
from apps.indexing.payloads import decode_payload
from apps.indexing.queue import stage_concurrency
from apps.indexing.stages import Stage, build_stages

logger = logging.getLogger(__name__)

# Configuration
POLL_INTERVAL = 2  # seconds between job checks
JOB_STALL_TIMEOUT_SECONDS = 35 * 60  # beyond the longest lock TTL
STALL_CHECK_INTERVAL = 60
HEARTBEAT_FILE = '/tmp/worker_heartbeat'


def touch_heartbeat():
    """Touch heartbeat file for health checks."""
    try:
        Path(HEARTBEAT_FILE).touch()
    except OSError as e:
        logger.warning(f"Failed to update heartbeat: {e}")


def run_job(stages: Dict[str, Stage], queue, job: PipelineJob) -> bool:
    """
    Run one claimed job to completion or failure.

    Returns:
        True if the job completed, False if it failed (retry or dead)
    """
    stage = stages[job.kind]
    payload = None
    try:
        payload = decode_payload(job.kind, job.payload)
        stage.run(payload, priority=job.priority)
    except Exception as e:
        logger.exception(f"{job.kind} job {job.job_key} raised")
        dead = queue.fail(job, e, permanent=is_permanent(e))
        if dead and payload is not None:
            try:
                stage.on_failure(payload, e)
            except Exception:
                logger.exception(f"Failure hook of {job.kind} job {job.job_key} raised")
        return False

    queue.complete(job)
    return True


class StageWorkerPool:
    """
    Threads claiming and running jobs for a set of stage kinds.

    The runtime supplies the queue and everything the stage handlers need.
    """

    def __init__(self, runtime, kinds: Optional[Iterable[str]] = None, poll_interval: float = POLL_INTERVAL):
        self.runtime = runtime
        self.queue = runtime.queue
        self.stages = build_stages(runtime)
        self.kinds: List[str] = list(kinds) if kinds else [k.value for k in JobKind]
        self.poll_interval = poll_interval
        self.stall_timeout = float(getattr(settings, 'JOB_STALL_TIMEOUT_SECONDS', JOB_STALL_TIMEOUT_SECONDS))
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._last_stall_check = 0.0
        self._stall_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def run_once(self, kind: Optional[str] = None) -> bool:
        """
        Claim and run at most one job.

        Returns:
            True if a job was processed, False if none was available
        """
        for candidate in ([kind] if kind else self.kinds):
            close_old_connections()
            job = self.queue.claim(candidate)
            if job is None:
                continue
            try:
                run_job(self.stages, self.queue, job)
            finally:
                close_old_connections()
            return True
        return False

    def _maybe_requeue_stalled(self) -> None:
        now = time.monotonic()
        with self._stall_lock:
            if now - self._last_stall_check < STALL_CHECK_INTERVAL:
                return
            self._last_stall_check = now
        self.queue.requeue_stalled(self.stall_timeout)

    def _loop(self, kind: str) -> None:
        logger.info(f"Worker thread for {kind} started")
        while not self._stop.is_set():
            try:
                self._maybe_requeue_stalled()
                processed = self.run_once(kind)
                touch_heartbeat()
            except Exception as e:
                logger.exception(f"Error in {kind} worker loop: {e}")
                close_old_connections()
                self._stop.wait(self.poll_interval * 2)
                continue

            if not processed:
                self._stop.wait(self.poll_interval)
        close_old_connections()
        logger.info(f"Worker thread for {kind} stopped")

    def start(self) -> None:
        start_eviction_policy_check(self.runtime.redis)
        for kind in self.kinds:
            for slot in range(stage_concurrency(kind)):
                thread = threading.Thread(
                    target=self._loop,
                    args=(kind,),
                    name=f"worker-{kind}-{slot}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} worker thread(s) for {', '.join(self.kinds)}")

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def run(self) -> None:
        """Run until SIGINT or SIGTERM."""
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        self.start()
        while not self._stop.is_set():
            self._stop.wait(1.0)
        self.join(timeout=30)
        logger.info("Worker stopped")
