import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

from . import config
from .utils import params_signature

logger = logging.getLogger(__name__)


class JobQueueError(Exception):
    """The queue cannot accept work (for example after shutdown)."""


class JobQueue:
    """
    Thread-pool job runner with pending-job de-duplication.

    A job whose (name, params) matches one that is queued but not yet claimed
    by a worker is dropped. Handlers that raise are re-run up to max_attempts
    times, so a handler may see the same params more than once.
    """

    def __init__(self, max_workers=config.JOB_MAX_WORKERS, max_attempts=config.JOB_MAX_ATTEMPTS):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._handlers = {}
        self._pending = set()
        self._depth = Counter()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wikibase-job")
        self.stats = {
            "enqueued": 0,
            "duplicates": 0,
            "runs": 0,
            "retries": 0,
            "failures": 0,
        }

    def register(self, job_name, handler):
        with self._lock:
            self._handlers[job_name] = handler

    def enqueue(self, job_name, params):
        """Schedule handler(params) for job_name; returns nothing the caller can act on."""
        with self._lock:
            if job_name not in self._handlers:
                raise ValueError(f"No handler registered for job {job_name!r}")
            if self._closed:
                raise JobQueueError("Job queue has been shut down")
            signature = params_signature(job_name, params)
            if signature in self._pending:
                self.stats["duplicates"] += 1
                return
            self._pending.add(signature)
            self._depth[job_name] += 1
            self.stats["enqueued"] += 1
        try:
            self._executor.submit(self._run, job_name, dict(params), signature)
        except RuntimeError as exc:
            self._finish(job_name, signature)
            raise JobQueueError(f"Cannot submit {job_name}: {exc}") from exc

    def _finish(self, job_name, signature):
        with self._lock:
            self._pending.discard(signature)
            self._depth[job_name] -= 1
            if self._depth[job_name] <= 0:
                del self._depth[job_name]
            self._idle.notify_all()

    def _run(self, job_name, params, signature):
        with self._lock:
            self._pending.discard(signature)
            handler = self._handlers[job_name]
        try:
            for attempt in range(1, self.max_attempts + 1):
                self.stats["runs"] += 1
                try:
                    handler(params)
                    return
                except Exception:
                    logger.exception("[!] Job %s failed (attempt %s/%s)", job_name, attempt, self.max_attempts)
                    if attempt < self.max_attempts:
                        self.stats["retries"] += 1
            self.stats["failures"] += 1
        finally:
            self._finish(job_name, signature)

    def queue_depth(self, job_name=None):
        """Number of jobs queued or running, for one job name or overall."""
        with self._lock:
            if job_name is None:
                return sum(self._depth.values())
            return self._depth.get(job_name, 0)

    def wait_idle(self, timeout=None):
        """Block until no jobs are queued or running; False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._depth, timeout=timeout)

    def shutdown(self, wait=True):
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
