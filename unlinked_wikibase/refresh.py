import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from . import config
from .cache import TTL_INDEFINITE

logger = logging.getLogger(__name__)

FETCH_JOB_NAME = "UnlinkedWikibaseFetch"


@dataclass(frozen=True)
class FetchTask:
    url: str
    ttl: Optional[int] = None

    def to_params(self) -> dict[str, Any]:
        return {"url": self.url, "ttl": self.ttl}

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "FetchTask":
        url = params.get("url")
        if not isinstance(url, str) or not url:
            raise ValueError(f"Fetch job needs a url, got {url!r}")
        ttl = params.get("ttl")
        if ttl is not None and (not isinstance(ttl, int) or ttl < 0):
            raise ValueError(f"Fetch job ttl must be a non-negative int, got {ttl!r}")
        return cls(url=url, ttl=ttl)


class RefreshState(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"  # Another run already stored a fresh value
    FAILED = "failed"


class FetchJob:
    """
    Background handler that fetches one URL and stores the result.

    Failures write nothing, so whatever was cached before keeps being served
    until its stale window runs out. Retrying is left to the queue.
    """

    def __init__(self, gateway, stale_ttl=config.STALE_TTL, default_ttl=config.ENTITY_TTL):
        self.gateway = gateway
        self.stale_ttl = stale_ttl
        self.default_ttl = default_ttl
        self.stats = {state.value: 0 for state in RefreshState}
        self._lock = threading.Lock()
        self._active = {}  # url -> SCHEDULED or RUNNING

    def mark_scheduled(self, task: FetchTask) -> None:
        with self._lock:
            self._active[task.url] = RefreshState.SCHEDULED
            self.stats[RefreshState.SCHEDULED.value] += 1

    def unschedule(self, task: FetchTask) -> None:
        with self._lock:
            if self._active.get(task.url) is RefreshState.SCHEDULED:
                del self._active[task.url]

    def state_of(self, url: str) -> Optional[RefreshState]:
        """SCHEDULED or RUNNING while a task for url is outstanding, else None."""
        with self._lock:
            return self._active.get(url)

    def _set_active(self, url, state):
        with self._lock:
            self._active[url] = state
            self.stats[state.value] += 1

    def _settle(self, url, state):
        with self._lock:
            # A newer schedule for the same url stays visible.
            if self._active.get(url) is RefreshState.RUNNING:
                del self._active[url]
            self.stats[state.value] += 1

    def _effective_ttl(self, task):
        if task.ttl:
            return task.ttl
        if self.default_ttl is None:
            return TTL_INDEFINITE
        return self.default_ttl

    def run(self, task: FetchTask) -> RefreshState:
        self._set_active(task.url, RefreshState.RUNNING)
        cache = self.gateway.cache
        key = self.gateway.make_cache_key(task.url)
        try:
            if cache.get(key) is not None:
                state = RefreshState.SKIPPED
                logger.debug("Skipping %s, already cached", task.url)
            else:
                data = self.gateway.fetch_direct(task.url)
                if not data:
                    state = RefreshState.FAILED
                    logger.warning("[!] Fetch job got no data for %s; keeping previous value", task.url)
                else:
                    cache.set(key, data, self._effective_ttl(task), stale_ttl=self.stale_ttl)
                    state = RefreshState.SUCCEEDED
                    logger.info("[+] Cached %s", task.url)
        except Exception:
            self._settle(task.url, RefreshState.FAILED)
            raise
        self._settle(task.url, state)
        return state

    def __call__(self, params):
        return self.run(FetchTask.from_params(params))
