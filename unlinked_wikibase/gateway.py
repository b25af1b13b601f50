import logging
import threading
import time
from enum import Enum
from urllib.parse import quote, urlencode

from . import config
from .cache import (
    TTL_INDEFINITE,
    TTL_UNCACHEABLE,
    CacheStoreError,
    Durability,
    MemoryCacheStore,
)
from .http_client import HttpFetcher
from .jobs import JobQueue, JobQueueError
from .refresh import FETCH_JOB_NAME, FetchJob, FetchTask
from .utils import decode_document, first_search_id, is_entity_id, is_pid, pick_entity

logger = logging.getLogger(__name__)


class InvalidEntityIdError(ValueError):
    def __init__(self, entity_id):
        super().__init__(f"Invalid entity id: {entity_id!r}")
        self.code = "invalid-item-id"
        self.entity_id = entity_id


class Decision(str, Enum):
    HIT = "hit"
    STALE_HIT_REFRESH_SCHEDULED = "stale_hit_refresh_scheduled"
    MISS_REFRESH_SCHEDULED = "miss_refresh_scheduled"
    SYNCHRONOUS_FETCH = "synchronous_fetch"


def decide(old_value, can_defer):
    """Choose how to answer a lookup the cache could not serve fresh."""
    if not can_defer:
        return Decision.SYNCHRONOUS_FETCH
    if old_value:
        return Decision.STALE_HIT_REFRESH_SCHEDULED
    return Decision.MISS_REFRESH_SCHEDULED


def _check_ttl(name, value, allow_none=False):
    if value is None and allow_none:
        return
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative int, got {value!r}")


class EntityGateway:
    """
    Cache-first access to a remote Wikibase.

    When the store is durable enough to hand work off to the job queue, a
    lookup never waits on the network: it returns the stale value (or {}) and
    schedules a FetchJob. Otherwise it fetches inline.
    """

    def __init__(
        self,
        cache,
        http,
        job_queue,
        base_url=config.BASE_URL,
        query_endpoint=config.QUERY_ENDPOINT,
        entity_ttl=config.ENTITY_TTL,
        api_ttl=config.API_TTL,
        property_search_ttl=config.PROPERTY_SEARCH_TTL,
        query_ttl=config.QUERY_TTL,
        stale_ttl=config.STALE_TTL,
        refresh_holdoff=config.REFRESH_HOLDOFF_SECONDS,
        content_language=config.CONTENT_LANGUAGE,
        clock=time.monotonic,
    ):
        if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {base_url!r}")
        if not isinstance(query_endpoint, str) or not query_endpoint.startswith(("http://", "https://")):
            raise ValueError(f"query_endpoint must be an http(s) URL, got {query_endpoint!r}")
        _check_ttl("entity_ttl", entity_ttl, allow_none=True)
        _check_ttl("api_ttl", api_ttl)
        _check_ttl("property_search_ttl", property_search_ttl)
        _check_ttl("query_ttl", query_ttl)
        _check_ttl("stale_ttl", stale_ttl)
        if refresh_holdoff < 0:
            raise ValueError("refresh_holdoff must not be negative")
        self.cache = cache
        self.http = http
        self.job_queue = job_queue
        self.base_url = base_url.rstrip("/")
        self.query_endpoint = query_endpoint
        self.entity_ttl = entity_ttl
        self.api_ttl = api_ttl
        self.property_search_ttl = property_search_ttl
        self.query_ttl = query_ttl
        self.stale_ttl = stale_ttl
        self.refresh_holdoff = refresh_holdoff
        self.content_language = content_language
        self.clock = clock
        self.fetch_job = None
        self._scheduled = {}
        self._lock = threading.Lock()
        self.stats = {decision.value: 0 for decision in Decision}
        self.stats.update({"refresh_suppressed": 0, "store_errors": 0, "queue_errors": 0})

    # URLs and keys

    def make_cache_key(self, url):
        return self.cache.make_key(config.CACHE_KEY_NAMESPACE, url)

    def get_entity_url(self, entity_id):
        if not is_entity_id(entity_id):
            raise InvalidEntityIdError(entity_id)
        return f"{self.base_url}/Special:EntityData/{entity_id}.json"

    def get_api_url(self, params):
        base = self.base_url
        if base.endswith("/wiki"):
            base = base[: -len("/wiki")]
        return f"{base}/w/api.php?{urlencode(params)}"

    # Cache policy

    def can_cache(self):
        """True when lookups may defer to the job queue instead of fetching inline."""
        return self.cache.query_durability() >= Durability.SERVICE

    def _schedule_refresh(self, task):
        now = self.clock()
        with self._lock:
            deadline = self._scheduled.get(task.url)
            if deadline is not None and deadline > now:
                self.stats["refresh_suppressed"] += 1
                return
            self._scheduled[task.url] = now + self.refresh_holdoff
            if len(self._scheduled) > 4096:
                self._scheduled = {url: until for url, until in self._scheduled.items() if until > now}
        if self.fetch_job is not None:
            self.fetch_job.mark_scheduled(task)
        try:
            self.job_queue.enqueue(FETCH_JOB_NAME, task.to_params())
        except JobQueueError as exc:
            if self.fetch_job is not None:
                self.fetch_job.unschedule(task)
            self.stats["queue_errors"] += 1
            logger.warning("[!] Could not schedule refresh of %s: %s", task.url, exc)
            with self._lock:
                self._scheduled.pop(task.url, None)

    def resolve_with_decision(self, url, ttl, context=None):
        """Return (document, Decision) for url."""
        _check_ttl("ttl", ttl)
        key = self.make_cache_key(url)
        outcome = {"decision": Decision.HIT}

        def populate(old_value, opts):
            decision = decide(old_value, self.can_cache())
            outcome["decision"] = decision
            if decision is Decision.SYNCHRONOUS_FETCH:
                if context is not None:
                    context.expensive_calls += 1
                data = self.fetch_direct(url)
                if not data:
                    opts["ttl"] = TTL_UNCACHEABLE
                    if old_value:
                        logger.warning("[!] Fetch of %s failed; serving stale copy", url)
                        return old_value
                return data
            opts["ttl"] = TTL_UNCACHEABLE
            self._schedule_refresh(FetchTask(url=url, ttl=ttl))
            if decision is Decision.STALE_HIT_REFRESH_SCHEDULED:
                return old_value
            return {}

        try:
            data = self.cache.get_with_set_callback(key, ttl, populate, stale_ttl=self.stale_ttl)
        except CacheStoreError as exc:
            self.stats["store_errors"] += 1
            logger.warning("[!] Cache unavailable for %s, fetching directly: %s", url, exc)
            if context is not None:
                context.expensive_calls += 1
            outcome["decision"] = Decision.SYNCHRONOUS_FETCH
            data = self.fetch_direct(url)
        self.stats[outcome["decision"].value] += 1
        return data, outcome["decision"]

    def resolve(self, url, ttl, context=None):
        data, _decision = self.resolve_with_decision(url, ttl, context=context)
        return data

    def fetch_direct(self, url):
        """Fetch url now, bypassing the cache; failures give {}."""
        body = self.http.get(url, follow_redirects=True)
        if body is None:
            return {}
        return decode_document(body)

    # Typed accessors

    def get_api_result(self, params, ttl=None, bypass_cache=False, context=None):
        url = self.get_api_url(params)
        if bypass_cache:
            return self.fetch_direct(url)
        return self.resolve(url, self.api_ttl if ttl is None else ttl, context=context)

    def get_entity(self, context, entity_id):
        """
        Return the entity for entity_id, or None if it is not (yet) known.
        The id recorded as used is the one the payload reports, so an alias
        lookup is tracked under its target.
        """
        url = self.get_entity_url(entity_id)
        ttl = TTL_INDEFINITE if self.entity_ttl is None else self.entity_ttl
        data = self.resolve(url, ttl, context=context)
        entity = pick_entity(data, entity_id)
        canonical_id = entity_id
        if entity and is_entity_id(entity.get("id")):
            canonical_id = entity["id"]
        context.add_entity_used(canonical_id)
        return entity

    def get_property_id(self, context, name_or_id):
        """Map a property label or id to a property id, or None."""
        if name_or_id in context.property_ids:
            return context.property_ids[name_or_id]
        stripped = name_or_id.strip()
        if is_pid(stripped):
            property_id = stripped
        else:
            data = self.get_api_result(
                {
                    "action": "wbsearchentities",
                    "format": "json",
                    "search": name_or_id,
                    "language": self.content_language,
                    "type": "property",
                    "limit": 1,
                    "props": "",
                    "formatversion": 2,
                },
                ttl=self.property_search_ttl,
                context=context,
            )
            property_id = first_search_id(data)
            if not is_pid(property_id):
                property_id = None
        context.property_ids[name_or_id] = property_id
        return property_id

    def query(self, sparql, context=None):
        """Run a SPARQL query through the cache; an empty query gives {}."""
        if not sparql:
            return {}
        url = f"{self.query_endpoint}?format=json&query={quote(sparql, safe='')}"
        return self.resolve(url, self.query_ttl, context=context)

    def status(self):
        return {
            "job_queue_size": self.job_queue.queue_depth(FETCH_JOB_NAME),
            "can_cache": self.can_cache(),
            "durability": self.cache.query_durability().name,
        }


def create_gateway(cache=None, http=None, job_queue=None, **kwargs):
    """Build a gateway with default collaborators and register its FetchJob."""
    cache = cache if cache is not None else MemoryCacheStore()
    http = http if http is not None else HttpFetcher()
    job_queue = job_queue if job_queue is not None else JobQueue()
    gateway = EntityGateway(cache, http, job_queue, **kwargs)
    gateway.fetch_job = FetchJob(gateway, stale_ttl=gateway.stale_ttl, default_ttl=gateway.entity_ttl)
    job_queue.register(FETCH_JOB_NAME, gateway.fetch_job)
    return gateway
