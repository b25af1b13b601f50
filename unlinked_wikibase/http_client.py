import logging

import requests

from . import config

logger = logging.getLogger(__name__)


class HttpFetcher:
    """Single-attempt GET client; every failure comes back as None."""

    def __init__(self, headers=None, timeout=config.HTTP_TIMEOUT, session=None):
        if timeout is not None and timeout <= 0:
            raise ValueError(f"HTTP timeout must be positive, got {timeout!r}")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(headers or config.HEADERS)
        self.stats = {
            "requests": 0,
            "errors": 0,
            "http_status_counts": {200: 0, 404: 0, 429: 0, 500: 0, "other": 0},
        }

    def _record_status(self, status_code):
        if status_code in self.stats["http_status_counts"]:
            self.stats["http_status_counts"][status_code] += 1
        else:
            self.stats["http_status_counts"]["other"] += 1

    def get(self, url, follow_redirects=True):
        """Return the response body for url, or None on any failure."""
        self.stats["requests"] += 1
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=follow_redirects)
        except requests.RequestException as exc:
            self.stats["errors"] += 1
            logger.warning("[!] Request failed for %s: %s", url, exc)
            return None
        self._record_status(response.status_code)
        if not 200 <= response.status_code < 300:
            self.stats["errors"] += 1
            logger.warning("[!] HTTP %s for %s", response.status_code, url)
            return None
        return response.text
