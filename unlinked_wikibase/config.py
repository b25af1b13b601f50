import re
from pathlib import Path

# HTTP identity and remote endpoints
HEADERS = {"User-Agent": "UnlinkedWikibase/1.0 (+https://www.mediawiki.org/wiki/Extension:UnlinkedWikibase)"}
BASE_URL = "https://www.wikidata.org/wiki"
QUERY_ENDPOINT = "https://query.wikidata.org/sparql"
HTTP_TIMEOUT = 30  # Seconds per HTTP request

# Cache lifetimes (seconds); 0 means indefinite
ENTITY_TTL = None  # None falls back to an indefinite lifetime
API_TTL = 60
PROPERTY_SEARCH_TTL = 7 * 24 * 3600
QUERY_TTL = 3600
STALE_TTL = 7 * 24 * 3600  # How long an expired value may still be served
REFRESH_HOLDOFF_SECONDS = 30  # Minimum gap between refresh jobs for one URL

# Rendering
CONTENT_LANGUAGE = "en"

# Backing stores
CACHE_DIR = Path("data/cache")
CACHE_DB = CACHE_DIR / "objectcache.sqlite"
CACHE_KEY_NAMESPACE = "ext-UnlinkedWikibase"
MEMORY_CACHE_SIZE = 1024

# Background jobs
JOB_MAX_WORKERS = 4
JOB_MAX_ATTEMPTS = 3

# ID validation patterns
PID_EXACT_PATTERN = re.compile(r"^P\d+$")
ENTITY_ID_PATTERN = re.compile(r"^[QPL]\d+$")
