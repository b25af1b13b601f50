import hashlib
import json
import logging

from . import config

logger = logging.getLogger(__name__)


def is_pid(value):
    """Return True if the value looks like a Wikibase property id (P*)."""
    if not isinstance(value, str):
        return False
    return bool(config.PID_EXACT_PATTERN.fullmatch(value.strip()))


def is_entity_id(value):
    """Return True for item, property or lexeme ids."""
    if not isinstance(value, str):
        return False
    return bool(config.ENTITY_ID_PATTERN.fullmatch(value))


def canonicalize(obj):
    """Stable JSON serialization used for hashing job parameters."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def params_signature(job_name, params):
    """Return a digest identifying a job by name and parameters."""
    serialized = canonicalize({"job": job_name, "params": params})
    return hashlib.sha1(serialized.encode("utf-8")).hexdigest()


def decode_document(body):
    """
    Decode a JSON response body into a dict.
    Missing, empty, malformed or non-object bodies all decode to {}.
    """
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as exc:
        logger.warning("[!] Undecodable response body (%s)", exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def pick_entity(data, requested_id):
    """Return the single entity from an EntityData-style document, or None."""
    entities = data.get("entities") if isinstance(data, dict) else None
    if not entities:
        return None
    if isinstance(entities, dict):
        entity = entities.get(requested_id)
        if entity is None:
            entity = next(iter(entities.values()))
    elif isinstance(entities, list):
        entity = entities[0]
    else:
        return None
    if not isinstance(entity, dict) or "missing" in entity:
        return None
    return entity


def first_search_id(data):
    """Return the id of the first `search` hit in a wbsearchentities response."""
    results = data.get("search") if isinstance(data, dict) else None
    if not isinstance(results, list) or not results:
        return None
    first = results[0]
    if not isinstance(first, dict):
        return None
    return first.get("id")
