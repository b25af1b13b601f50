import argparse
import json
import logging
import sys

from . import config
from .cache import Durability, MemoryCacheStore
from .cache_sqlite import SQLiteCacheStore
from .context import RenderContext
from .gateway import InvalidEntityIdError, create_gateway

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Look up remote Wikibase data through the entity cache.")
    parser.add_argument(
        "--cache",
        choices=("memory", "sqlite"),
        default="sqlite",
        help="Backing store; 'memory' fetches synchronously, 'sqlite' defers to background jobs.",
    )
    parser.add_argument("--cache-db", default=str(config.CACHE_DB), help="SQLite cache file (with --cache sqlite).")
    parser.add_argument("--base-url", default=config.BASE_URL, help="Wikibase base URL.")
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Drain background fetch jobs, then look the value up again.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    entity = subparsers.add_parser("entity", help="Print one entity.")
    entity.add_argument("entity_id")
    prop = subparsers.add_parser("property", help="Resolve a property label or id.")
    prop.add_argument("name")
    query = subparsers.add_parser("query", help="Run a SPARQL query.")
    query.add_argument("sparql")
    subparsers.add_parser("status", help="Show job queue size and cache mode.")
    return parser.parse_args(argv)


def _lookup(gateway, args, context):
    if args.command == "entity":
        return gateway.get_entity(context, args.entity_id)
    if args.command == "property":
        return gateway.get_property_id(context, args.name)
    if args.command == "query":
        return gateway.query(args.sparql, context=context)
    return gateway.status()


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = parse_args(argv)
    if args.cache == "sqlite":
        cache = SQLiteCacheStore(args.cache_db)
    else:
        cache = MemoryCacheStore(durability=Durability.SCRIPT)
    gateway = create_gateway(cache=cache, base_url=args.base_url)
    context = RenderContext()
    try:
        result = _lookup(gateway, args, context)
        if args.wait and args.command != "status":
            gateway.job_queue.wait_idle()
            result = _lookup(gateway, args, RenderContext())
    except InvalidEntityIdError as exc:
        logger.error("[!] %s", exc)
        return 2
    finally:
        gateway.job_queue.shutdown()
        cache.close()
    json.dump(result, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")
    if context.entities_used:
        logger.info("Entities used: %s", ", ".join(context.entities_used))
    return 0
