# =============================================
# File: giftfinder/cli/cache_admin.py
# Purpose: CLI for query_cache maintenance (schema, sweep, invalidation, stats).
# Usage:
#   python -m giftfinder.cli.cache_admin init-db
#   python -m giftfinder.cli.cache_admin sweep
#   python -m giftfinder.cli.cache_admin invalidate --product-id 42
#   python -m giftfinder.cli.cache_admin invalidate-all
#   python -m giftfinder.cli.cache_admin stats --top 10
# =============================================
from __future__ import annotations
import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv

from giftfinder.db.repo import init_db
from giftfinder.services.pool import VectorPool
from giftfinder.services.query_cache import CacheStats, PostgresCacheStore, QueryResultCache
from giftfinder.utils.settings import CacheSettings, PoolSettings


def _parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Maintain the query_cache table used by vector search.")
    ap.add_argument("--dsn", default=None, help="Postgres DSN (default: $DATABASE_URL)")
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create the query_cache table, indexes and cleanup routine")
    sub.add_parser("sweep", help="Delete expired cache entries")
    inv = sub.add_parser("invalidate", help="Delete cached results containing a product")
    inv.add_argument("--product-id", required=True)
    sub.add_parser("invalidate-all", help="Delete every cache entry")
    st = sub.add_parser("stats", help="Print cache statistics")
    st.add_argument("--top", type=int, default=0, help="Also list the N most-hit queries")
    return ap


async def _run(args, pool: VectorPool) -> int:
    if not await pool.initialize():
        print("[WARN] Could not connect. Check --dsn / DATABASE_URL.", file=sys.stderr)
        return 1
    try:
        if args.command == "init-db":
            n = await init_db(pool)
            print(f"[OK] Applied {n} schema statements.")
            return 0

        cache = QueryResultCache(PostgresCacheStore(pool), CacheSettings.from_env(), stats=CacheStats())
        if args.command == "sweep":
            print(f"[OK] Removed {await cache.cleanup_expired()} expired entries.")
        elif args.command == "invalidate":
            n = await cache.invalidate_by_product_id(args.product_id)
            print(f"[OK] Invalidated {n} entries containing product {args.product_id}.")
        elif args.command == "invalidate-all":
            print(f"[OK] Deleted {await cache.invalidate_all()} entries.")
        elif args.command == "stats":
            out = {"stats": (await cache.stats()).model_dump()}
            if args.top:
                out["top_queries"] = await cache.get_top_queries(args.top)
            print(json.dumps(out, indent=2, default=str))
        return 0
    finally:
        await pool.close()


def main(argv=None, pool: VectorPool | None = None) -> int:
    load_dotenv()
    args = _parser().parse_args(argv)
    settings = PoolSettings.from_env()
    if args.dsn:
        settings.dsn = args.dsn
    # one connection is plenty for maintenance
    settings.min_size, settings.max_size = 1, 2
    return asyncio.run(_run(args, pool or VectorPool(settings)))


if __name__ == "__main__":
    sys.exit(main())
