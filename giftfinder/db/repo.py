# =============================================
# File: giftfinder/db/repo.py
# Purpose: Schema bootstrap: compile the query_cache DDL for Postgres and apply it through the vector pool.
# =============================================

from typing import List

from loguru import logger
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

from .models import QueryCacheEntry

CLEANUP_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION cleanup_expired_cache() RETURNS integer AS $$
DECLARE
    deleted_count integer;
BEGIN
    DELETE FROM query_cache WHERE expires_at < NOW();
    GET DIAGNOSTICS deleted_count = ROW_COUNT;
    RETURN deleted_count;
END;
$$ LANGUAGE plpgsql;
"""


def schema_statements() -> List[str]:
    dialect = postgresql.dialect()
    table = QueryCacheEntry.__table__
    stmts = ["CREATE EXTENSION IF NOT EXISTS vector"]
    stmts.append(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)).strip())
    for idx in sorted(table.indexes, key=lambda i: i.name):
        stmts.append(str(CreateIndex(idx, if_not_exists=True).compile(dialect=dialect)).strip())
    stmts.append(CLEANUP_FUNCTION_SQL.strip())
    return stmts


async def init_db(pool) -> int:
    """Idempotent; returns the number of statements applied."""
    stmts = schema_statements()
    async with pool.connection() as conn:
        for s in stmts:
            await conn.execute(s)
    logger.info(f"[db] query_cache schema ready ({len(stmts)} statements)")
    return len(stmts)
