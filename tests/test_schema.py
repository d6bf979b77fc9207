# =============================================
# File: tests/test_schema.py
# Purpose: query_cache DDL + bootstrap through the pool
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import pytest

from fakes import make_pool
from giftfinder.db.repo import init_db, schema_statements


def test_schema_statements_cover_table_indexes_and_cleanup():
    stmts = schema_statements()
    assert stmts[0] == "CREATE EXTENSION IF NOT EXISTS vector"

    table = stmts[1]
    assert table.startswith("CREATE TABLE IF NOT EXISTS query_cache")
    assert "cache_key TEXT NOT NULL" in table
    assert "UNIQUE (cache_key)" in table
    assert "VECTOR(" in table
    assert "result_ids TEXT[] NOT NULL" in table
    assert "result_similarities FLOAT[]" in table
    assert "DEFAULT gen_random_uuid()" in table

    indexes = [s for s in stmts if s.startswith("CREATE INDEX")]
    assert len(indexes) == 3
    assert any("USING gin (result_ids)" in s for s in indexes)
    assert all("IF NOT EXISTS" in s for s in indexes)

    assert "FUNCTION cleanup_expired_cache()" in stmts[-1]


@pytest.mark.asyncio
async def test_init_db_applies_every_statement_on_one_connection():
    pool, fake = await make_pool()
    applied = await init_db(pool)

    assert applied == len(schema_statements())
    # connection 0 served the startup probe
    executed = [sql for sql, _ in fake.connections[1].calls]
    assert executed == schema_statements()
    assert fake.in_use == 0
