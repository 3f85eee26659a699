"""Tests for the asyncpg data layer, run against a fake pool."""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services import database as db


class FakePool:
    def __init__(self):
        self.conn = MagicMock()
        self.conn.fetch = AsyncMock(return_value=[])
        self.conn.fetchrow = AsyncMock(return_value=None)
        self.conn.fetchval = AsyncMock(return_value=None)
        self.conn.execute = AsyncMock(return_value="UPDATE 1")

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


@pytest.fixture
def pool():
    fake = FakePool()
    with patch.object(db, "_get_pool", new=AsyncMock(return_value=fake)):
        yield fake


@pytest.mark.asyncio
async def test_pool_requires_database_url():
    with patch.object(db.settings, "database_url", ""):
        with pytest.raises(RuntimeError, match="Database not configured"):
            await db._get_pool()


def test_row_mapping():
    row = {
        "id": "p1",
        "port_level_isps_risk": "High",
        "identity_competitors": '["Antwerp"]',
        "last_deep_research_at": datetime(2026, 1, 2, tzinfo=timezone.utc),
        "cluster_name": "North Sea",
    }
    assert db._row_to_dict(row) == {
        "id": "p1",
        "portLevelISPSRisk": "High",
        "identityCompetitors": ["Antwerp"],
        "lastDeepResearchAt": "2026-01-02T00:00:00+00:00",
        "clusterName": "North Sea",
    }


def test_map_columns_whitelists_and_encodes():
    mapped = db.map_columns(
        {"cargoTypes": ["Container"], "lastDeepResearchAt": "2026-01-02T00:00:00Z", "evil; DROP": 1},
        db.OPERATOR_COLUMNS,
    )
    assert mapped["cargo_types"] == '["Container"]'
    assert mapped["last_deep_research_at"] == datetime(2026, 1, 2, tzinfo=timezone.utc)
    assert len(mapped) == 2


@pytest.mark.asyncio
async def test_claim_job_only_takes_pending(pool):
    assert await db.claim_job("j1") is None
    sql = pool.conn.fetchrow.await_args.args[0]
    assert "status = 'pending'" in sql
    assert "RETURNING" in sql


@pytest.mark.asyncio
async def test_fail_job_never_reverts_completed(pool):
    pool.conn.execute.return_value = "UPDATE 0"
    assert await db.fail_job("j1", "boom") is False
    assert "status = 'running'" in pool.conn.execute.await_args.args[0]


@pytest.mark.asyncio
async def test_progress_is_monotonic_in_sql(pool):
    await db.update_job_progress("j1", 40)
    assert "GREATEST(progress, $2)" in pool.conn.execute.await_args.args[0]


@pytest.mark.asyncio
async def test_update_entity_missing_row(pool):
    pool.conn.execute.return_value = "UPDATE 0"
    assert await db.update_entity("operator", "op-1", {"capacity": "1 TEU"}) is None
    sql = pool.conn.execute.await_args.args[0]
    assert sql.startswith("UPDATE terminal_operators SET capacity = $2")
    assert "updated_at = now()" in sql


@pytest.mark.asyncio
async def test_update_entity_uses_jsonb_placeholders(pool):
    with patch.object(db, "get_port", new=AsyncMock(return_value={"id": "p1"})):
        assert await db.update_entity("port", "p1", {"identityCompetitors": ["Antwerp"], "bogus": 1}) == {"id": "p1"}
    sql = pool.conn.execute.await_args.args[0]
    assert "identity_competitors = $2::jsonb" in sql
    assert "bogus" not in sql


@pytest.mark.asyncio
async def test_stale_sweep_message(pool):
    pool.conn.fetch.return_value = [{"id": "j7"}]
    assert await db.fail_stale_jobs(10) == ["j7"]
    args = pool.conn.fetch.await_args.args
    assert args[1] == 10
    assert args[2] == "Job timeout: no heartbeat for >10 minutes. Started: "
