"""PostgreSQL database service using asyncpg."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import asyncpg

from app.config import settings
from app.services import logger as log_service


# Connection pool
_pool: asyncpg.Pool | None = None


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


# camelCase API key -> column. Anything outside these maps is never written.
PORT_COLUMNS: dict[str, str] = {
    "name": "name",
    "country": "country",
    "clusterId": "cluster_id",
    "latitude": "latitude",
    "longitude": "longitude",
    "description": "description",
    "portAuthority": "port_authority",
    "identityCompetitors": "identity_competitors",
    "identityAdoptionRate": "identity_adoption_rate",
    "portLevelISPSRisk": "port_level_isps_risk",
    "ispsEnforcementStrength": "isps_enforcement_strength",
    "strategicNotes": "strategic_notes",
    "lastDeepResearchAt": "last_deep_research_at",
    "lastDeepResearchSummary": "last_deep_research_summary",
    "lastDeepResearchReport": "last_deep_research_report",
}

OPERATOR_COLUMNS: dict[str, str] = {
    "name": "name",
    "portId": "port_id",
    "capacity": "capacity",
    "cargoTypes": "cargo_types",
    "operatorType": "operator_type",
    "parentCompanies": "parent_companies",
    "strategicNotes": "strategic_notes",
    "latitude": "latitude",
    "longitude": "longitude",
    "locations": "locations",
    "lastDeepResearchAt": "last_deep_research_at",
    "lastDeepResearchSummary": "last_deep_research_summary",
    "lastDeepResearchReport": "last_deep_research_report",
}

PROPOSAL_COLUMNS: dict[str, str] = {
    "portId": "port_id",
    "name": "name",
    "operatorType": "operator_type",
    "parentCompanies": "parent_companies",
    "capacity": "capacity",
    "cargoTypes": "cargo_types",
    "latitude": "latitude",
    "longitude": "longitude",
    "locations": "locations",
    "address": "address",
}

_ENTITY_TABLES: dict[str, tuple[str, dict[str, str]]] = {
    "port": ("ports", PORT_COLUMNS),
    "operator": ("terminal_operators", OPERATOR_COLUMNS),
}

_JSON_COLUMNS = frozenset(
    {"countries", "identity_competitors", "cargo_types", "parent_companies", "locations"}
)
_TIMESTAMP_COLUMNS = frozenset({"last_deep_research_at", "approved_at"})
_COLUMN_KEYS = {
    column: key
    for mapping in (PORT_COLUMNS, OPERATOR_COLUMNS, PROPOSAL_COLUMNS)
    for key, column in mapping.items()
}


def _camel(column: str) -> str:
    if column in _COLUMN_KEYS:
        return _COLUMN_KEYS[column]
    head, *rest = column.split("_")
    return head + "".join(part.title() for part in rest)


def _coerce_json(value: Any) -> Any:
    """asyncpg returns jsonb as text unless a codec is registered."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any] | None:
    if row is None:
        return None
    data: dict[str, Any] = {}
    for column, value in dict(row).items():
        if column in _JSON_COLUMNS:
            value = _coerce_json(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        data[_camel(column)] = value
    return data


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if column in _TIMESTAMP_COLUMNS and isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def _placeholder(column: str, index: int) -> str:
    return f"${index}::jsonb" if column in _JSON_COLUMNS else f"${index}"


def map_columns(fields: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    """Translate camelCase keys to columns, dropping anything not whitelisted."""
    return {columns[key]: _encode(columns[key], value) for key, value in fields.items() if key in columns}


# --- Clusters ---

async def get_cluster(cluster_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT id, name, countries, priority_tier, description FROM clusters WHERE id = $1",
            cluster_id,
        )
        return _row_to_dict(row)


async def list_clusters() -> list[dict[str, Any]]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT id, name, countries, priority_tier, description FROM clusters ORDER BY priority_tier, name"
        )
        return [_row_to_dict(r) for r in rows]


# --- Ports ---

_PORT_SELECT = """
    SELECT p.*, c.name AS cluster_name
    FROM ports p
    LEFT JOIN clusters c ON c.id = p.cluster_id
"""


async def get_port(port_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(f"{_PORT_SELECT} WHERE p.id = $1", port_id)
        return _row_to_dict(row)


async def list_ports(cluster_id: str | None = None) -> list[dict[str, Any]]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        if cluster_id:
            rows = await conn.fetch(f"{_PORT_SELECT} WHERE p.cluster_id = $1 ORDER BY p.name", cluster_id)
        else:
            rows = await conn.fetch(f"{_PORT_SELECT} ORDER BY p.name")
        return [_row_to_dict(r) for r in rows]


async def find_port_by_name(name: str) -> dict[str, Any] | None:
    """Case-insensitive exact match on port name."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"{_PORT_SELECT} WHERE lower(p.name) = lower($1) ORDER BY p.name LIMIT 1",
            name.strip(),
        )
        return _row_to_dict(row)


# --- Terminal operators ---

_OPERATOR_SELECT = """
    SELECT o.*, p.name AS port_name, p.country AS port_country, p.cluster_id AS cluster_id
    FROM terminal_operators o
    LEFT JOIN ports p ON p.id = o.port_id
"""


async def get_operator(operator_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(f"{_OPERATOR_SELECT} WHERE o.id = $1", operator_id)
        return _row_to_dict(row)


async def list_operators(port_id: str | None = None) -> list[dict[str, Any]]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        if port_id:
            rows = await conn.fetch(f"{_OPERATOR_SELECT} WHERE o.port_id = $1 ORDER BY o.name", port_id)
        else:
            rows = await conn.fetch(f"{_OPERATOR_SELECT} ORDER BY o.name")
        return [_row_to_dict(r) for r in rows]


async def create_operator(data: dict[str, Any]) -> dict[str, Any]:
    """Insert a terminal operator from camelCase fields."""
    values = map_columns(data, OPERATOR_COLUMNS)
    if not values.get("name") or not values.get("port_id"):
        raise ValueError("Operator requires name and portId")
    columns = list(values)
    placeholders = ", ".join(_placeholder(c, i + 1) for i, c in enumerate(columns))

    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            INSERT INTO terminal_operators ({", ".join(columns)})
            VALUES ({placeholders})
            RETURNING *
            """,
            *values.values(),
        )
    log_service.log_db_operation("insert", "terminal_operators", "success", details=row["id"])
    return _row_to_dict(row)


# --- Shared entity updates ---

async def get_entity(kind: str, entity_id: str) -> dict[str, Any] | None:
    if kind == "port":
        return await get_port(entity_id)
    if kind == "operator":
        return await get_operator(entity_id)
    raise ValueError(f"Unknown entity kind: {kind}")


async def update_entity(kind: str, entity_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
    """Update whitelisted columns of a port or operator and return the fresh row."""
    table, mapping = _ENTITY_TABLES[kind]
    values = map_columns(fields, mapping)
    if not values:
        return await get_entity(kind, entity_id)

    set_clause = ", ".join(f"{c} = {_placeholder(c, i + 2)}" for i, c in enumerate(values))
    if table == "terminal_operators":
        set_clause += ", updated_at = now()"

    pool = await _get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute(
            f"UPDATE {table} SET {set_clause} WHERE id = $1",
            entity_id,
            *values.values(),
        )
    if status.endswith(" 0"):
        return None
    log_service.log_db_operation("update", table, "success", details=f"{entity_id}: {sorted(values)}")
    return await get_entity(kind, entity_id)


async def save_report(kind: str, entity_id: str, report: str) -> None:
    table, _ = _ENTITY_TABLES[kind]
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"UPDATE {table} SET last_deep_research_report = $2 WHERE id = $1",
            entity_id,
            report,
        )


async def clear_report(kind: str, entity_id: str) -> None:
    table, _ = _ENTITY_TABLES[kind]
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"UPDATE {table} SET last_deep_research_report = NULL WHERE id = $1",
            entity_id,
        )


# --- Operator proposals ---

async def list_proposals(
    port_id: str | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    args: list[Any] = []
    if port_id:
        args.append(port_id)
        clauses.append(f"port_id = ${len(args)}")
    if status:
        args.append(status)
        clauses.append(f"status = ${len(args)}")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT * FROM operator_proposals {where} ORDER BY created_at DESC",
            *args,
        )
        return [_row_to_dict(r) for r in rows]


async def list_proposals_for_port(port_id: str, statuses: Iterable[str]) -> list[dict[str, Any]]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT * FROM operator_proposals WHERE port_id = $1 AND status = ANY($2::text[])",
            port_id,
            list(statuses),
        )
        return [_row_to_dict(r) for r in rows]


async def get_pending_proposals(proposal_ids: list[str]) -> list[dict[str, Any]]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM operator_proposals
            WHERE id = ANY($1::text[]) AND status = 'pending'
            ORDER BY created_at
            """,
            proposal_ids,
        )
        return [_row_to_dict(r) for r in rows]


async def create_proposal(data: dict[str, Any]) -> dict[str, Any]:
    values = map_columns(data, PROPOSAL_COLUMNS)
    columns = list(values)
    placeholders = ", ".join(_placeholder(c, i + 1) for i, c in enumerate(columns))

    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            INSERT INTO operator_proposals ({", ".join(columns)}, status)
            VALUES ({placeholders}, 'pending')
            RETURNING *
            """,
            *values.values(),
        )
    return _row_to_dict(row)


async def set_proposal_status(proposal_ids: list[str], status: str) -> int:
    """Flip pending proposals to approved/rejected. Returns the number of rows changed."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            UPDATE operator_proposals
            SET status = $2,
                approved_at = CASE WHEN $2 = 'approved' THEN now() ELSE approved_at END
            WHERE id = ANY($1::text[]) AND status = 'pending'
            """,
            proposal_ids,
            status,
        )
    changed = int(result.rsplit(" ", 1)[-1])
    log_service.log_db_operation("update", "operator_proposals", "success", details=f"{status}: {changed}")
    return changed


async def count_pending_proposals_for_cluster(cluster_id: str) -> int:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        return await conn.fetchval(
            """
            SELECT COUNT(*) FROM operator_proposals op
            JOIN ports p ON p.id = op.port_id
            WHERE p.cluster_id = $1 AND op.status = 'pending'
            """,
            cluster_id,
        )


# --- Research jobs ---

_JOB_FIELDS = (
    "id, type, entity_id, cluster_id, status, progress, error, "
    "created_at, started_at, completed_at, last_heartbeat"
)


async def create_jobs(job_type: str, entity_ids: list[str], cluster_id: str | None = None) -> list[str]:
    """Insert one pending job per entity inside a single transaction."""
    pool = await _get_pool()
    job_ids: list[str] = []
    async with pool.acquire() as conn:
        async with conn.transaction():
            for entity_id in entity_ids:
                job_id = await conn.fetchval(
                    """
                    INSERT INTO research_jobs (type, entity_id, cluster_id, status, progress)
                    VALUES ($1, $2, $3, 'pending', 0)
                    RETURNING id
                    """,
                    job_type,
                    entity_id,
                    cluster_id,
                )
                job_ids.append(job_id)
    for job_id in job_ids:
        log_service.log_job_transition(job_id, None, "pending", type=job_type)
    return job_ids


async def get_job(job_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(f"SELECT {_JOB_FIELDS} FROM research_jobs WHERE id = $1", job_id)
        return _row_to_dict(row)


async def list_jobs(cluster_id: str) -> list[dict[str, Any]]:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT {_JOB_FIELDS} FROM research_jobs WHERE cluster_id = $1 ORDER BY created_at DESC",
            cluster_id,
        )
        return [_row_to_dict(r) for r in rows]


async def find_active_job(job_type: str, entity_id: str) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            SELECT {_JOB_FIELDS} FROM research_jobs
            WHERE type = $1 AND entity_id = $2 AND status IN ('pending', 'running')
            ORDER BY created_at DESC
            LIMIT 1
            """,
            job_type,
            entity_id,
        )
        return _row_to_dict(row)


async def list_pending_job_ids(limit: int = 10) -> list[str]:
    """Oldest pending jobs first."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT id FROM research_jobs WHERE status = 'pending' ORDER BY created_at LIMIT $1",
            limit,
        )
        return [r["id"] for r in rows]


async def claim_job(job_id: str) -> dict[str, Any] | None:
    """Atomically move a pending job to running. None when it was not pending."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            UPDATE research_jobs
            SET status = 'running', started_at = now(), progress = 0, last_heartbeat = now()
            WHERE id = $1 AND status = 'pending'
            RETURNING {_JOB_FIELDS}
            """,
            job_id,
        )
    if row is not None:
        log_service.log_job_transition(job_id, "pending", "running")
    return _row_to_dict(row)


async def update_job_progress(job_id: str, progress: int) -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE research_jobs
            SET progress = GREATEST(progress, $2)
            WHERE id = $1 AND status = 'running'
            """,
            job_id,
            progress,
        )


async def touch_job_heartbeat(job_id: str) -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            "UPDATE research_jobs SET last_heartbeat = now() WHERE id = $1 AND status = 'running'",
            job_id,
        )


async def complete_job(job_id: str) -> bool:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            UPDATE research_jobs
            SET status = 'completed', progress = 100, completed_at = now()
            WHERE id = $1 AND status = 'running'
            """,
            job_id,
        )
    done = not result.endswith(" 0")
    if done:
        log_service.log_job_transition(job_id, "running", "completed")
    return done


async def fail_job(job_id: str, error: str) -> bool:
    """Fail a running job. Completed jobs are never reverted."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            UPDATE research_jobs
            SET status = 'failed', error = $2, completed_at = now()
            WHERE id = $1 AND status = 'running'
            """,
            job_id,
            error,
        )
    failed = not result.endswith(" 0")
    if failed:
        log_service.log_job_transition(job_id, "running", "failed", error=error)
    return failed


async def fail_stale_jobs(stale_minutes: int) -> list[str]:
    """Fail running jobs whose heartbeat (or start, without one) is older than the threshold."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            UPDATE research_jobs
            SET status = 'failed',
                completed_at = now(),
                error = $2 || COALESCE(started_at::text, 'unknown')
            WHERE status = 'running'
              AND (
                (last_heartbeat IS NOT NULL AND last_heartbeat < now() - make_interval(mins => $1))
                OR (last_heartbeat IS NULL AND started_at < now() - make_interval(mins => $1))
              )
            RETURNING id
            """,
            stale_minutes,
            f"Job timeout: no heartbeat for >{stale_minutes} minutes. Started: ",
        )
    job_ids = [r["id"] for r in rows]
    for job_id in job_ids:
        log_service.log_job_transition(job_id, "running", "failed", reason="stale")
    return job_ids


# --- Data quality ---

async def data_quality_snapshot() -> dict[str, Any]:
    """Raw counts and orphan rows for the data-quality report."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        counts = await conn.fetchrow(
            """
            SELECT
                (SELECT COUNT(*) FROM clusters) AS clusters,
                (SELECT COUNT(*) FROM ports) AS ports,
                (SELECT COUNT(*) FROM terminal_operators) AS operators,
                (SELECT COUNT(*) FROM operator_proposals WHERE status = 'pending') AS pending_proposals
            """
        )
        orphan_ports = await conn.fetch(
            """
            SELECT p.id, p.name, p.cluster_id
            FROM ports p
            LEFT JOIN clusters c ON c.id = p.cluster_id
            WHERE c.id IS NULL
            ORDER BY p.name
            """
        )
        per_cluster = await conn.fetch(
            """
            SELECT c.id, c.name, COUNT(p.id) AS count
            FROM clusters c
            LEFT JOIN ports p ON p.cluster_id = c.id
            GROUP BY c.id, c.name
            ORDER BY c.name
            """
        )
        orphan_operators = await conn.fetch(
            """
            SELECT o.id, o.name, o.port_id
            FROM terminal_operators o
            LEFT JOIN ports p ON p.id = o.port_id
            WHERE p.id IS NULL
            ORDER BY o.name
            """
        )
    return {
        "counts": dict(counts),
        "orphan_ports": [dict(r) for r in orphan_ports],
        "ports_per_cluster": [dict(r) for r in per_cluster],
        "orphan_operators": [dict(r) for r in orphan_operators],
    }
