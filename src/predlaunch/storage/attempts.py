"""Publish attempt rows: the durable record of what was sent to the chain."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, Iterable

import duckdb
import structlog

from predlaunch.models.publish import ACTIVE_STAGES, AttemptStage, PublishAttempt
from predlaunch.storage.markets import from_ms, now_ms

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

_COLUMNS = [
    "attempt_id", "market_id", "stage", "approval_tx_hash", "tx_hash",
    "market_address", "error", "created_at", "updated_at",
]
_SELECT = ", ".join(_COLUMNS)


def _row_to_attempt(row: tuple) -> PublishAttempt:
    data = dict(zip(_COLUMNS, row))
    data["created_at"] = from_ms(data["created_at"])
    data["updated_at"] = from_ms(data["updated_at"])
    return PublishAttempt(**data)


def create_attempt(conn: DuckDBPyConnection, market_id: str) -> PublishAttempt:
    attempt_id = str(uuid.uuid4())
    ts = now_ms()
    conn.execute(
        f"INSERT INTO publish_attempts ({_SELECT}) VALUES (?, ?, ?, NULL, NULL, NULL, NULL, ?, ?)",
        [attempt_id, market_id, AttemptStage.CLAIMED.value, ts, ts],
    )
    return get_attempt(conn, attempt_id)


def get_attempt(conn: DuckDBPyConnection, attempt_id: str) -> PublishAttempt | None:
    row = conn.execute(
        f"SELECT {_SELECT} FROM publish_attempts WHERE attempt_id = ?", [attempt_id]
    ).fetchone()
    return _row_to_attempt(row) if row else None


def list_attempts(conn: DuckDBPyConnection, market_id: str) -> list[PublishAttempt]:
    rows = conn.execute(
        f"SELECT {_SELECT} FROM publish_attempts WHERE market_id = ? ORDER BY created_at, attempt_id",
        [market_id],
    ).fetchall()
    return [_row_to_attempt(r) for r in rows]


def advance_attempt(
    conn: DuckDBPyConnection,
    attempt_id: str,
    to_stage: AttemptStage,
    from_stages: Iterable[AttemptStage] | None = None,
    **fields: Any,
) -> bool:
    """Set stage (and fields) if the attempt is in one of from_stages (default: any active)."""
    allowed = list(from_stages) if from_stages is not None else list(ACTIVE_STAGES)
    unknown = set(fields) - set(_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown attempt columns: {sorted(unknown)}")
    sets = {"stage": to_stage.value, **fields, "updated_at": now_ms()}
    set_sql = ", ".join(f"{c} = ?" for c in sets)
    stage_sql = ", ".join("?" for _ in allowed)
    params = list(sets.values()) + [attempt_id] + [s.value for s in allowed]
    try:
        rows = conn.execute(
            f"UPDATE publish_attempts SET {set_sql} WHERE attempt_id = ? AND stage IN ({stage_sql}) "
            "RETURNING attempt_id",
            params,
        ).fetchall()
    except duckdb.TransactionException as e:
        log.info("attempt_update_conflict", attempt_id=attempt_id, error=str(e))
        return False
    return bool(rows)
