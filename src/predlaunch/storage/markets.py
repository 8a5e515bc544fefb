"""Market and outcome persistence. Status writes are conditional on the expected prior state."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

import duckdb
import structlog

from predlaunch.errors import OutcomeReconciliationFailed, SlugTaken
from predlaunch.lifecycle.outcomes import OutcomePlan
from predlaunch.models.market import Market, MarketStatus, Outcome

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

MARKET_COLUMNS = [
    "id", "slug", "title", "question", "type", "status", "close_time", "created_at", "updated_at",
    "description", "rules", "rules_cid", "image_url", "chain_id", "fee_bps", "market_address",
    "tx_hash", "active_attempt_id", "winning_outcome_idx", "evidence_url", "evidence_cid",
    "resolution_notes", "resolved_at", "closed_at", "archived_at", "previous_status",
]
_TIME_COLUMNS = {"close_time", "created_at", "updated_at", "resolved_at", "closed_at", "archived_at"}
_SELECT = ", ".join(MARKET_COLUMNS)

SORTABLE = {"created_at", "close_time", "status", "title"}
PAGE_SIZE = 20

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(dt: datetime | None) -> int | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def from_ms(ms: int | None) -> datetime | None:
    if ms is None:
        return None
    return EPOCH + timedelta(milliseconds=ms)


def _to_db(column: str, value: Any) -> Any:
    if column in _TIME_COLUMNS and isinstance(value, datetime):
        return to_ms(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_market(row: tuple, outcomes: list[Outcome] | None = None) -> Market:
    data = dict(zip(MARKET_COLUMNS, row))
    for col in _TIME_COLUMNS:
        data[col] = from_ms(data[col])
    data["outcomes"] = outcomes or []
    return Market(**data)


# --- markets ---


def insert_market(conn: DuckDBPyConnection, market: Market) -> Market:
    """Insert a market row (not its outcomes). Raises SlugTaken on slug collision."""
    values = [_to_db(c, getattr(market, c)) for c in MARKET_COLUMNS]
    placeholders = ", ".join("?" for _ in MARKET_COLUMNS)
    try:
        conn.execute(f"INSERT INTO markets ({_SELECT}) VALUES ({placeholders})", values)
    except duckdb.ConstraintException as e:
        if "slug" in str(e).lower():
            raise SlugTaken(market.slug) from e
        raise
    return market


def get_market(conn: DuckDBPyConnection, market_id: str, with_outcomes: bool = True) -> Market | None:
    row = conn.execute(f"SELECT {_SELECT} FROM markets WHERE id = ?", [market_id]).fetchone()
    if not row:
        return None
    return _row_to_market(row, list_outcomes(conn, market_id) if with_outcomes else None)


def get_market_by_slug(conn: DuckDBPyConnection, slug: str) -> Market | None:
    row = conn.execute("SELECT id FROM markets WHERE slug = ?", [slug]).fetchone()
    return get_market(conn, row[0]) if row else None


def slug_exists(conn: DuckDBPyConnection, slug: str) -> bool:
    return conn.execute("SELECT 1 FROM markets WHERE slug = ? LIMIT 1", [slug]).fetchone() is not None


def _conditional_update(
    conn: DuckDBPyConnection,
    market_id: str,
    sets: dict[str, Any],
    conditions: dict[str, Any],
) -> bool:
    """UPDATE ... WHERE id = ? AND <conditions> RETURNING id. False if no row matched or a
    concurrent writer won the row."""
    unknown = (set(sets) | set(conditions)) - set(MARKET_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown market columns: {sorted(unknown)}")
    sets = {**sets, "updated_at": now_ms()}
    set_sql = ", ".join(f"{c} = ?" for c in sets)
    where = ["id = ?"]
    params: list[Any] = [_to_db(c, v) for c, v in sets.items()] + [market_id]
    for col, expected in conditions.items():
        if expected is None:
            where.append(f"{col} IS NULL")
        else:
            where.append(f"{col} = ?")
            params.append(_to_db(col, expected))
    sql = f"UPDATE markets SET {set_sql} WHERE {' AND '.join(where)} RETURNING id"
    try:
        return bool(conn.execute(sql, params).fetchall())
    except duckdb.TransactionException as e:
        log.info("conditional_update_conflict", market_id=market_id, error=str(e))
        return False


def update_market(
    conn: DuckDBPyConnection,
    market_id: str,
    expected_status: MarketStatus,
    fields: dict[str, Any],
    plan: OutcomePlan | None = None,
    require_idle: bool = False,
) -> bool:
    """Update non-status fields and apply an outcome plan in one transaction.

    Nothing is written unless the market is still in expected_status and, with
    require_idle, held by no publish attempt; False is returned in that case.
    A failed outcome step rolls the whole edit back and raises
    OutcomeReconciliationFailed naming the step.
    """
    if "status" in fields or "slug" in fields or "type" in fields:
        raise ValueError("status, slug and type are not editable through update_market")
    conditions: dict[str, Any] = {"status": expected_status}
    if require_idle:
        conditions["active_attempt_id"] = None
    step = "fields"
    conn.begin()
    try:
        if not _conditional_update(conn, market_id, fields, conditions):
            conn.rollback()
            return False
        if plan is not None and not plan.empty:
            step = "delete"
            if plan.to_delete:
                conn.execute(
                    f"DELETE FROM outcomes WHERE market_id = ? AND id IN ({', '.join('?' for _ in plan.to_delete)})",
                    [market_id, *plan.to_delete],
                )
            step = "update"
            for o in plan.to_update:
                conn.execute(
                    "UPDATE outcomes SET label = ?, color = ?, idx = ? WHERE id = ? AND market_id = ?",
                    [o.label, o.color, o.idx, o.id, market_id],
                )
            step = "insert"
            insert_outcomes(conn, market_id, plan.to_insert)
            step = "commit"
        conn.commit()
    except duckdb.Error as e:
        try:
            conn.rollback()
        except duckdb.Error:
            log.error("market_edit_rollback_failed", market_id=market_id, step=step, alert=True)
        if step == "fields":
            raise
        log.error("outcome_reconciliation_failed", market_id=market_id, step=step, error=str(e), alert=True)
        raise OutcomeReconciliationFailed(market_id, step, e) from e
    return True


def transition_status(
    conn: DuckDBPyConnection,
    market_id: str,
    expected: MarketStatus,
    target: MarketStatus,
    **fields: Any,
) -> bool:
    """Move expected -> target (plus fields) only if the row is still in expected."""
    return _conditional_update(conn, market_id, {"status": target, **fields}, {"status": expected})


def claim_attempt(conn: DuckDBPyConnection, market_id: str, attempt_id: str) -> bool:
    """Reserve a pending market for one publish attempt. At most one claim can win."""
    return _conditional_update(
        conn,
        market_id,
        {"active_attempt_id": attempt_id},
        {"status": MarketStatus.PENDING, "active_attempt_id": None},
    )


def release_attempt(conn: DuckDBPyConnection, market_id: str, attempt_id: str) -> bool:
    return _conditional_update(
        conn, market_id, {"active_attempt_id": None}, {"active_attempt_id": attempt_id}
    )


def revert_to_draft(conn: DuckDBPyConnection, market_id: str, attempt_id: str | None) -> bool:
    """pending -> draft, dropping the claim, only if attempt_id (or no attempt) still holds it."""
    return _conditional_update(
        conn,
        market_id,
        {"status": MarketStatus.DRAFT, "active_attempt_id": None},
        {"status": MarketStatus.PENDING, "active_attempt_id": attempt_id},
    )


def delete_market(conn: DuckDBPyConnection, market_id: str, expected_status: MarketStatus) -> bool:
    """Delete a market and its outcomes if still in expected_status with nothing on-chain."""
    conn.begin()
    try:
        deleted = conn.execute(
            """
            DELETE FROM markets
            WHERE id = ? AND status = ? AND market_address IS NULL AND tx_hash IS NULL
              AND active_attempt_id IS NULL
            RETURNING id
            """,
            [market_id, expected_status.value],
        ).fetchall()
        if deleted:
            conn.execute("DELETE FROM outcomes WHERE market_id = ?", [market_id])
            conn.execute("DELETE FROM publish_attempts WHERE market_id = ?", [market_id])
        conn.commit()
    except duckdb.Error:
        conn.rollback()
        raise
    return bool(deleted)


def list_markets(
    conn: DuckDBPyConnection,
    q: str | None = None,
    statuses: Iterable[str] | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    sort: str = "created_at",
    order: str = "desc",
    page: int = 1,
    page_size: int = PAGE_SIZE,
) -> tuple[list[Market], int]:
    """Filtered, sorted page of markets (without outcomes) and the filtered total."""
    conditions = []
    params: list[Any] = []
    if q:
        escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        conditions.append("(question ILIKE ? ESCAPE '\\' OR slug ILIKE ? ESCAPE '\\')")
        params += [f"%{escaped}%", f"%{escaped}%"]
    statuses = [s for s in (statuses or []) if s]
    if statuses:
        conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
        params += list(statuses)
    if created_from is not None:
        conditions.append("created_at >= ?")
        params.append(to_ms(created_from))
    if created_to is not None:
        conditions.append("created_at <= ?")
        params.append(to_ms(created_to))
    where = " AND ".join(conditions) if conditions else "1=1"
    if sort not in SORTABLE:
        sort = "created_at"
    direction = "ASC" if order.lower() == "asc" else "DESC"
    total = conn.execute(f"SELECT COUNT(*) FROM markets WHERE {where}", params).fetchone()[0]
    page = max(1, page)
    rows = conn.execute(
        f"SELECT {_SELECT} FROM markets WHERE {where} ORDER BY {sort} {direction}, id LIMIT ? OFFSET ?",
        params + [page_size, (page - 1) * page_size],
    ).fetchall()
    return [_row_to_market(r) for r in rows], total


def list_by_status(conn: DuckDBPyConnection, statuses: Iterable[MarketStatus]) -> list[Market]:
    values = [s.value for s in statuses]
    if not values:
        return []
    rows = conn.execute(
        f"SELECT {_SELECT} FROM markets WHERE status IN ({', '.join('?' for _ in values)}) ORDER BY created_at",
        values,
    ).fetchall()
    return [_row_to_market(r) for r in rows]


def list_expired_live(conn: DuckDBPyConnection, at_ms: int) -> list[str]:
    rows = conn.execute(
        "SELECT id FROM markets WHERE status = 'live' AND close_time <= ? ORDER BY close_time", [at_ms]
    ).fetchall()
    return [r[0] for r in rows]


def status_counts(conn: DuckDBPyConnection) -> dict[str, int]:
    rows = conn.execute("SELECT status, COUNT(*) FROM markets GROUP BY status").fetchall()
    counts = {s.value: 0 for s in MarketStatus}
    counts.update({r[0]: r[1] for r in rows})
    return counts


# --- outcomes ---


def list_outcomes(conn: DuckDBPyConnection, market_id: str) -> list[Outcome]:
    rows = conn.execute(
        "SELECT id, market_id, label, color, idx FROM outcomes WHERE market_id = ? ORDER BY idx",
        [market_id],
    ).fetchall()
    return [Outcome(id=r[0], market_id=r[1], label=r[2], color=r[3], idx=r[4]) for r in rows]


def insert_outcomes(conn: DuckDBPyConnection, market_id: str, outcomes: list[Outcome]) -> list[Outcome]:
    """Insert outcomes, assigning ids. Returns the stored outcomes."""
    created = now_ms()
    stored = [o.model_copy(update={"id": o.id or str(uuid.uuid4()), "market_id": market_id}) for o in outcomes]
    if stored:
        conn.executemany(
            "INSERT INTO outcomes (id, market_id, label, color, idx, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            [[o.id, market_id, o.label, o.color, o.idx, created] for o in stored],
        )
    return stored
