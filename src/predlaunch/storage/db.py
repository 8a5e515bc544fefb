"""DuckDB connection and schema init."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

from predlaunch.models.market import ONCHAIN_STATUSES, MarketStatus

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_ONCHAIN_SQL = ", ".join(f"'{s.value}'" for s in MarketStatus if s in ONCHAIN_STATUSES)

SCHEMA_SQL = f"""
-- Markets (events). Timestamps are ms epoch.
-- market_address / tx_hash are set iff status is onchain or later.
CREATE TABLE IF NOT EXISTS markets (
    id                  VARCHAR PRIMARY KEY,
    slug                VARCHAR NOT NULL UNIQUE,
    title               VARCHAR NOT NULL,
    question            VARCHAR NOT NULL,
    type                VARCHAR NOT NULL CHECK (type IN ('binary', 'multi')),
    status              VARCHAR NOT NULL CHECK (
                            status IN ('draft', 'pending', 'onchain', 'live', 'closed', 'resolved', 'archived')),
    close_time          BIGINT NOT NULL,
    created_at          BIGINT NOT NULL,
    updated_at          BIGINT,
    description         VARCHAR,
    rules               VARCHAR,
    rules_cid           VARCHAR,
    image_url           VARCHAR,
    chain_id            INTEGER,
    fee_bps             INTEGER,
    market_address      VARCHAR,
    tx_hash             VARCHAR,
    active_attempt_id   VARCHAR,
    winning_outcome_idx INTEGER,
    evidence_url        VARCHAR,
    evidence_cid        VARCHAR,
    resolution_notes    VARCHAR,
    resolved_at         BIGINT,
    closed_at           BIGINT,
    archived_at         BIGINT,
    previous_status     VARCHAR,
    CHECK ((status IN ({_ONCHAIN_SQL})) = (market_address IS NOT NULL AND tx_hash IS NOT NULL))
);

-- Outcomes owned by a market, idx is dense 0..N-1 per market
CREATE TABLE IF NOT EXISTS outcomes (
    id                  VARCHAR PRIMARY KEY,
    market_id           VARCHAR NOT NULL,
    label               VARCHAR NOT NULL,
    color               VARCHAR,
    idx                 INTEGER NOT NULL,
    created_at          BIGINT NOT NULL
);

-- One row per publish attempt, tx_hash is written before the transaction is sent
CREATE TABLE IF NOT EXISTS publish_attempts (
    attempt_id          VARCHAR PRIMARY KEY,
    market_id           VARCHAR NOT NULL,
    stage               VARCHAR NOT NULL,
    approval_tx_hash    VARCHAR,
    tx_hash             VARCHAR,
    market_address      VARCHAR,
    error               VARCHAR,
    created_at          BIGINT NOT NULL,
    updated_at          BIGINT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_outcomes_market ON outcomes (market_id);
CREATE INDEX IF NOT EXISTS idx_attempts_market ON publish_attempts (market_id);
"""


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    Use cursor() for per-thread connections to the same database."""
    path = Path(db_path)
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables and indexes if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise
