"""Shared fixtures: temp DuckDB, simulated chain, orchestrator factory."""

import dataclasses
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from predlaunch.chain.simulated import SimulatedChain
from predlaunch.config.settings import ChainConfig, PublishConfig
from predlaunch.models.market import Market, MarketDraft, MarketType, Outcome, OutcomeInput
from predlaunch.publishing.journal import PendingCommitJournal
from predlaunch.publishing.orchestrator import PublicationOrchestrator
from predlaunch.storage.db import get_connection, init_schema

FACTORY = "0x" + "fa" * 20
COLLATERAL = "0x" + "cc" * 20
UNIT = 10**6  # 6-decimal collateral
SEED_TOTAL_BINARY = 200 * UNIT


@pytest.fixture
def temp_db():
    tmp = tempfile.mkdtemp()
    path = Path(tmp) / "test.duckdb"
    conn = get_connection(path)
    init_schema(conn)
    yield conn
    conn.close()
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def chain_config():
    return ChainConfig(factory_address=FACTORY, collateral_address=COLLATERAL, collateral_decimals=6)


@pytest.fixture
def journal_path(tmp_path):
    return tmp_path / "pending_commits.jsonl"


@pytest.fixture
def publish_config(journal_path):
    return PublishConfig(
        seed_per_outcome="100",
        approval_timeout_sec=5,
        confirmation_timeout_sec=5,
        journal_path=str(journal_path),
    )


@pytest.fixture
def chain():
    """Funded account, no allowance yet: the first publish must approve."""
    return SimulatedChain(balance=1_000 * UNIT, factory_address=FACTORY)


@pytest.fixture
def make_orchestrator(temp_db, chain_config, publish_config):
    def make(chain=None, clock=None, **publish_overrides):
        config = publish_config
        if publish_overrides:
            config = dataclasses.replace(publish_config, **publish_overrides)
        return PublicationOrchestrator(
            temp_db,
            chain,
            chain_config,
            config,
            journal=PendingCommitJournal(config.journal_path),
            clock=clock,
        )

    return make


@pytest.fixture
def orch(make_orchestrator, chain):
    return make_orchestrator(chain)


def future(days: int = 7) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def binary_draft(question: str = "Will it rain in Lisbon tomorrow?", **kw) -> MarketDraft:
    data = {
        "question": question,
        "type": MarketType.BINARY,
        "outcomes": [OutcomeInput(label="Yes"), OutcomeInput(label="No")],
        "close_time": future(),
    }
    data.update(kw)
    return MarketDraft(**data)


def multi_draft(labels=("Red", "Green", "Blue"), **kw) -> MarketDraft:
    data = {
        "question": "Which team wins the cup final?",
        "type": MarketType.MULTI,
        "outcomes": [OutcomeInput(label=label) for label in labels],
        "close_time": future(),
    }
    data.update(kw)
    return MarketDraft(**data)


def make_market(labels=("Yes", "No"), **kw) -> Market:
    """In-memory market for pure checks (no database)."""
    now = datetime.now(timezone.utc)
    data = {
        "id": "m-1",
        "slug": "m-1",
        "title": "Title",
        "question": "Will it happen?",
        "type": MarketType.BINARY if len(labels) == 2 else MarketType.MULTI,
        "close_time": now + timedelta(days=1),
        "created_at": now,
        "outcomes": [Outcome(id=f"o{i}", label=label, idx=i) for i, label in enumerate(labels)],
    }
    data.update(kw)
    return Market(**data)
