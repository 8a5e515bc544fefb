"""Publish workflow: preflight, on-chain publisher, orchestrator, reconciliation."""

from __future__ import annotations

from pathlib import Path

from predlaunch.config.settings import Settings
from predlaunch.publishing.journal import PendingCommitJournal
from predlaunch.publishing.orchestrator import PublicationOrchestrator
from predlaunch.publishing.preflight import CollateralPlan, PreflightReport, PreflightValidator
from predlaunch.publishing.publisher import DeployedMarket, OnChainPublisher

__all__ = [
    "CollateralPlan",
    "DeployedMarket",
    "OnChainPublisher",
    "PendingCommitJournal",
    "PreflightReport",
    "PreflightValidator",
    "PublicationOrchestrator",
    "build_orchestrator",
]


def build_orchestrator(
    settings: Settings, conn=None, chain=None, with_chain: bool = True
) -> PublicationOrchestrator:
    """Wire an orchestrator from settings. Opens the database and chain client unless given.

    with_chain=False skips the chain client (no signing key needed) for commands that never publish.
    """
    from predlaunch.chain import create_chain_client
    from predlaunch.storage.db import get_connection, init_schema

    if conn is None:
        conn = get_connection(Path(settings.db_path))
        init_schema(conn)
    if chain is None and with_chain:
        chain = create_chain_client(settings)
    publish_config = settings.publish_config()
    return PublicationOrchestrator(
        conn,
        chain,
        settings.chain_config(),
        publish_config,
        journal=PendingCommitJournal(publish_config.journal_path),
    )
