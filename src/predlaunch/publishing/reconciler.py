"""Background reconciliation: finish deployments the database has not caught up with."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import duckdb
import structlog

from predlaunch.errors import PredLaunchError
from predlaunch.models.publish import PublishOutcome
from predlaunch.publishing.orchestrator import PublicationOrchestrator

log = structlog.get_logger(__name__)


@dataclass
class ReconcileSummary:
    journal_replayed: int = 0
    checked: int = 0
    published: int = 0
    pending: int = 0
    failed: int = 0
    closed: list[str] = field(default_factory=list)


class Reconciler:
    """Periodically reconciles onchain/pending markets, replays the journal and closes expired markets."""

    def __init__(self, orchestrator: PublicationOrchestrator, interval_sec: float = 30.0):
        self.orchestrator = orchestrator
        self.interval_sec = interval_sec
        self._runs = 0
        self._start_ts: float | None = None
        self.last_summary: ReconcileSummary | None = None

    def run_once(self) -> ReconcileSummary:
        summary = ReconcileSummary()
        summary.journal_replayed = len(self.orchestrator.replay_journal())
        for market in self.orchestrator.markets_to_reconcile():
            summary.checked += 1
            try:
                result = self.orchestrator.reconcile(market.id)
            except PredLaunchError as e:
                # Market moved on between listing and reconciling
                log.info("reconcile_skipped", market_id=market.id, error=str(e))
                continue
            if result.outcome is PublishOutcome.PUBLISHED:
                summary.published += 1
            elif result.needs_reconciliation:
                summary.pending += 1
            else:
                summary.failed += 1
        summary.closed = self.orchestrator.close_expired()
        self._runs += 1
        self.last_summary = summary
        log.info(
            "reconcile_pass",
            checked=summary.checked,
            published=summary.published,
            pending=summary.pending,
            failed=summary.failed,
            closed=len(summary.closed),
            journal=summary.journal_replayed,
        )
        return summary

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Reconcile every interval_sec until stop_event is set."""
        stop = stop_event or asyncio.Event()
        self._start_ts = time.time()
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except (duckdb.Error, OSError) as e:
                log.error("reconcile_pass_failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass
        log.info("reconciler_stopped", runs=self._runs)

    def get_status(self) -> dict[str, Any]:
        elapsed = (time.time() - self._start_ts) if self._start_ts else 0
        last = self.last_summary
        return {
            "runs": self._runs,
            "elapsed_sec": round(elapsed, 1),
            "last_pending": last.pending if last else 0,
            "last_published": last.published if last else 0,
        }
