"""Publish subcommand: run, reconcile, cancel, abandon, reconcile-loop."""

from __future__ import annotations

import asyncio
import signal
import sys

import typer

from predlaunch.chain.units import format_units
from predlaunch.cli.events import open_orchestrator
from predlaunch.models.publish import PublishOutcome, PublishResult
from predlaunch.publishing.reconciler import Reconciler

app = typer.Typer(help="Publish events on-chain and reconcile unfinished publishes")


def _report(result: PublishResult, decimals: int) -> None:
    """Print a publish result; exit non-zero unless the market is live."""
    if result.outcome is PublishOutcome.PUBLISHED:
        typer.echo(f"Live: {result.slug}  address={result.market_address}  tx={result.tx_hash}")
        return
    if result.needs_reconciliation:
        typer.echo(f"Processing ({result.outcome.value}): tx={result.tx_hash or '-'}")
        if result.approval_tx_hash:
            typer.echo(f"Approval awaiting confirmation: {result.approval_tx_hash}")
        typer.echo("Run 'predlaunch publish reconcile' later; do not publish again.")
        raise typer.Exit(3)
    if result.shortfall is not None:
        typer.echo(
            f"{result.outcome.value}: need {format_units(result.required, decimals)}, "
            f"have {format_units(result.available, decimals)} "
            f"(short {format_units(result.shortfall, decimals)})",
            err=True,
        )
    else:
        typer.echo(f"{result.outcome.value}: {result.message or ''}", err=True)
    for reason in result.reasons:
        typer.echo(f"  - {reason}", err=True)
    raise typer.Exit(1)


@app.command("run")
def run(ctx: typer.Context, market_id: str = typer.Argument(..., help="Event id")) -> None:
    """Validate, fund-check and publish an event; blocks until confirmed or timed out."""
    decimals = ctx.obj["settings"].chain_config().collateral_decimals
    with open_orchestrator(ctx, with_chain=True) as orch:
        result = orch.publish(market_id)
    _report(result, decimals)


@app.command("reconcile")
def reconcile(ctx: typer.Context, market_id: str = typer.Argument(...)) -> None:
    """Check whether an in-flight publish has confirmed and finish the database commit."""
    decimals = ctx.obj["settings"].chain_config().collateral_decimals
    with open_orchestrator(ctx, with_chain=True) as orch:
        result = orch.reconcile(market_id)
    _report(result, decimals)


@app.command("cancel")
def cancel(ctx: typer.Context, market_id: str = typer.Argument(...)) -> None:
    """Return a pending event to draft. Refused once a create transaction was sent."""
    with open_orchestrator(ctx) as orch:
        market = orch.cancel_publish(market_id)
        typer.echo(f"{market.slug} is back to {market.status.value}")


@app.command("abandon")
def abandon(
    ctx: typer.Context,
    market_id: str = typer.Argument(...),
    force: bool = typer.Option(
        False, "--force", help="Release even though the create transaction may still confirm"
    ),
) -> None:
    """Release the publish attempt holding a pending event (operator repair)."""
    with open_orchestrator(ctx, with_chain=True) as orch:
        result = orch.abandon_attempt(market_id, force=force)
    typer.echo(f"{result.outcome.value}: {result.message or ''}")


@app.command("reconcile-loop")
def reconcile_loop(
    ctx: typer.Context,
    interval: float | None = typer.Option(None, "--interval", help="Seconds between passes (overrides config)"),
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
) -> None:
    """Reconcile onchain/pending events, replay the commit journal and close expired events."""
    settings = ctx.obj["settings"]
    interval_sec = interval or settings.publish_config().reconcile_interval_sec
    with open_orchestrator(ctx, with_chain=True) as orch:
        reconciler = Reconciler(orch, interval_sec=interval_sec)
        if once:
            s = reconciler.run_once()
            typer.echo(
                f"Checked {s.checked}: {s.published} live, {s.pending} pending, {s.failed} failed; "
                f"closed {len(s.closed)}; journal {s.journal_replayed}"
            )
            return
        stop_event = asyncio.Event()

        def shutdown() -> None:
            stop_event.set()

        loop = asyncio.new_event_loop()
        if sys.platform != "win32":
            loop.add_signal_handler(signal.SIGINT, shutdown)
            loop.add_signal_handler(signal.SIGTERM, shutdown)
        try:
            typer.echo(f"Reconciling every {interval_sec:g}s (Ctrl+C to stop)...")
            loop.run_until_complete(reconciler.run(stop_event=stop_event))
        except KeyboardInterrupt:
            pass
        finally:
            loop.close()
    typer.echo("Stopped.")
