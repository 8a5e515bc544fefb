"""Events subcommand: list, show, create, close, resolve, archive, delete."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

import typer
from pydantic import ValidationError

from predlaunch.errors import PredLaunchError, ValidationFailed
from predlaunch.models.market import Market, MarketDraft, MarketType, OutcomeInput, Resolution
from predlaunch.publishing import PublicationOrchestrator, build_orchestrator
from predlaunch.storage.db import get_connection, init_schema

app = typer.Typer(help="Create and manage events (markets)")


@contextmanager
def open_orchestrator(ctx: typer.Context, with_chain: bool = False) -> Iterator[PublicationOrchestrator]:
    """Orchestrator on the configured database; turns domain errors into exit code 1."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        yield build_orchestrator(settings, conn=conn, with_chain=with_chain)
    except ValidationFailed as e:
        for reason in e.reasons:
            typer.echo(f"  - {reason}", err=True)
        raise typer.Exit(1)
    except PredLaunchError as e:
        typer.echo(f"Error ({e.code}): {e}", err=True)
        raise typer.Exit(1)
    finally:
        conn.close()


def _echo_market(m: Market) -> None:
    typer.echo(f"{m.id}  [{m.status.value}]  {m.slug}")
    typer.echo(f"  {m.question}")
    typer.echo(f"  type={m.type.value}  closes={m.close_time.isoformat()}  fee_bps={m.fee_bps}")
    for o in sorted(m.outcomes, key=lambda o: o.idx):
        typer.echo(f"    {o.idx}: {o.label}" + (f"  ({o.color})" if o.color else ""))
    if m.market_address:
        typer.echo(f"  address={m.market_address}  tx={m.tx_hash}")
    if m.winning_outcome_idx is not None:
        typer.echo(f"  resolved: outcome {m.winning_outcome_idx}  evidence={m.evidence_url}")


@app.command("list")
def list_events(
    ctx: typer.Context,
    q: str | None = typer.Option(None, "--q", help="Search question and slug"),
    status: list[str] = typer.Option([], "--status", "-s", help="Filter by status (repeatable)"),
    sort: str = typer.Option("created_at", "--sort", help="created_at, close_time, status or title"),
    order: str = typer.Option("desc", "--order", help="asc or desc"),
    page: int = typer.Option(1, "--page", min=1),
) -> None:
    """List events, newest first."""
    with open_orchestrator(ctx) as orch:
        markets, total = orch.list_markets(q=q, statuses=status, sort=sort, order=order, page=page)
        for m in markets:
            typer.echo(f"  {m.id[:8]}  {m.status.value:<9} {m.close_time:%Y-%m-%d %H:%M}  {m.slug[:60]}")
        typer.echo(f"Total: {total} events")


@app.command("show")
def show(
    ctx: typer.Context,
    market_id: str = typer.Argument(..., help="Event id"),
    attempts: bool = typer.Option(False, "--attempts", help="Include publish attempts"),
) -> None:
    """Show one event with its outcomes."""
    with open_orchestrator(ctx) as orch:
        _echo_market(orch.get(market_id))
        if attempts:
            for a in orch.attempts(market_id):
                typer.echo(f"  attempt {a.attempt_id[:8]}  {a.stage.value:<12} tx={a.tx_hash or '-'}  {a.error or ''}")


@app.command("create")
def create(
    ctx: typer.Context,
    question: str = typer.Option(..., "--question", "-q"),
    outcome: list[str] = typer.Option(..., "--outcome", "-o", help="Outcome label (repeat, in order)"),
    close_time: datetime = typer.Option(..., "--close-time", help="ISO time; naive values are UTC"),
    market_type: MarketType = typer.Option(MarketType.BINARY, "--type", "-t"),
    title: str | None = typer.Option(None, "--title", help="Defaults to the question"),
    rules: str | None = typer.Option(None, "--rules"),
    description: str | None = typer.Option(None, "--description"),
    image_url: str | None = typer.Option(None, "--image-url"),
    fee_bps: int | None = typer.Option(None, "--fee-bps"),
) -> None:
    """Create a draft event."""
    try:
        draft = MarketDraft(
            title=title,
            question=question,
            type=market_type,
            outcomes=[OutcomeInput(label=label) for label in outcome],
            close_time=close_time,
            description=description,
            rules=rules,
            image_url=image_url,
            fee_bps=fee_bps,
        )
    except ValidationError as e:
        for err in e.errors():
            typer.echo(f"  - {'.'.join(str(p) for p in err['loc'])}: {err['msg']}", err=True)
        raise typer.Exit(1)
    with open_orchestrator(ctx) as orch:
        market = orch.create_draft(draft)
        typer.echo(f"Created draft {market.id} ({market.slug})")


@app.command("close")
def close(
    ctx: typer.Context,
    market_id: str | None = typer.Argument(None, help="Event id; omit with --expired"),
    expired: bool = typer.Option(False, "--expired", help="Close every live event past its close time"),
) -> None:
    """Close a live event (stops trading)."""
    with open_orchestrator(ctx) as orch:
        if expired:
            closed = orch.close_expired()
            typer.echo(f"Closed {len(closed)} expired events.")
            return
        if not market_id:
            typer.echo("Give an event id or --expired", err=True)
            raise typer.Exit(2)
        market = orch.close(market_id)
        typer.echo(f"Closed {market.slug}")


@app.command("resolve")
def resolve(
    ctx: typer.Context,
    market_id: str = typer.Argument(...),
    winner: int = typer.Option(..., "--winner", "-w", help="Winning outcome index"),
    evidence_url: str = typer.Option(..., "--evidence-url"),
    evidence_cid: str | None = typer.Option(None, "--evidence-cid"),
    notes: str | None = typer.Option(None, "--notes"),
) -> None:
    """Resolve a closed event. Recorded in the database only."""
    try:
        resolution = Resolution(
            winning_outcome_idx=winner,
            evidence_url=evidence_url,
            evidence_cid=evidence_cid,
            resolution_notes=notes,
        )
    except ValidationError as e:
        for err in e.errors():
            typer.echo(f"  - {'.'.join(str(p) for p in err['loc'])}: {err['msg']}", err=True)
        raise typer.Exit(1)
    with open_orchestrator(ctx) as orch:
        market = orch.resolve(market_id, resolution)
        winner_label = next((o.label for o in market.outcomes if o.idx == winner), str(winner))
        typer.echo(f"Resolved {market.slug}: {winner_label}")


@app.command("archive")
def archive(ctx: typer.Context, market_id: str = typer.Argument(...)) -> None:
    """Archive a closed event."""
    with open_orchestrator(ctx) as orch:
        market = orch.archive(market_id)
        typer.echo(f"Archived {market.slug}")


@app.command("delete")
def delete(
    ctx: typer.Context,
    market_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a draft or pending event that never reached the chain."""
    if not yes:
        typer.confirm(f"Delete event {market_id}?", abort=True)
    with open_orchestrator(ctx) as orch:
        orch.delete(market_id)
        typer.echo("Deleted.")
