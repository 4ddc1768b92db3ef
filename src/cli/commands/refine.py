"""Refinement CLI commands — threshold, audit log, rollback replay, scheduled sweeps."""

import json
import time

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from memory.errors import NotFoundError, ValidationError
from refinement.recovery import replay_rollback
from refinement.scheduler import RefinementScheduler, load_driver

console = Console()


@click.group()
def refine():
    """Memory refinement sessions and their audit trail."""
    pass


@refine.command("threshold")
@click.argument("owner_id")
@click.argument("value", required=False, type=float)
def refine_threshold(owner_id: str, value: float | None):
    """Show or set an owner's retention threshold, a ratio in (0, 1]."""
    c = get_components()
    owners = c["owners"]
    if value is None:
        settings = owners.get(owner_id)
        last = settings.last_refined_at.isoformat() if settings.last_refined_at else "never"
        console.print(f"Threshold: {settings.threshold:.2f}")
        console.print(f"Last refined: {last}")
        return
    try:
        owners.set_threshold(owner_id, value)
    except ValidationError as e:
        console.print(f"[red]{e}[/]")
        raise SystemExit(1)
    console.print(f"[green]Threshold for {owner_id} set to {value:.2f}[/]")


@refine.command("log")
@click.argument("owner_id")
@click.option("--session", "-s", "session_id", default=None, help="Only this session")
@click.option("--limit", "-n", default=50)
def refine_log(owner_id: str, session_id: str | None, limit: int):
    """Show audit entries, most recent first."""
    c = get_components()
    audit = c["audit"]
    if session_id:
        entries = [e for e in audit.for_session(session_id) if e.owner_id == owner_id]
    else:
        entries = audit.for_owner(owner_id, limit=limit)

    if not entries:
        console.print("No audit entries.")
        return

    table = Table(title=f"Audit trail for {owner_id}")
    table.add_column("When", width=19)
    table.add_column("Session", style="dim", width=8)
    table.add_column("Action", width=16)
    table.add_column("Subject", width=20)
    table.add_column("Payload")

    for e in entries:
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.session_id[:8],
            e.action.value,
            ", ".join(e.subject_ref),
            json.dumps(e.payload, ensure_ascii=False)[:80],
        )
    console.print(table)


@refine.command("rollback")
@click.argument("session_id")
@click.option("--reason", default="operator replay", help="Recorded with the rollback")
@click.confirmation_option(prompt="Revert every change made by this session?")
def refine_rollback(session_id: str, reason: str):
    """Replay a session's inverse from the audit trail (safe to repeat)."""
    c = get_components()
    try:
        result = replay_rollback(c["store"], c["audit"], c["owners"], session_id, reason=reason)
    except NotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise SystemExit(1)

    if result["status"] == "already_rolled_back":
        console.print(f"[yellow]Session {session_id} was already rolled back[/]")
    else:
        console.print(f"[green]Rolled back[/] {result['reverted']} change(s) from {session_id}")


def _build_scheduler(c: dict) -> RefinementScheduler:
    path = c["config"]["refinement"]["driver"]
    if not path:
        console.print("[red]No refinement.driver configured[/] (package.module:callable)")
        raise SystemExit(1)
    try:
        driver = load_driver(path)
    except (ImportError, AttributeError, ValueError) as e:
        console.print(f"[red]Cannot load driver {path}:[/] {e}")
        raise SystemExit(1)
    return RefinementScheduler.from_config(c["config"], c["store"], c["audit"], c["owners"], driver)


@refine.command("run-once")
def refine_run_once():
    """Refine every owner that is due, once (for cron/launchd integration)."""
    c = get_components()
    scheduler = _build_scheduler(c)
    results = scheduler.sweep()

    if not results:
        console.print("No owners due for refinement.")
        return
    for owner_id, result in results.items():
        console.print(f"{owner_id}: {result['status']}")


@refine.command("daemon")
@click.option("--cron", default=None, help="Cron expression (default: refinement.schedule)")
def refine_daemon(cron: str | None):
    """Run scheduled refinement sweeps until interrupted."""
    c = get_components()
    scheduler = _build_scheduler(c)
    scheduler.start(cron_expr=cron)

    console.print(f"[green]Started[/] refinement scheduler with cron: {cron or scheduler.schedule}")
    console.print("Press Ctrl+C to stop")

    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        scheduler.stop()
        console.print("\n[yellow]Stopped[/]")
