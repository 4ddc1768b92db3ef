"""Memory CLI commands — add, list, search, usage."""

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from memory.errors import ValidationError
from shared_types import MemoryKind

console = Console()


@click.group()
def memory():
    """Curated memories — core (budgeted) and journal (fading)."""
    pass


@memory.command("add")
@click.argument("owner_id")
@click.argument("content")
@click.option(
    "--kind",
    "-k",
    type=click.Choice([k.value for k in MemoryKind]),
    default=MemoryKind.CORE.value,
    help="Memory kind",
)
def memory_add(owner_id: str, content: str, kind: str):
    """Store a memory for an owner."""
    c = get_components()
    try:
        m = c["store"].create(owner_id, content.strip(), kind)
    except ValidationError as e:
        console.print(f"[red]Invalid memory:[/] {e}")
        raise SystemExit(1)
    console.print(f"[green]Saved[/] {m.kind.value} memory [dim]{m.id}[/]")


@memory.command("list")
@click.argument("owner_id")
def memory_list(owner_id: str):
    """List live core memories and journal entries still inside the fade window."""
    c = get_components()
    store = c["store"]
    window = c["config"]["memory"]["journal_window_days"]
    memories = store.live(owner_id, MemoryKind.CORE) + store.recent_journal(owner_id, window)

    if not memories:
        console.print("No memories stored.")
        return

    table = Table(title=f"Memories for {owner_id}")
    table.add_column("ID", style="dim", width=16)
    table.add_column("Kind", width=8)
    table.add_column("Created", width=10)
    table.add_column("Tokens", width=6)
    table.add_column("Content")

    for m in memories:
        flag = " [bold]\\[C][/]" if m.constitutional else ""
        table.add_row(
            m.id,
            m.kind.value,
            m.created_at.strftime("%Y-%m-%d"),
            str(store.accountant.count(m.content)),
            m.content[:80] + flag,
        )

    console.print(table)


@memory.command("search")
@click.argument("owner_id")
@click.argument("query")
@click.option("--limit", "-n", default=10)
def memory_search(owner_id: str, query: str, limit: int):
    """Substring search over live core memories."""
    c = get_components()
    results = c["store"].search(owner_id, query, limit=limit)

    if not results:
        console.print("No matching memories.")
        return

    for m in results:
        console.print(f"[dim]{m.id}[/] {m.content}")


@memory.command("usage")
@click.argument("owner_id")
def memory_usage(owner_id: str):
    """Show core token usage against the configured budget."""
    c = get_components()
    usage = c["store"].usage(owner_id)
    budget = c["config"]["refinement"]["core_token_budget"]
    console.print(f"Core token usage: {usage} / {budget}")
    if usage > budget:
        console.print(f"[yellow]Over budget by {usage - budget} tokens[/]")
