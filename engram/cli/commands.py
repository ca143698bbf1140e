"""CLI commands for engram."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from engram import __logo__, __version__
from engram.errors import EngramError

app = typer.Typer(
    name="engram",
    help=f"{__logo__} engram - scoped long-term memory for coding assistants",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} engram v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """engram - scoped long-term memory for coding assistants."""
    pass


# ============================================================================
# Shared helpers
# ============================================================================


def _service(config_path: Path | None = None):
    """Load config, set up logging and build a MemoryService."""
    from engram.config.loader import load_config
    from engram.logging_config import setup_logging
    from engram.service import MemoryService

    config = load_config(config_path)
    setup_logging(config.log_level)
    return MemoryService(config)


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


ConfigOption = typer.Option(None, "--config", "-c", help="Path to config.json")


# ============================================================================
# Memory commands
# ============================================================================


@app.command()
def store(
    content: str = typer.Argument(..., help="Memory content"),
    memory_type: str = typer.Option("semantic", "--type", "-t", help="working|episodic|semantic|procedural"),
    scope: str = typer.Option("project", "--scope", "-s", help="session|project|user"),
    tags: list[str] = typer.Option([], "--tag", help="Tag (repeatable)"),
    importance: float = typer.Option(0.5, "--importance", "-i"),
    session_id: str = typer.Option(None, "--session"),
    config_path: Path = ConfigOption,
):
    """Store a memory."""
    svc = _service(config_path)
    try:
        record = asyncio.run(svc.store_memory(
            content, memory_type=memory_type, scope=scope, tags=tags,
            importance=importance, session_id=session_id,
        ))
    except (ValueError, EngramError) as e:
        _fail(str(e))
    embedded = "with embedding" if record.embedding else "lexical only"
    console.print(f"[green]✓[/green] Stored {record.id} ({record.memory_type}/{record.scope}, {embedded})")


@app.command()
def recall(
    query: str = typer.Argument(..., help="What to look for"),
    scopes: list[str] = typer.Option([], "--scope", "-s", help="Scope to search (repeatable, default all)"),
    strategy: str = typer.Option("auto", "--strategy", help="auto|hybrid|bm25|rrf"),
    memory_types: list[str] = typer.Option([], "--type", "-t", help="Memory type to include (repeatable, default all)"),
    limit: int = typer.Option(10, "--limit", "-n"),
    session_id: str = typer.Option(None, "--session"),
    config_path: Path = ConfigOption,
):
    """Retrieve and rank memories for a query."""
    from engram.service import RetrievalOptions

    svc = _service(config_path)
    try:
        result = asyncio.run(svc.retrieve_and_rank(
            query, scopes=scopes or None,
            options=RetrievalOptions(
                strategy=strategy, limit=limit, session_id=session_id, memory_types=memory_types or None,
            ),
        ))
    except (ValueError, EngramError) as e:
        _fail(str(e))

    table = Table(title=f"Recall: {query[:40]} ({result.strategy})")
    table.add_column("#", style="dim")
    table.add_column("ID", style="cyan")
    table.add_column("Scope", style="magenta")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Strength", justify="right")
    table.add_column("Content")
    for n, item in enumerate(result.items, 1):
        text = item.record.content
        table.add_row(
            str(n), item.id[:12], item.scope, f"{item.score:.4f}", f"{item.strength:.3f}",
            text[:80] + ("…" if len(text) > 80 else ""),
        )
    console.print(table)
    if result.log_id is not None:
        console.print(f"[dim]log id {result.log_id}: engram feedback {result.log_id} --useful[/dim]")


@app.command()
def feedback(
    log_id: int = typer.Argument(..., help="Retrieval log id printed by recall"),
    useful: bool = typer.Option(..., "--useful/--useless", help="Was the result useful?"),
    used: list[str] = typer.Option([], "--used", help="Memory id that was used (repeatable, default all returned)"),
    session_id: str = typer.Option(None, "--session"),
    config_path: Path = ConfigOption,
):
    """Attach feedback to a retrieval."""
    svc = _service(config_path)
    try:
        entry = svc.record_feedback(log_id, useful, used_ids=used or None, session_id=session_id)
    except (KeyError, ValueError, EngramError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Feedback recorded for log {entry.id} ({'useful' if useful else 'not useful'})")


@app.command()
def forget(
    memory_id: str = typer.Argument(...),
    reason: str = typer.Option(None, "--reason", "-r"),
    config_path: Path = ConfigOption,
):
    """Soft-delete a memory."""
    svc = _service(config_path)
    try:
        svc.forget(memory_id, reason)
    except EngramError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Forgot {memory_id}")


@app.command()
def promote(
    memory_id: str = typer.Argument(...),
    target_scope: str = typer.Argument(..., help="project|user"),
    config_path: Path = ConfigOption,
):
    """Move a memory to a higher scope."""
    svc = _service(config_path)
    try:
        record = svc.promote(memory_id, target_scope)
    except (ValueError, EngramError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Promoted {record.id} to {record.scope}")


@app.command()
def peek(
    scope: str = typer.Option(None, "--scope", "-s", help="Scope to inspect (default all)"),
    sample_n: int = typer.Option(5, "--samples", "-n", help="Number of sample memories"),
    focus: str = typer.Option(None, "--focus", "-f", help="Topic the samples should match"),
    config_path: Path = ConfigOption,
):
    """Overview of stored memories with a few samples."""
    svc = _service(config_path)
    try:
        info = asyncio.run(svc.peek(scope, sample_n=sample_n, focus=focus))
    except (ValueError, EngramError) as e:
        _fail(str(e))

    console.print(f"{__logo__} Peek: {', '.join(info['scopes_queried'])}")
    console.print("Status: " + ", ".join(f"{s}={n}" for s, n in info["status_counts"].items()))
    if info["type_counts"]:
        console.print("Types: " + ", ".join(f"{t}={n}" for t, n in sorted(info["type_counts"].items())))
    if info["top_tags"]:
        console.print("Top tags: " + ", ".join(f"{t} ({n})" for t, n in info["top_tags"][:10]))

    table = Table(title=f"Samples ({len(info['samples'])})")
    table.add_column("ID", style="cyan")
    table.add_column("Scope", style="magenta")
    table.add_column("Type")
    table.add_column("Content")
    for m in info["samples"]:
        table.add_row(m.id[:12], m.scope, m.memory_type, m.content[:80] + ("…" if len(m.content) > 80 else ""))
    console.print(table)


@app.command()
def partition(
    by: str = typer.Argument(..., help="tag|date|type|scope|importance_band"),
    scope: str = typer.Option(None, "--scope", "-s", help="Scope to partition (default all)"),
    max_partitions: int = typer.Option(4, "--max", "-m"),
    config_path: Path = ConfigOption,
):
    """Split active memories into partitions for follow-up queries."""
    svc = _service(config_path)
    try:
        parts = svc.partition(by, scope=scope, max_partitions=max_partitions)
    except (ValueError, EngramError) as e:
        _fail(str(e))

    table = Table(title=f"Partitions by {by}")
    table.add_column("Key", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Avg importance", justify="right")
    for p in parts:
        table.add_row(p["key"], str(p["count"]), f"{p['avg_importance']:.2f}")
    console.print(table)


# ============================================================================
# Maintenance commands
# ============================================================================


@app.command()
def consolidate(config_path: Path = ConfigOption):
    """Run one consolidation pass (promote / archive / merge)."""
    svc = _service(config_path)
    summary = svc.run_consolidation_pass()

    table = Table(title="Consolidation")
    table.add_column("Memory", style="cyan")
    table.add_column("Action", style="yellow")
    table.add_column("Change")
    for t in summary.transitions:
        table.add_row(t.memory_id[:12], t.action.value, f"{t.old} → {t.new}")
    console.print(table)
    console.print(
        f"scanned {summary.scanned}, enqueued {summary.enqueued}, "
        f"skipped {summary.counts['skipped']}, failed {summary.counts['failed']}"
    )
    if summary.failed_items:
        console.print(f"[yellow]Failed queue items: {', '.join(map(str, summary.failed_items))}[/yellow]")


@app.command()
def evolve(
    apply: bool = typer.Option(False, "--apply", help="Commit the proposal (default: dry run)"),
    lookback_days: int = typer.Option(None, "--days", help="Log window in days"),
    config_path: Path = ConfigOption,
):
    """Propose (and optionally apply) bounded ranking-weight updates."""
    svc = _service(config_path)
    outcome = svc.run_evolution_pass(dry_run=not apply, lookback_days=lookback_days)

    console.print(f"{__logo__} Evolution ({outcome.feedback_count} feedback / {outcome.log_count} searches)\n")
    if outcome.changes:
        table = Table()
        table.add_column("Key", style="cyan")
        table.add_column("Current", justify="right")
        table.add_column("Proposed", justify="right", style="green")
        table.add_column("Reason", style="dim")
        for c in outcome.changes:
            cur = f"{c.current:.4f}" if isinstance(c.current, float) else str(c.current)
            new = f"{c.proposed:.4f}" if isinstance(c.proposed, float) else str(c.proposed)
            table.add_row(f"{c.key}.{c.name}", cur, new, c.reason)
        console.print(table)

    if not outcome.accepted:
        console.print(f"[yellow]Rejected: {outcome.reason}[/yellow] {outcome.detail}")
    elif outcome.applied:
        console.print("[green]✓[/green] Applied")
    else:
        console.print("[dim]Dry run, re-run with --apply to commit[/dim]")


@app.command()
def rollback(
    key: str = typer.Argument(..., help="Evolution state key, e.g. retrieval_weights"),
    config_path: Path = ConfigOption,
):
    """Restore the previous value of an evolution state key."""
    svc = _service(config_path)
    try:
        value = svc.rollback(key)
    except (KeyError, ValueError, EngramError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {key} restored: {value}")


@app.command()
def status(
    scope: str = typer.Option(None, "--scope", "-s", help="Limit counts to one scope"),
    config_path: Path = ConfigOption,
):
    """Show memory counts, tags and evolution state."""
    from engram.config.loader import get_config_path

    path = config_path or get_config_path()
    svc = _service(config_path)
    try:
        info = svc.status() if scope is None else {**svc.status(), **asyncio.run(svc.peek(scope, sample_n=0))}
    except ValueError as e:
        _fail(str(e))

    console.print(f"{__logo__} engram Status\n")
    console.print(f"Config: {path} {'[green]✓[/green]' if path.exists() else '[dim]defaults[/dim]'}")
    console.print(f"Database: {svc.db.db_path}")
    console.print(f"Embeddings: {info['embedding_provider']}")

    table = Table(title="Memories" + (f" ({scope})" if scope else ""))
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for name, n in info["status_counts"].items():
        table.add_row(name, str(n))
    console.print(table)

    if info["type_counts"]:
        console.print("Types: " + ", ".join(f"{t}={n}" for t, n in sorted(info["type_counts"].items())))
    if info["top_tags"]:
        console.print("Top tags: " + ", ".join(f"{t} ({n})" for t, n in info["top_tags"][:10]))
    rng = info["date_range"]
    if rng["min"]:
        console.print(f"Created: {rng['min'][:19]} → {rng['max'][:19]}")
    console.print(f"Pending consolidation: {info['pending_consolidation']}")

    evo = info["evolution"]
    hybrid = evo["retrieval_weights"]["hybrid"]
    console.print(
        f"Strategy: {evo['default_strategy']}  hybrid weights "
        f"lex={hybrid['lexical']:.3f} vec={hybrid['vector']:.3f} str={hybrid['strength']:.3f}"
    )
    console.print("Scope weights: " + ", ".join(f"{s}={w:.2f}" for s, w in evo["scope_weights"].items()))
    if evo["fallbacks"]:
        console.print(f"[yellow]Using defaults for malformed state: {', '.join(evo['fallbacks'])}[/yellow]")


if __name__ == "__main__":
    app()
