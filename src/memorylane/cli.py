"""Administrative CLI for Memory Lane.

    memorylane extract session.jsonl
    memorylane recall "what language should I use" --entity Acme
    memorylane feedback 01J... positive
    memorylane memories --type correction --since "30 days ago"
    memorylane entities --search acme
    memorylane merge-entities KEEP_ID MERGE_ID
    memorylane cleanup --older-than "90 days ago" --yes
    memorylane backfill
    memorylane stats
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import Settings, setup_logging
from .constants import CLEANUP_AGE_DAYS, CLEANUP_MAX_CONFIDENCE, ENTITY_TYPES
from .engine import MemoryLane
from .errors import ConfigError, MemoryLaneError
from .memory_store import MemoryQuery
from .models import MEMORY_TYPES
from .timeutil import format_relative_time, parse_time_reference

console = Console()

T = TypeVar("T")


def _parse_time_option(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_time_reference(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def run_with_lane(ctx: click.Context, action: Callable[[MemoryLane], Awaitable[T]]) -> T:
    """Open a MemoryLane, run ``action`` on it, close it.

    Memory Lane errors are printed and exit with status 1.
    """
    factory = ctx.obj.get("lane_factory") or MemoryLane.from_settings

    async def _main() -> T:
        async with factory(ctx.obj["settings"]) as lane:
            return await action(lane)

    try:
        return asyncio.run(_main())
    except MemoryLaneError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        ctx.exit(1)


def _score_style(score: float) -> str:
    if score >= 0.8:
        return "green"
    if score >= 0.5:
        return "yellow"
    return "red"


@click.group()
@click.option(
    "--memory-path",
    envvar="MEMORY_PATH",
    type=click.Path(path_type=Path),
    help="Directory holding memorylane.db (default: .memorylane)",
)
@click.option("--log-level", help="Logging level (default: INFO, or LOG_LEVEL)")
@click.pass_context
def cli(ctx, memory_path, log_level):
    """Memory Lane - extract, recall and rate conversation memories."""
    ctx.ensure_object(dict)
    try:
        settings = Settings.from_env(memory_path=memory_path, log_level=log_level)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        ctx.exit(1)
    ctx.obj["settings"] = settings
    setup_logging(settings)


@cli.command()
@click.argument("session_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--session-id", help="Session id to record (default: file name)")
@click.pass_context
def extract(ctx, session_file, session_id):
    """Extract memories from a JSONL session transcript."""

    def progress(done: int, total: int) -> None:
        console.print(f"[dim]  chunk {done}/{total}[/dim]")

    report = run_with_lane(
        ctx, lambda lane: lane.extract_from_session(session_file, session_id, progress)
    )

    console.print(
        f"[green]✓[/green] {report.total_messages} messages in {report.total_chunks} chunks: "
        f"[bold]{len(report.created)}[/bold] created, [bold]{len(report.merged)}[/bold] merged"
        + (f", {report.dropped} dropped" if report.dropped else "")
    )
    if report.warning:
        console.print(f"[yellow]![/yellow] {report.warning}")
    for memory in report.created:
        console.print(f"  [green]+[/green] {memory.type}: {escape(memory.title)}")


@cli.command()
@click.argument("query")
@click.option("--entity", "entities", multiple=True, help="Entity name hint (repeatable)")
@click.option("-n", "--limit", type=click.IntRange(min=1), help="Maximum results")
@click.pass_context
def recall(ctx, query, entities, limit):
    """Retrieve the memories most relevant to QUERY."""
    settings: Settings = ctx.obj["settings"]
    config = settings.retrieval_config()
    if limit is not None:
        config = config.model_copy(update={"limit": limit})

    result = run_with_lane(ctx, lambda lane: lane.retrieve(query, list(entities), config))

    if result.degraded:
        console.print(f"[yellow]![/yellow] Degraded retrieval: {result.degraded_reason}")
    if not result.results:
        console.print("[dim]No relevant memories.[/dim]")
        return

    table = Table(title=f"Memories for: {query}")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Type", style="magenta")
    table.add_column("Title")
    table.add_column("Via", style="dim")
    table.add_column("ID", style="dim")
    for rank, item in enumerate(result.results, start=1):
        table.add_row(
            str(rank),
            f"[{_score_style(item.final_score)}]{item.final_score:.2f}[/]",
            item.memory.type,
            escape(item.memory.title),
            item.retrieval_method,
            item.id,
        )
    console.print(table)


@cli.command()
@click.argument("memory_id")
@click.argument("polarity", type=click.Choice(["positive", "negative"]))
@click.pass_context
def feedback(ctx, memory_id, polarity):
    """Record whether a recalled memory was useful."""
    run_with_lane(ctx, lambda lane: lane.submit_feedback(memory_id, polarity))
    mark = "[green]+[/green]" if polarity == "positive" else "[red]-[/red]"
    console.print(f"{mark} Recorded {polarity} feedback for {memory_id}")


@cli.command()
@click.option("--type", "memory_type", type=click.Choice(list(MEMORY_TYPES)), help="Filter by type")
@click.option("--since", callback=_parse_time_option, help='First observed since (e.g. "7 days ago")')
@click.option("--search", "text", help="Substring of title, content or category")
@click.option("-n", "--limit", default=20, type=click.IntRange(min=1), help="Maximum rows")
@click.pass_context
def memories(ctx, memory_type, since, text, limit):
    """List stored memories, newest first."""
    query = MemoryQuery(
        types=[memory_type] if memory_type else None,
        since=since,
        text=text,
        limit=limit,
    )
    rows = run_with_lane(ctx, lambda lane: lane.list_memories(query))
    if not rows:
        console.print("[dim]No memories found.[/dim]")
        return

    table = Table(title=f"Memories ({len(rows)})")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="magenta")
    table.add_column("Title")
    table.add_column("Conf", justify="right")
    table.add_column("Seen", justify="right")
    table.add_column("Recalls", justify="right")
    table.add_column("+/-", justify="right")
    table.add_column("Last seen", style="dim")
    for memory in rows:
        table.add_row(
            memory.id,
            memory.type,
            escape(memory.title),
            f"{memory.confidence_score:.2f}",
            str(memory.times_observed),
            str(memory.recall_count),
            f"{memory.positive_feedback}/{memory.negative_feedback}",
            format_relative_time(memory.last_observed_at),
        )
    console.print(table)


@cli.command()
@click.option("--type", "entity_type", type=click.Choice(list(ENTITY_TYPES)), help="Filter by type")
@click.option("--search", "term", help="Substring of name or alias")
@click.pass_context
def entities(ctx, entity_type, term):
    """List known entities."""

    async def _load(lane: MemoryLane):
        if term:
            return await lane.search_entities(term, entity_type)
        return await lane.list_entities(entity_type)

    rows = run_with_lane(ctx, _load)
    if not rows:
        console.print("[dim]No entities found.[/dim]")
        return

    table = Table(title=f"Entities ({len(rows)})")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="magenta")
    table.add_column("Name")
    table.add_column("Slug", style="cyan")
    table.add_column("Aliases")
    for entity in rows:
        table.add_row(
            entity.id,
            entity.type,
            escape(entity.canonical_name),
            entity.slug,
            escape(", ".join(entity.aliases)),
        )
    console.print(table)


@cli.command("merge-entities")
@click.argument("keep_id")
@click.argument("merge_id")
@click.pass_context
def merge_entities(ctx, keep_id, merge_id):
    """Merge MERGE_ID into KEEP_ID and delete MERGE_ID."""
    entity = run_with_lane(ctx, lambda lane: lane.merge_entities(keep_id, merge_id))
    console.print(
        f"[green]✓[/green] Merged into {escape(entity.canonical_name)} ({entity.slug}); "
        f"aliases: {escape(', '.join(entity.aliases)) or '-'}"
    )


@cli.command()
@click.option(
    "--older-than",
    default=f"{CLEANUP_AGE_DAYS} days ago",
    show_default=True,
    callback=_parse_time_option,
    help="Delete memories first observed before this",
)
@click.option(
    "--max-confidence",
    default=CLEANUP_MAX_CONFIDENCE,
    show_default=True,
    type=click.FloatRange(0.0, 1.0),
    help="Only delete memories at or below this confidence",
)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def cleanup(ctx, older_than, max_confidence, yes):
    """Delete old, low-confidence memories that were never recalled."""
    if not yes:
        click.confirm(
            f"Delete never-recalled memories older than {older_than.date()} "
            f"with confidence <= {max_confidence}?",
            abort=True,
        )
    deleted = run_with_lane(
        ctx, lambda lane: lane.cleanup(older_than=older_than, max_confidence=max_confidence)
    )
    console.print(f"[green]✓[/green] Deleted {deleted} memories")


@cli.command()
@click.pass_context
def backfill(ctx):
    """Compute embeddings for memories stored with embedding pending."""
    count = run_with_lane(ctx, lambda lane: lane.backfill_embeddings())
    console.print(f"[green]✓[/green] Backfilled {count} embeddings")


@cli.command()
@click.pass_context
def stats(ctx):
    """Show memory, entity and retrieval statistics."""

    async def _load(lane: MemoryLane):
        return await lane.statistics(), await lane.embedding_health()

    data, health = run_with_lane(ctx, _load)
    mem = data["memories"]
    ent = data["entities"]
    ret = data["retrieval"]

    console.print(f"[bold]Memories:[/bold] {mem['total']} "
                  f"(embeddings {mem['embedding_coverage']}%, {mem['embedding_pending']} pending)")
    if mem["by_type"]:
        table = Table()
        table.add_column("Type", style="magenta")
        table.add_column("Count", justify="right")
        table.add_column("Avg conf", justify="right")
        for memory_type, row in mem["by_type"].items():
            table.add_row(memory_type, str(row["count"]), f"{row['avg_confidence']:.2f}")
        console.print(table)

    console.print(f"[bold]Entities:[/bold] {ent['total']} "
                  + ", ".join(f"{t}: {n}" for t, n in ent["by_type"].items()))
    for item in ent["most_mentioned"][:5]:
        console.print(f"  {item['canonical_name']} ({item['type']}): {item['mentions']} mentions")

    ratio = ret["feedback_ratio"]
    console.print(
        f"[bold]Recalls:[/bold] {ret['total_recalls']} over {ret['distinct_queries']} queries, "
        f"avg score {ret['avg_final_score']:.2f}, "
        f"feedback {'-' if ratio is None else f'{ratio:.0%} positive'}"
    )

    status_style = {"ready": "green", "degraded": "yellow", "unavailable": "red"}[health.status.value]
    console.print(
        f"[bold]Embeddings:[/bold] [{status_style}]{health.status.value}[/] "
        f"{health.embedding_model or ''}" + (f" - {health.error}" if health.error else "")
    )


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
