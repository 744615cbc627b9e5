"""Explora CLI - build and explore concept maps from the terminal."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

from explora import __version__
from explora.cache.content_cache import InMemoryContentCache, RedisContentCache
from explora.engine.builder import BuildContext, GraphBuilder
from explora.engine.pipeline import GenerationPipeline
from explora.engine.replay import replay_graph
from explora.errors import ExploraError, TerminalStreamError
from explora.models.content import ContentPage
from explora.models.graph import ROOT_NODE_ID, Graph, GraphNode, ProgressSnapshot
from explora.models.resources import SessionContext, Topic
from explora.persistence.store import JsonFileStore
from explora.persistence.sync import PersistenceSynchronizer
from explora.utils.config import get_settings

console = Console()

DEFAULT_SESSION = "cli"


def run_async(coro: Any) -> Any:
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def _configure_logging(quiet: bool) -> None:
    if quiet:
        return
    level = logging.DEBUG if get_settings().debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("explora").setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _synchronizer(data_path: str | None) -> PersistenceSynchronizer:
    store = JsonFileStore(Path(data_path) if data_path else None)
    return PersistenceSynchronizer(store)


def _node_label(node: GraphNode) -> str:
    label = f"[bold]{node.label}[/bold]" if node.is_root else node.label
    if node.error:
        label += " [red](error)[/red]"
    if node.importance is not None:
        label += f" [dim]{node.importance.value}[/dim]"
    if node.expandable and not node.expanded and not node.is_root:
        label += " [cyan]+[/cyan]"
    return f"{label} [dim]{node.id}[/dim]"


def _build_tree(graph: Graph, node: GraphNode, tree: Tree) -> None:
    """Recursively build tree display."""
    for child in graph.children_of(node.id):
        branch = tree.add(_node_label(child))
        _build_tree(graph, child, branch)


def _display_graph(snapshot: ProgressSnapshot) -> None:
    graph = snapshot.graph
    root = graph.get_node(ROOT_NODE_ID)
    if root is None:
        console.print("[yellow]Graph is empty[/yellow]")
        return
    tree = Tree(_node_label(root))
    _build_tree(graph, root, tree)
    console.print(tree)
    console.print(
        f"[dim]{len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges, "
        f"complete={snapshot.is_complete}[/dim]"
    )


def _display_page(page: ContentPage) -> None:
    console.print(Panel(page.description or page.title, title=page.title, border_style="blue"))
    for section in sorted(page.sections, key=lambda s: s.order):
        console.print(f"\n[bold]{section.title}[/bold] [dim]({section.type.value})[/dim]")
        for paragraph in sorted(section.paragraphs, key=lambda p: p.order):
            if paragraph.title:
                console.print(f"[italic]{paragraph.title}[/italic]")
            console.print(paragraph.content)


def _report_failure(error: TerminalStreamError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    if error.snapshot is not None and error.snapshot.nodes:
        console.print("[dim]Partial graph:[/dim]")
        _display_graph(error.snapshot)


@click.group()
@click.version_option(version=__version__, prog_name="explora")
def cli() -> None:
    """Explora - streaming concept maps for any topic.

    \b
    Commands:
        analyze <topic|url>         Build a concept map
        expand <topic_id> <node>    Expand one concept into sub-concepts
        replay <topic_id>           Replay a stored map
        content <topic>             Generate a reading page
        topics                      List stored topics
    """
    pass


@cli.command("analyze")
@click.argument("topic")
@click.option("--session", "-s", default=DEFAULT_SESSION, help="Session id that owns the topic")
@click.option("--language", "-l", default=None, help="Content language (default from settings)")
@click.option("--data-path", type=click.Path(), help="Directory for stored topics and maps")
@click.option("--output", "-o", type=click.Path(), help="Write the final graph as JSON")
@click.option("--quiet", "-q", is_flag=True, help="Suppress log output")
def analyze(
    topic: str,
    session: str,
    language: str | None,
    data_path: str | None,
    output: str | None,
    quiet: bool,
) -> None:
    """Build the concept map for TOPIC (a topic name or a URL)."""
    _configure_logging(quiet)
    settings = get_settings()
    ctx = SessionContext(session_id=session, language=language or settings.default_language)
    pipeline = GenerationPipeline(synchronizer=_synchronizer(data_path))

    async def _analyze() -> Any:
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                task = progress.add_task("Connecting...", total=None)

                def on_progress(snapshot: ProgressSnapshot) -> None:
                    progress.update(
                        task,
                        description=f"{snapshot.current_step} ({len(snapshot.nodes)} nodes)",
                    )

                return await pipeline.analyze(topic, on_progress, ctx=ctx)
        finally:
            await pipeline.aclose()

    try:
        result = run_async(_analyze())
    except TerminalStreamError as e:
        _report_failure(e)
        sys.exit(1)

    _display_graph(result.snapshot)
    if result.topic is not None:
        source = "stored map" if result.from_cache else "live"
        console.print(f"[dim]Topic id: {result.topic.id} ({source})[/dim]")
    for error in result.persistence_errors:
        console.print(f"[yellow]Not saved:[/yellow] {error}")

    if output:
        output_path = Path(output)
        with output_path.open("w") as f:
            json.dump(result.snapshot.to_wire(), f, indent=2)
        console.print(f"\n[dim]Graph written to {output_path}[/dim]")


@cli.command("expand")
@click.argument("topic_id")
@click.argument("node_id")
@click.option("--language", "-l", default=None, help="Content language (default from settings)")
@click.option("--data-path", type=click.Path(), help="Directory for stored topics and maps")
@click.option("--quiet", "-q", is_flag=True, help="Suppress log output")
def expand(
    topic_id: str,
    node_id: str,
    language: str | None,
    data_path: str | None,
    quiet: bool,
) -> None:
    """Expand NODE_ID of a stored map into sub-concepts."""
    _configure_logging(quiet)
    settings = get_settings()
    pipeline = GenerationPipeline(synchronizer=_synchronizer(data_path))
    ctx = SessionContext(language=language or settings.default_language)

    async def _expand() -> Any:
        try:
            return await pipeline.expand(topic_id, node_id, ctx=ctx)
        finally:
            await pipeline.aclose()

    try:
        result = run_async(_expand())
    except (KeyError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except TerminalStreamError as e:
        _report_failure(e)
        sys.exit(1)

    if result.from_cache:
        console.print("[dim]Node was already expanded[/dim]")
    console.print(f"[green]✓ {len(result.new_node_ids)} sub-concepts under {node_id}[/green]")
    _display_graph(result.snapshot)


@cli.command("replay")
@click.argument("topic_id")
@click.option("--data-path", type=click.Path(), help="Directory for stored topics and maps")
@click.option("--instant", is_flag=True, help="Skip the replay pacing")
def replay(topic_id: str, data_path: str | None, instant: bool) -> None:
    """Replay the stored map of TOPIC_ID as it was streamed."""
    synchronizer = _synchronizer(data_path)

    async def _no_sleep(_: float) -> None:
        return None

    async def _replay() -> ProgressSnapshot | None:
        stored = await synchronizer.load_snapshot(topic_id)
        if stored is None:
            return None

        root = stored.root
        builder = GraphBuilder(
            BuildContext.from_settings(
                root.label if root else topic_id, root.source_url if root else None
            )
        )
        builder.start()
        sleep = _no_sleep if instant else asyncio.sleep
        async for message in replay_graph(stored.graph, sleep=sleep):
            snapshot = builder.apply(message)
            console.print(
                f"[dim]{message.type:<15}[/dim] {snapshot.current_step} "
                f"[dim]({len(snapshot.nodes)} nodes)[/dim]"
            )
        return builder.snapshot

    snapshot = run_async(_replay())
    if snapshot is None:
        console.print(f"[red]No mind map stored for topic {topic_id}[/red]")
        sys.exit(1)
    _display_graph(snapshot)


@cli.command("content")
@click.argument("topic")
@click.option("--difficulty", "-d", type=click.Choice(["beginner", "intermediate", "advanced"]),
              default="intermediate", help="Target reader level")
@click.option("--context", "-c", default="", help="Extra context for the generator")
@click.option("--language", "-l", default=None, help="Content language (default from settings)")
@click.option("--no-redis", is_flag=True, help="Use a process-local cache instead of Redis")
@click.option("--quiet", "-q", is_flag=True, help="Suppress log output")
def content(
    topic: str,
    difficulty: str,
    context: str,
    language: str | None,
    no_redis: bool,
    quiet: bool,
) -> None:
    """Generate a sectioned reading page for TOPIC."""
    _configure_logging(quiet)

    async def _generate() -> Any:
        cache: Any
        if no_redis:
            cache = InMemoryContentCache()
        else:
            cache = RedisContentCache()
            await cache.connect()
        pipeline = GenerationPipeline(content_cache=cache)
        try:
            return await pipeline.generate_content(
                topic, context=context, difficulty=difficulty, language=language
            )
        finally:
            await pipeline.aclose()
            if isinstance(cache, RedisContentCache):
                await cache.disconnect()

    try:
        result = run_async(_generate())
    except TerminalStreamError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    if result.from_cache:
        console.print("[dim]Served from cache[/dim]")
    _display_page(result.page)


@cli.command("topics")
@click.option("--session", "-s", default=DEFAULT_SESSION, help="Session id to list")
@click.option("--data-path", type=click.Path(), help="Directory for stored topics and maps")
def topics(session: str, data_path: str | None) -> None:
    """List topics stored for a session."""
    synchronizer = _synchronizer(data_path)

    try:
        records = run_async(synchronizer.store.find(Topic.kind, session_id=session))
    except ExploraError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    if not records:
        console.print(f"[dim]No topics for session {session}[/dim]")
        return

    table = Table(title=f"Topics ({session})")
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Source")
    table.add_column("Nodes", justify="right")
    for record in records:
        data = record.mind_map_data or {}
        table.add_row(
            record.id, record.title, record.source_type.value, str(data.get("nodeCount", "-"))
        )
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
