"""
Command-line interface for blockoli.

Provides commands for managing projects, indexing source trees and
searching the indexed code blocks.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.syntax import Syntax
from rich.table import Table

from . import __version__
from .config import CONFIG_DIR, CONFIG_FILE, Config
from .discovery import FileDiscovery
from .engine import Engine
from .errors import BlockoliError
from .extractors import EXTENSION_MAP
from .logging_config import setup_logging
from .models import CodeBlock
from .progress import ProgressEvent, ProgressReporter

logger = logging.getLogger(__name__)

console = Console()

# Errors reported to the user as a message and exit code 1
USER_ERRORS = (BlockoliError, ValueError, OSError)

CONFIG_TEMPLATE = """# blockoli configuration

[storage]
backend = "sqlite"            # "memory", "sqlite" or "lance"
sqlite_path = ".blockoli/blockoli.sqlite"
lance_path = ".blockoli/data.lance"

[embeddings]
model = "all-MiniLM-L6-v2"
dimension = 384               # width of the lance vector column
max_attempts = 3
timeout_seconds = 30.0
max_chars = 20000

[indexer]
max_workers = 4
strict_parse = true           # files with syntax errors are reported failed
max_file_size = 1048576       # 1MB
exclude = [
    "node_modules",
    ".git",
    ".blockoli",
    "__pycache__",
    "dist",
    "build",
    ".venv",
    "venv",
    "*.min.js",
]

[search]
default_limit = 5
metric = "euclidean"          # "euclidean" or "manhattan"
rebuild_lock_timeout = 0.5

[logging]
level = "INFO"
file = ""
json = false
"""


def _fail(message: str, error: Exception) -> None:
    console.print(f"[red]{message}: {error}[/red]")
    if logger.isEnabledFor(logging.DEBUG):
        raise error
    sys.exit(1)


def _open_engine(ctx: click.Context) -> Engine:
    config: Config = ctx.obj["config"]
    engine = Engine.from_config(config)
    ctx.call_on_close(engine.close)
    return engine


def _print_blocks(blocks: list[CodeBlock], title: str) -> None:
    if not blocks:
        console.print("[yellow]No blocks found.[/yellow]")
        return

    table = Table(title=title)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Location")
    table.add_column("Calls", style="dim")
    for block in blocks:
        table.add_row(
            str(block.id),
            block.block_type,
            block.qualified_name,
            f"{block.path}:{block.start_line}-{block.end_line}",
            ", ".join(block.outgoing_calls),
        )
    console.print(table)


@click.group()
@click.option("--root", "-r", default=".", type=click.Path(file_okay=False), help="Directory holding .blockoli/")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs to this file")
@click.version_option(version=__version__, prog_name="blockoli")
@click.pass_context
def main(ctx: click.Context, root: str, debug: bool, log_file: Optional[str]):
    """blockoli - Code block indexing and similarity search."""
    config = Config(Path(root).resolve())
    log_config = config.logging
    level = "DEBUG" if debug else log_config.get("level", "INFO")
    log_path = log_file or log_config.get("file") or None
    setup_logging(
        level=level,
        log_file=Path(log_path) if log_path else None,
        json_format=log_config.get("json", False),
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.option("--path", "-p", default=".", help="Directory to initialize")
def init(path: str):
    """Write a default configuration file."""
    project_root = Path(path).resolve()
    config_dir = project_root / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(CONFIG_TEMPLATE)

    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print("\nNext steps:")
    console.print("  1. Run [cyan]blockoli index <project> <path>[/cyan] to index a source tree")
    console.print("  2. Run [cyan]blockoli search <project> <query>[/cyan] to search it")


@main.command()
@click.argument("name")
@click.pass_context
def create(ctx: click.Context, name: str):
    """Create an empty project."""
    engine = _open_engine(ctx)
    try:
        engine.create_project(name)
    except USER_ERRORS as e:
        _fail("Error creating project", e)
    console.print(f"[green]✓[/green] Created project {name}")


@main.command()
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this project and all its blocks?")
@click.pass_context
def delete(ctx: click.Context, name: str):
    """Delete a project and all its blocks."""
    engine = _open_engine(ctx)
    try:
        engine.delete_project(name)
    except USER_ERRORS as e:
        _fail("Error deleting project", e)
    console.print(f"[green]✓[/green] Deleted project {name}")


@main.command()
@click.argument("name")
@click.pass_context
def info(ctx: click.Context, name: str):
    """Show project statistics."""
    engine = _open_engine(ctx)
    try:
        project = engine.get_project(name)
    except USER_ERRORS as e:
        _fail("Error getting project", e)

    table = Table(title=f"Project {project.name}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Code blocks", str(project.total_code_blocks))
    table.add_row("Embedded blocks", str(project.embedded_blocks))
    table.add_row("Dimension", str(project.dimension) if project.dimension else "-")
    table.add_row("Generation", str(project.generation))
    console.print(table)


@main.command()
@click.pass_context
def projects(ctx: click.Context):
    """List all projects."""
    engine = _open_engine(ctx)
    try:
        names = engine.list_projects()
    except USER_ERRORS as e:
        _fail("Error listing projects", e)

    if not names:
        console.print("[yellow]No projects found.[/yellow]")
        return
    for name in names:
        console.print(name)


@main.command()
@click.argument("name")
@click.argument("path", default=".", type=click.Path(exists=True))
@click.pass_context
def index(ctx: click.Context, name: str, path: str):
    """Index a source tree into a project."""
    config: Config = ctx.obj["config"]
    index_path = Path(path).resolve()
    discovery = FileDiscovery(
        exclude=config.get("indexer", "exclude", default=[]),
        max_file_size=config.get("indexer", "max_file_size", default=1048576),
        extensions=EXTENSION_MAP,
    )
    engine = _open_engine(ctx)

    try:
        files = list(discovery.read_files(index_path))
    except USER_ERRORS as e:
        _fail("Error reading files", e)

    console.print(f"[cyan]Indexing {len(files)} files from {index_path} into {name}...[/cyan]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        TextColumn("[cyan]ETA: {task.fields[eta]}"),
        console=console,
    ) as progress:
        task = progress.add_task("Indexing files...", total=len(files), eta="calculating...")

        def progress_callback(event: ProgressEvent):
            progress.update(
                task,
                total=event.total,
                completed=event.current,
                description=f"Indexing: {Path(event.path).name}",
                eta=ProgressReporter.format_eta(event.eta_seconds),
            )

        try:
            report = engine.reindex(name, files, progress_callback=progress_callback)
        except USER_ERRORS as e:
            _fail("\nError during indexing", e)

    console.print("\n[green]✓ Indexing complete![/green]\n")
    console.print(str(report))

    if report.failed:
        console.print("\n[bold red]Failed files:[/bold red]")
        for file_report in report.failed:
            console.print(f"  {file_report.path}: [red]{file_report.error.message}[/red]")

    embedding_failures = [(f.path, b) for f in report.files for b in f.embedding_failures]
    if embedding_failures:
        console.print("\n[bold yellow]Blocks stored without embedding:[/bold yellow]")
        for file_path, failure in embedding_failures:
            qualified = f"{failure.scope}.{failure.name}" if failure.scope else failure.name
            console.print(f"  {file_path}:{qualified}: [yellow]{failure.message}[/yellow]")


@main.command()
@click.argument("name")
@click.argument("query")
@click.option("--limit", "-k", type=int, default=None, help="Number of results (default: search.default_limit)")
@click.pass_context
def search(ctx: click.Context, name: str, query: str, limit: Optional[int]):
    """Find the code blocks most similar to a query."""
    engine = _open_engine(ctx)
    console.print(f'[cyan]Searching {name}:[/cyan] "{query}"\n')

    try:
        hits = engine.search(name, query, k=limit)
    except USER_ERRORS as e:
        _fail("Error during search", e)

    for i, hit in enumerate(hits, 1):
        block = hit.block
        console.print(
            f"[bold]{i}. {block.path}:{block.start_line}-{block.end_line}[/bold] "
            f"[dim](distance: {hit.distance:.4f})[/dim] "
            f"[cyan]{block.block_type}: {block.qualified_name}[/cyan]"
        )
        console.print(Syntax(
            block.text,
            block.language,
            theme="monokai",
            line_numbers=True,
            start_line=block.start_line,
        ))
        console.print()


@main.command()
@click.argument("name")
@click.option("--functions", is_flag=True, help="Only function and method blocks")
@click.pass_context
def blocks(ctx: click.Context, name: str, functions: bool):
    """List the blocks of a project."""
    engine = _open_engine(ctx)
    try:
        if functions:
            found = engine.list_function_blocks(name)
        else:
            found = list(engine.list_blocks(name))
    except USER_ERRORS as e:
        _fail("Error listing blocks", e)
    _print_blocks(found, f"Blocks in {name}")


@main.command()
@click.argument("name")
@click.argument("function")
@click.pass_context
def find(ctx: click.Context, name: str, function: str):
    """Find blocks by exact name."""
    engine = _open_engine(ctx)
    try:
        found = engine.find_by_function_name(name, function)
    except USER_ERRORS as e:
        _fail("Error finding blocks", e)
    _print_blocks(found, f"Blocks named {function}")


@main.command()
@click.argument("name")
@click.argument("text")
@click.pass_context
def grep(ctx: click.Context, name: str, text: str):
    """Find function blocks whose source contains TEXT."""
    engine = _open_engine(ctx)
    try:
        found = engine.search_function_blocks(name, text)
    except USER_ERRORS as e:
        _fail("Error searching blocks", e)
    _print_blocks(found, f"Function blocks containing {text!r}")


if __name__ == "__main__":
    main()
