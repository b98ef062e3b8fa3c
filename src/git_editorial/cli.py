"""
Command-line interface for the Git editorial workflow.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import WorkflowConfig
from .git_host import GitHost
from .models import Entry, FileItem, MergeMethod, PersistOptions, WorkflowError, WorkflowStatus
from .workflow import EditorialWorkflow
from . import __version__ as PACKAGE_VERSION


console = Console()
logger = logging.getLogger(__name__)


def _print_version(ctx, param, value):
    """Eager option callback to print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"git-editorial {PACKAGE_VERSION}")
    ctx.exit()


def _default_log_path() -> Path:
    """Determine default log file path (~/.git-editorial/git-editorial.log)."""
    env_path = os.environ.get("GIT_EDITORIAL_LOG")
    if env_path:
        p = Path(env_path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
    base = Path.home() / ".git-editorial"
    base.mkdir(parents=True, exist_ok=True)
    return base / "git-editorial.log"


def setup_logging(verbose: bool = False, console_level: Optional[str] = None, log_file: Optional[Path] = None) -> Path:
    """Setup logging to a rotating file, plus a rich console handler when asked for.

    Returns the log file path.
    """
    log_path = Path(log_file) if log_file else _default_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    # Clear existing handlers to avoid duplication in tests / repeated invocations
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    file_handler = RotatingFileHandler(str(log_path), maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    root.addHandler(file_handler)

    # GitPython logs every command at debug level
    logging.getLogger("git").setLevel(logging.INFO)

    if verbose or console_level:
        level_map = {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
        }
        console_handler = RichHandler(console=console, rich_tracebacks=True)
        console_handler.setLevel(level_map.get((console_level or "info").lower(), logging.INFO))
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(console_handler)

    return log_path


def _make_workflow(ctx: click.Context) -> EditorialWorkflow:
    config: WorkflowConfig = ctx.obj["config"]
    host = GitHost(ctx.obj.get("repo_path"), default_author=config.author)
    return EditorialWorkflow(host, config)


def _fail(action: str, error: Exception) -> None:
    console.print(f"\n❌ **{action} failed:** {error}", style="bold red")
    # Debug stack trace to file logs for diagnostics
    logger.debug(f"Error in {action.lower()} command", exc_info=True)
    sys.exit(1)


def _read_file_item(source_dir: Path, path: str) -> FileItem:
    data = (source_dir / path).read_bytes()
    return FileItem(path=path, raw=data, is_binary=b"\0" in data)


@click.group()
@click.option(
    "--version",
    "-V",
    is_flag=True,
    callback=_print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose console logging (INFO)")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Console log level. By default, console logging is disabled.",
)
@click.option(
    "--repo-path",
    type=click.Path(path_type=Path),
    help="Path to the content repository (defaults to current directory)",
)
@click.option("--branch", "base_branch", default=None, help="Base branch entries are published to")
@click.option("--squash", is_flag=True, help="Squash review branches when publishing")
@click.option("--asset-store", is_flag=True, help="Media files are kept in an external asset store")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    log_level: Optional[str],
    repo_path: Optional[Path],
    base_branch: Optional[str],
    squash: bool,
    asset_store: bool,
) -> None:
    """Git Editorial - draft, review and publish content stored in a Git repository."""
    log_path = setup_logging(verbose, console_level=log_level)

    ctx.ensure_object(dict)
    ctx.obj["log_path"] = log_path
    ctx.obj["repo_path"] = repo_path.resolve() if isinstance(repo_path, Path) else None
    try:
        ctx.obj["config"] = WorkflowConfig.from_env(
            base_branch=base_branch,
            merge_method=MergeMethod.SQUASH if squash else None,
            has_asset_store=True if asset_store else None,
        )
    except WorkflowError as e:
        _fail("Configuration", e)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--bare/--no-bare", default=True, help="Create a bare repository")
@click.pass_context
def init(ctx: click.Context, path: Path, bare: bool) -> None:
    """Create a content repository at PATH with an initial commit on the base branch."""
    config: WorkflowConfig = ctx.obj["config"]
    try:
        GitHost.init(path, base_branch=config.base_branch, bare=bare, default_author=config.author)
    except WorkflowError as e:
        _fail("Init", e)
    console.print(f"✅ Initialized content repository at {path} ({config.base_branch})", style="bold green")


@cli.command()
@click.argument("key")
@click.argument("entry_path")
@click.option("--file", "-f", "media", multiple=True, help="Attached media file (relative path). Repeatable.")
@click.option(
    "--source-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Directory the entry and media paths are read from",
)
@click.option("--collection", default=None, help="Collection the entry belongs to")
@click.option("--title", default=None, help="Entry title")
@click.option("--description", default=None, help="Entry description")
@click.option("--message", "-m", default=None, help="Commit message")
@click.option("--no-workflow", is_flag=True, help="Commit straight onto the base branch")
@click.pass_context
def draft(
    ctx: click.Context,
    key: str,
    entry_path: str,
    media: Tuple[str, ...],
    source_dir: Path,
    collection: Optional[str],
    title: Optional[str],
    description: Optional[str],
    message: Optional[str],
    no_workflow: bool,
) -> None:
    """Open or update the draft KEY from ENTRY_PATH (and attached files)."""
    try:
        entry = Entry(slug=key, file=_read_file_item(source_dir, entry_path))
        files: List[FileItem] = [_read_file_item(source_dir, p) for p in media]
    except OSError as e:
        _fail("Draft", e)

    options = PersistOptions(
        commit_message=message or f"Update “{key}”",
        collection_name=collection,
        title=title,
        description=description,
        use_workflow=not no_workflow,
    )
    try:
        record = asyncio.run(_make_workflow(ctx).persist_entry(entry, files, options))
    except WorkflowError as e:
        _fail("Draft", e)

    if record is None:
        console.print(f"✅ Committed {entry_path} to the base branch", style="bold green")
    else:
        console.print(
            f"✅ Draft {key} saved on {record.branch} (review #{record.review.id}, {record.status.value})",
            style="bold green",
        )


@cli.command("status")
@click.argument("key")
@click.argument(
    "new_status",
    type=click.Choice(["draft", "pending_review", "pending_publish"], case_sensitive=False),
)
@click.pass_context
def set_status(ctx: click.Context, key: str, new_status: str) -> None:
    """Change the editorial status of KEY."""
    try:
        asyncio.run(_make_workflow(ctx).set_status(key, WorkflowStatus(new_status.lower())))
    except WorkflowError as e:
        _fail("Status change", e)
    console.print(f"✅ {key} is now {new_status.lower()}", style="bold green")


@cli.command()
@click.argument("key")
@click.pass_context
def publish(ctx: click.Context, key: str) -> None:
    """Publish KEY by merging its review into the base branch."""
    try:
        asyncio.run(_make_workflow(ctx).publish(key))
    except WorkflowError as e:
        _fail("Publish", e)
    console.print(f"🎉 **{key} published**", style="bold green")


@cli.command()
@click.argument("key")
@click.pass_context
def discard(ctx: click.Context, key: str) -> None:
    """Discard the unpublished changes of KEY."""
    try:
        asyncio.run(_make_workflow(ctx).discard(key))
    except WorkflowError as e:
        _fail("Discard", e)
    console.print(f"🧹 Discarded {key}", style="bold green")


@cli.command()
@click.argument("key")
@click.pass_context
def show(ctx: click.Context, key: str) -> None:
    """Show the unpublished entry KEY."""
    try:
        draft_entry = asyncio.run(_make_workflow(ctx).read_draft(key))
    except WorkflowError as e:
        _fail("Show", e)

    record = draft_entry.metadata
    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Key", key)
    table.add_row("Status", record.status.value)
    table.add_row("Branch", record.branch)
    table.add_row("Review", f"#{record.review.id} ({(record.review.head or '')[:8]})")
    table.add_row("Entry", record.entry.path)
    table.add_row("Files", "\n".join(f.path for f in draft_entry.files) or "-")
    table.add_row("Modification", "yes" if draft_entry.is_modification else "no (new entry)")
    table.add_row("Updated", record.timestamp or "")
    console.print(table)
    console.print(draft_entry.raw.decode("utf-8", errors="replace"))


@cli.command("list")
@click.pass_context
def list_entries(ctx: click.Context) -> None:
    """List entries with an open review."""
    workflow = _make_workflow(ctx)

    async def _collect():
        keys = await workflow.list_unpublished_entries()
        return [(key, await workflow.metadata.retrieve(key)) for key in keys]

    try:
        rows = asyncio.run(_collect())
    except WorkflowError as e:
        _fail("List", e)

    console.print("\n📋 **Unpublished Entries**")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="cyan")
    table.add_column("Status", style="yellow")
    table.add_column("Collection", style="blue")
    table.add_column("Title")
    table.add_column("Updated", style="dim")
    for key, record in rows:
        if record is None:
            table.add_row(key, "⚠️ no metadata", "", "", "")
            continue
        table.add_row(key, record.status.value, record.collection or "", record.title or "", record.timestamp or "")
    console.print(table)


@cli.command()
def version() -> None:
    """Print the current git-editorial version."""
    console.print(f"git-editorial {PACKAGE_VERSION}")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n\n🚫 **Operation cancelled by user**", style="bold yellow")
        logger.debug("Top-level cancellation (KeyboardInterrupt)", exc_info=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
