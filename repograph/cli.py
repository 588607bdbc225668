"""
CLI interface for repograph.

Usage:
    repograph init
    repograph reconcile --full
    repograph decay
    repograph reindex
    repograph serve
    repograph stats
"""

import atexit
import json
import os
import threading
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Repository
from .config import get_config_dir, load_or_create_config
from .logging_config import configure_quiet_mode, enable_debug_mode


# Configure quiet mode by default (suppress verbose library output)
# Set REPOGRAPH_VERBOSE=1 to enable debug mode via environment
if os.environ.get("REPOGRAPH_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="repograph",
    help="Derived-property maintenance for a content repository.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="REPOGRAPH_STORE_PATH",
        help="Path to the store directory (default: ~/.repograph/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Derived-property maintenance for a content repository."""


def _get_repository() -> Repository:
    """Open the repository, handling errors gracefully."""
    store = _get_store_override()
    try:
        repo = Repository(store)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(repo.close)
    return repo


def _echo(data: dict, text: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(text)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@app.command()
def init():
    """Create the store directory and its configuration file."""
    store = _get_store_override()
    store_path = store.expanduser().resolve() if store is not None else get_config_dir()
    config = load_or_create_config(store_path)
    repo = _get_repository()
    _echo(
        {"store": str(repo.store_path), "config": str(config.config_path)},
        f"Initialized store at {repo.store_path}",
    )


@app.command()
def reconcile(
    full: Annotated[bool, typer.Option(
        "--full",
        help="Re-verify every document, not only those missing derived fields",
    )] = False,
):
    """Backfill filterable and sortable properties."""
    repo = _get_repository()
    filterable = repo.ensure_filterable_properties(full=full)
    sortable = repo.ensure_sortable_properties(full=full)
    _echo(
        {
            "filterable": vars(filterable),
            "sortable": vars(sortable),
        },
        f"filterable: {filterable.scanned} scanned, {filterable.updated} updated, "
        f"{filterable.failed} failed\n"
        f"sortable: {sortable.scanned} scanned, {sortable.updated} updated, "
        f"{sortable.failed} failed",
    )
    if filterable.failed or sortable.failed:
        raise typer.Exit(1)


@app.command()
def decay():
    """Run one popularity decay pass now."""
    repo = _get_repository()
    touched = repo.decrease_popularity()
    _echo({"decreased": touched}, f"Decreased popularity of {touched} document(s)")


@app.command()
def reindex():
    """Push every published entity and every compilation to the search service."""
    repo = _get_repository()
    if not repo.search_enabled:
        typer.echo("Error: no search service configured (set REPOGRAPH_SEARCH_URL)", err=True)
        raise typer.Exit(1)
    indexed = repo.ensure_search_index()
    if indexed is None:
        # Index had data: the rebuild runs on the task queue
        repo.wait_for_background()
        _echo({"indexed": None}, "Search index updated")
    else:
        _echo({"indexed": indexed}, f"Indexed {indexed} document(s)")


@app.command()
def serve():
    """Run start-up jobs and the hourly popularity decay until interrupted."""
    repo = _get_repository()
    if repo.config.jobs.run_on_startup:
        repo.startup()
    else:
        repo.decrease_popularity_timer()
    typer.echo(f"Serving store {repo.store_path} (Ctrl+C to stop)", err=True)
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        repo.close()


@app.command()
def stats():
    """Document counts and documents missing derived fields, per kind."""
    repo = _get_repository()
    status = repo.status()
    lines = [
        f"{kind}: {counts['documents']} document(s), {counts['missing_derived']} missing derived fields"
        for kind, counts in status.items()
    ]
    _echo(status, "\n".join(lines))


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="repograph CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
