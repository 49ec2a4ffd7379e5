"""promptkeep CLI entry point.

Provides command-line access to monitoring, the archive's session views and
retention.
"""

from __future__ import annotations

import asyncio
import importlib.metadata
import json
import logging
from pathlib import Path

import typer
import yaml
from typing_extensions import Annotated

from promptkeep.config import HOUR_MS, get_config
from promptkeep.errors import PromptKeepError, RetentionDisabledError
from promptkeep.models import format_timestamp

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create CLI app
app = typer.Typer(
    name="promptkeep",
    help="promptkeep - durable archive of Claude prompt history",
    add_completion=False,
)

ConfigOption = Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")]
JsonOption = Annotated[bool, typer.Option("--json", help="Print JSON instead of text")]


def _create_app(config: str, verbose: bool):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    from promptkeep.main import PromptKeepApplication

    try:
        return PromptKeepApplication(config=get_config(config or None))
    except (PromptKeepError, ValueError) as e:
        typer.echo(f"❌ Failed to load configuration: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def watch(
    source: Annotated[str, typer.Option("--source", "-s", help="Source log to tail")] = "",
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Archive new prompts and run automatic cleanup until interrupted.

    Examples:
        # Tail the default history log
        promptkeep watch

        # Tail another log
        promptkeep watch --source /path/to/history.jsonl
    """
    promptkeep_app = _create_app(config, verbose)

    if source:
        promptkeep_app.config.source_log_path = Path(source).expanduser()
    if promptkeep_app.config.metrics_enabled:
        from promptkeep.monitoring.metrics import start_metrics_server

        start_metrics_server(promptkeep_app.config.prometheus_port)

    async def run() -> None:
        try:
            await promptkeep_app.start()
        finally:
            await promptkeep_app.stop()

    asyncio.run(run())


@app.command()
def sessions(config: ConfigOption = "", as_json: JsonOption = False, verbose: VerboseOption = False) -> None:
    """List archived sessions, most recent first."""
    summaries = _create_app(config, verbose).list_sessions()

    if as_json:
        typer.echo(json.dumps([s.model_dump(by_alias=True) for s in summaries], ensure_ascii=False, indent=2))
        return
    if not summaries:
        typer.echo("No archived sessions")
        return

    for summary in summaries:
        typer.echo(
            f"{summary.session_id}  {format_timestamp(summary.latest_timestamp)}  "
            f"{summary.record_count:>4} prompts  {summary.project}"
        )


@app.command()
def session(
    session_id: Annotated[str, typer.Argument(help="Session id (or single-<timestamp>)")],
    config: ConfigOption = "",
    as_json: JsonOption = False,
    verbose: VerboseOption = False,
) -> None:
    """Show every prompt of one session."""
    records = _create_app(config, verbose).get_session_detail(session_id)

    if as_json:
        typer.echo(json.dumps([r.to_archive_dict() for r in records], ensure_ascii=False, indent=2))
        return
    if not records:
        typer.echo(f"❌ Session not found: {session_id}", err=True)
        raise typer.Exit(code=1)

    for record in records:
        typer.echo(f"[{format_timestamp(record.timestamp)}] {record.project}")
        typer.echo(record.prompt)
        for key, ref in record.pasted_contents.items():
            size = len(ref.content) if ref.content else 0
            typer.echo(f"  paste {key}: {size} chars")
        for image in record.images:
            typer.echo(f"  image: {image}")
        typer.echo("")


@app.command()
def cleanup(config: ConfigOption = "", verbose: VerboseOption = False) -> None:
    """Run an automatic-cleanup pass now."""
    promptkeep_app = _create_app(config, verbose)

    try:
        result = asyncio.run(promptkeep_app.run_cleanup_now())
    except RetentionDisabledError as e:
        typer.echo(f"❌ {e.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"✅ Deleted {result.deleted_count} records")
    if result.next_cleanup_time:
        typer.echo(f"   Next cleanup: {format_timestamp(result.next_cleanup_time)}")


@app.command("cleanup-status")
def cleanup_status(config: ConfigOption = "", verbose: VerboseOption = False) -> None:
    """Show the automatic-cleanup countdown."""
    status = _create_app(config, verbose).get_cleanup_status()

    if not status.enabled:
        typer.echo("Automatic cleanup: disabled")
        return
    typer.echo("Automatic cleanup: enabled")
    if status.next_cleanup_time:
        typer.echo(f"   Next cleanup: {format_timestamp(status.next_cleanup_time)}")
        typer.echo(f"   Remaining: {(status.remaining_ms or 0) // 1000}s")


@app.command()
def clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Delete the whole archive, images included."""
    promptkeep_app = _create_app(config, verbose)

    if not yes:
        typer.confirm(f"Delete every archived record in {promptkeep_app.archive_root}?", abort=True)

    deleted = asyncio.run(promptkeep_app.clear_archive())
    typer.echo(f"✅ Deleted {deleted} partition files")


@app.command()
def prune(
    retain_hours: Annotated[float, typer.Option("--retain-hours", help="Keep records younger than this")],
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Delete records older than the given age, once."""
    if retain_hours < 0:
        typer.echo("❌ --retain-hours must not be negative", err=True)
        raise typer.Exit(code=1)

    promptkeep_app = _create_app(config, verbose)
    deleted = asyncio.run(promptkeep_app.clean_by_age(int(retain_hours * HOUR_MS)))
    typer.echo(f"✅ Deleted {deleted} records")


@app.command("config")
def show_config(config: ConfigOption = "", verbose: VerboseOption = False) -> None:
    """Show the effective configuration and persisted settings."""
    promptkeep_app = _create_app(config, verbose)
    enabled, _ = promptkeep_app.settings.record_config()

    effective = {
        "config": promptkeep_app.config.model_dump(mode="json"),
        "settings": {
            "record_enabled": enabled,
            "archive_root_path": str(promptkeep_app.archive_root),
            "auto_cleanup": promptkeep_app.settings.retention_policy().model_dump(),
        },
    }
    typer.echo(yaml.safe_dump(effective, sort_keys=False, allow_unicode=True))


@app.command()
def version() -> None:
    """Show promptkeep version information."""
    try:
        ver = importlib.metadata.version("promptkeep")
    except importlib.metadata.PackageNotFoundError:
        from promptkeep import __version__ as ver
    typer.echo(f"promptkeep version: {ver}")


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
