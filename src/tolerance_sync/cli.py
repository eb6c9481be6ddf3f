"""CLI for the tolerance sync daemon."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

import click

from tolerance_sync.config import CONFIG_FILENAME, ConfigError, load_config
from tolerance_sync.storage.cache import LocalCache

logger = logging.getLogger(__name__)

_STARTER_CONFIG = """[sync]
name = "{name}"
timezone = "UTC"

[sync.logging]
level = "INFO"
format = "text"

[sync.remote]
backend = "memory"
# backend = "firebase"
# database_url = "${{FIREBASE_DATABASE_URL}}"
# credentials_path = "service-account.json"
# storage_bucket = "my-project.appspot.com"

[sync.cache]
dir = "data/cache"

[sync.timer]
duration_seconds = 900
snooze_seconds = 300
repeat_count = 4

[sync.policy]
cascade_delete = false

[sync.identity]
# auth_id = "caregiver-auth-id"
# display_name = "Caregiver"
"""


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Tolerance sync: shared treatment schedules, logs and timers."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to the config directory",
)
def run(config_path: Path) -> None:
    """Run the sync daemon until interrupted."""
    try:
        load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Starting sync daemon from {config_path}")
    asyncio.run(_run_daemon(config_path))


@cli.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to the config directory",
)
def status(config_path: Path) -> None:
    """Show the cached active room and treatment timers."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    asyncio.run(_print_status(Path(config.cache.dir)))


@cli.command()
@click.argument("directory", type=click.Path(path_type=Path))
@click.option("--name", default="tolerance-sync", help="Daemon name used in logs and telemetry")
def init(directory: Path, name: str) -> None:
    """Write a starter tolerance.toml into DIRECTORY."""
    target = directory / CONFIG_FILENAME
    if target.exists():
        click.echo(f"Config already exists: {target}")
        sys.exit(1)
    directory.mkdir(parents=True, exist_ok=True)
    target.write_text(_STARTER_CONFIG.format(name=name))
    click.echo(f"Created config: {target}")


async def _print_status(cache_dir: Path) -> None:
    cache = LocalCache.from_directory(cache_dir)
    room_id = await cache.load_active_room()
    click.echo(f"Active room: {room_id or '(none)'}")

    if room_id is not None:
        snapshot = await cache.load_room_snapshot(room_id) or {}
        cycles = snapshot.get("cycles") or {}
        click.echo(f"Cached cycles: {len(cycles)}")

    timers = await cache.load_timers()
    if not timers:
        click.echo("No treatment timers")
        return
    now = datetime.now(UTC)
    click.echo(f"{'Room':<40} {'Participant':<20} {'Remaining'}")
    click.echo("-" * 72)
    for rid, timer in sorted(timers.items()):
        remaining = max(int(timer.remaining_seconds(now)), 0)
        state = f"{remaining // 60}m{remaining % 60:02d}s" if timer.is_running(now) else "expired"
        click.echo(f"{rid:<40} {timer.room_name or '':<20} {state}")


async def _run_daemon(config_path: Path) -> None:
    from tolerance_sync.daemon import SyncDaemon

    loop = asyncio.get_event_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = SyncDaemon(config_path)
    await daemon.start()
    click.echo(f"Sync daemon {daemon.config.name} running")

    await shutdown_event.wait()
    await daemon.shutdown()
