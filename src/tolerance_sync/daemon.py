"""Sync daemon: wires the backends from config and drives the periodic tick.

Startup sequence:

1. Load config
2. Configure logging, telemetry and metrics
3. Build the remote store, blob store, local cache and notification port
4. Build the sync context and start the room session
5. Start the tick loop (timer expiry, daily reset, reminder upkeep)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from tolerance_sync.config import RemoteBackend, SyncConfig, load_config
from tolerance_sync.core.logging import configure_logging
from tolerance_sync.core.metrics import init_metrics
from tolerance_sync.core.telemetry import init_telemetry
from tolerance_sync.notifications import LoopNotificationPort
from tolerance_sync.remote.base import RemoteStore
from tolerance_sync.remote.memory import MemoryRemoteStore
from tolerance_sync.session import RoomSession, SyncContext
from tolerance_sync.storage.blobs import BlobStore, LocalBlobStore
from tolerance_sync.storage.cache import LocalCache
from tolerance_sync.timers import TimerAlert

logger = logging.getLogger(__name__)


def build_backends(config: SyncConfig) -> tuple[RemoteStore, BlobStore]:
    """Return the remote tree and blob store selected by ``[sync.remote]``."""
    if config.remote.backend is RemoteBackend.FIREBASE:
        from tolerance_sync.remote.firebase import (
            FirebaseBlobStore,
            FirebaseRemoteStore,
            initialize_firebase_app,
        )

        app = initialize_firebase_app(
            database_url=config.remote.database_url or "",
            credentials_path=config.remote.credentials_path,
            storage_bucket=config.remote.storage_bucket,
        )
        blobs: BlobStore = (
            FirebaseBlobStore(app)
            if config.remote.storage_bucket
            else LocalBlobStore(Path(config.storage.blob_dir))
        )
        return FirebaseRemoteStore(app), blobs
    return MemoryRemoteStore(), LocalBlobStore(Path(config.storage.blob_dir))


class SyncDaemon:
    """Runs one room session until shut down."""

    def __init__(
        self,
        config_dir: Path | None = None,
        *,
        config: SyncConfig | None = None,
        remote: RemoteStore | None = None,
        blobs: BlobStore | None = None,
    ) -> None:
        if config is None and config_dir is None:
            raise ValueError("SyncDaemon needs a config directory or a SyncConfig")
        self.config_dir = config_dir
        self.config = config
        self._remote = remote
        self._blobs = blobs
        self.context: SyncContext | None = None
        self.session: RoomSession | None = None
        self.notifications: LoopNotificationPort | None = None
        self._tick_task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Execute the full startup sequence."""
        if self._running:
            return

        # 1. Load config
        if self.config is None:
            assert self.config_dir is not None
            self.config = load_config(self.config_dir)
        config = self.config

        # 2. Logging and telemetry
        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_root=Path(config.logging.log_root) if config.logging.log_root else None,
            name=config.name,
        )
        init_telemetry(config.name)
        init_metrics(config.name)
        logger.info("Loaded config for sync daemon: %s", config.name)

        # 3. Backends
        if self._remote is None or self._blobs is None:
            remote, blobs = build_backends(config)
            self._remote = self._remote or remote
            self._blobs = self._blobs or blobs
        cache = LocalCache.from_directory(
            Path(config.cache.dir), timer_debounce_seconds=config.cache.timer_debounce_seconds
        )
        self.notifications = LoopNotificationPort()

        # 4. Context and session
        self.context = SyncContext.create(
            config,
            remote=self._remote,
            notifications=self.notifications,
            blobs=self._blobs,
            cache=cache,
            on_alert=self._on_alert,
        )
        self.session = RoomSession(self.context)
        await self.session.start()

        # 5. Tick loop
        self._running = True
        self._tick_task = asyncio.create_task(self._tick_loop(), name="sync-tick")
        logger.info(
            "Sync daemon started: backend=%s, room=%s",
            config.remote.backend.value,
            self.context.active_room_id,
        )

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the tick loop
        2. Stop the room session (snapshot, listeners, timer state)
        3. Cancel in-process notifications and close the remote store
        """
        if not self._running:
            return
        self._running = False
        logger.info("Shutting down sync daemon: %s", self.config.name if self.config else "unknown")

        # 1. Stop the tick loop
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None

        # 2. Room session
        if self.session is not None:
            await self.session.stop()

        # 3. Notifications and remote
        if self.notifications is not None:
            self.notifications.cancel_all()
        if self._remote is not None:
            await self._remote.close()

        logger.info("Sync daemon shutdown complete")

    async def _tick_loop(self) -> None:
        assert self.config is not None and self.session is not None
        interval = self.config.timer.tick_interval_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.session.tick()
                except Exception:
                    # Keep ticking; the next pass retries.
                    logger.exception("Sync tick failed")
        except asyncio.CancelledError:
            logger.debug("Tick loop cancelled")
            raise

    @staticmethod
    def _on_alert(alert: TimerAlert) -> None:
        logger.warning(
            "Treatment timer ended for %s in room %s; items remain unlogged",
            alert.participant,
            alert.room_id,
        )
