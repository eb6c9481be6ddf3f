"""Firebase Realtime Database and Cloud Storage backends.

``firebase_admin`` is synchronous: one-shot calls run in a worker thread via
``asyncio.to_thread`` and listener events arrive on the SDK's own thread.
Listener events are ``put``/``patch`` deltas; each subscription keeps a mirror
of its subtree, applies the delta, and hands the full mirrored value to the
owning event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
from typing import Any

import firebase_admin
from firebase_admin import credentials, db, storage

from tolerance_sync.remote.base import SnapshotCallback, join_path, split_path, tree_set

logger = logging.getLogger(__name__)

_DEFAULT_APP_NAME = "[DEFAULT]"


def initialize_firebase_app(
    *,
    database_url: str,
    credentials_path: str | None = None,
    storage_bucket: str | None = None,
    name: str = _DEFAULT_APP_NAME,
) -> firebase_admin.App:
    """Return the named Firebase app, initializing it once."""
    try:
        return firebase_admin.get_app(name)
    except ValueError:
        pass

    cred = (
        credentials.Certificate(credentials_path)
        if credentials_path
        else credentials.ApplicationDefault()
    )
    options: dict[str, Any] = {"databaseURL": database_url}
    if storage_bucket:
        options["storageBucket"] = storage_bucket
    app = firebase_admin.initialize_app(cred, options, name=name)
    logger.info("Firebase app initialized: name=%s database=%s", name, database_url)
    return app


class _FirebaseSubscription:
    """Listener registration opened off-loop and closed idempotently."""

    def __init__(
        self,
        reference: db.Reference,
        callback: SnapshotCallback,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._reference = reference
        self._callback = callback
        self._loop = loop
        self._mirror: Any = None
        self._lock = threading.Lock()
        self._closed = False
        self._registration: db.ListenerRegistration | None = None
        self._opening = loop.run_in_executor(None, reference.listen, self._on_event)
        self._opening.add_done_callback(self._on_opened)

    def _on_opened(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to open listener at %s: %s", self._reference.path, exc)
            return
        with self._lock:
            self._registration = future.result()
            close_now = self._closed
        if close_now:
            self._registration.close()

    def _on_event(self, event: db.Event) -> None:
        with self._lock:
            if self._closed:
                return
            parts = split_path(event.path or "/")
            if event.event_type == "put":
                if parts:
                    root = self._mirror if isinstance(self._mirror, dict) else {}
                    self._mirror = tree_set(root, parts, event.data) or None
                else:
                    self._mirror = copy.deepcopy(event.data)
            elif event.event_type == "patch" and isinstance(event.data, dict):
                root = self._mirror if isinstance(self._mirror, dict) else {}
                for key, value in event.data.items():
                    root = tree_set(root, parts + split_path(key), value)
                self._mirror = root or None
            else:
                return
            value = copy.deepcopy(self._mirror)
        self._loop.call_soon_threadsafe(self._dispatch, value)

    def _dispatch(self, value: Any) -> None:
        if self._closed:
            return
        try:
            self._callback(value)
        except Exception:
            logger.exception("Listener callback failed for %s", self._reference.path)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            registration = self._registration
        if registration is not None:
            registration.close()


class FirebaseRemoteStore:
    """:class:`~tolerance_sync.remote.base.RemoteStore` over ``firebase_admin.db``."""

    def __init__(self, app: firebase_admin.App) -> None:
        self._app = app
        self._subscriptions: list[_FirebaseSubscription] = []

    def _ref(self, path: str) -> db.Reference:
        return db.reference("/" + join_path(path), app=self._app)

    async def get(self, path: str) -> Any:
        return await asyncio.to_thread(self._ref(path).get)

    async def set(self, path: str, value: Any) -> None:
        ref = self._ref(path)
        if value is None:
            await asyncio.to_thread(ref.delete)
        else:
            await asyncio.to_thread(ref.set, value)

    async def update(self, path: str, values: dict[str, Any]) -> None:
        if not values:
            return
        await asyncio.to_thread(self._ref(path).update, values)

    async def remove(self, path: str) -> None:
        await asyncio.to_thread(self._ref(path).delete)

    def listen(self, path: str, callback: SnapshotCallback) -> _FirebaseSubscription:
        subscription = _FirebaseSubscription(
            self._ref(path), callback, asyncio.get_running_loop()
        )
        self._subscriptions = [s for s in self._subscriptions if not s._closed]
        self._subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()


class FirebaseBlobStore:
    """:class:`~tolerance_sync.storage.blobs.BlobStore` over Cloud Storage."""

    def __init__(self, app: firebase_admin.App, *, content_type: str = "image/jpeg") -> None:
        self._bucket = storage.bucket(app=app)
        self._content_type = content_type

    async def put(self, key: str, data: bytes) -> None:
        blob = self._bucket.blob(key)
        await asyncio.to_thread(blob.upload_from_string, data, content_type=self._content_type)

    async def get(self, key: str) -> bytes | None:
        blob = self._bucket.blob(key)
        if not await asyncio.to_thread(blob.exists):
            return None
        return await asyncio.to_thread(blob.download_as_bytes)

    async def delete(self, key: str) -> None:
        blob = self._bucket.blob(key)
        if await asyncio.to_thread(blob.exists):
            await asyncio.to_thread(blob.delete)

    def url_for(self, key: str) -> str:
        return self._bucket.blob(key).public_url
