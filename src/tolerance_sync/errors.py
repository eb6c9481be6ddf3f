"""Error hierarchy for the sync engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base sync engine error."""


class RemoteError(SyncError):
    """Raised when a remote store operation fails."""

    def __init__(self, operation: str, path: str, message: str) -> None:
        self.operation = operation
        self.path = path
        self.message = message
        super().__init__(f"Remote {operation} failed at {path!r}: {message}")


class RemoteTimeoutError(RemoteError):
    """Raised when a remote store operation exceeds its client-side timeout."""


class RemoteWriteError(RemoteError):
    """Raised when a remote write is rejected or fails after all retries."""


class ListenerPairingError(SyncError):
    """Raised when attach/detach calls are not paired per room."""


class RoomAccessError(SyncError):
    """Base for errors rejected before any write is attempted.

    ``user_message`` is safe to show to the end user.
    """

    def __init__(self, user_message: str) -> None:
        self.user_message = user_message
        super().__init__(user_message)


class RoomLimitError(RoomAccessError):
    """Raised when creating a room would exceed the user's entitlement."""


class PermissionDeniedError(RoomAccessError):
    """Raised when the acting user lacks the role an operation needs."""


class InvitationError(RoomAccessError):
    """Raised when an invitation code is unknown or already used."""
