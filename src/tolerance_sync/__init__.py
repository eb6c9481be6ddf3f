"""tolerance_sync: room-scoped sync engine for shared treatment schedules."""

__version__ = "0.1.0"
