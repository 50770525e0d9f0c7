"""Error taxonomy shared by the local store, the remote client and the processor.

- `StorageError` is raised to the immediate caller of a local-store operation
  and never retried automatically.
- `NetworkError` / `SyncTimeout` and `RemoteRejection` are raised by the remote
  client and caught by the sync processor, which records them on the queue
  entry instead of propagating.
"""

from __future__ import annotations

# HTTP statuses that indicate the payload itself is unacceptable; resending the
# same snapshot cannot succeed, so the entry goes straight to `failed`.
PERMANENT_REJECTION_STATUSES = frozenset({400, 404, 405, 409, 410, 413, 415, 422})


class NomadSyncError(Exception):
    """Base class for all nomadsync errors."""


class StorageError(NomadSyncError):
    """Local persistence unavailable or a write failed (quota, corruption, I/O)."""


class NetworkError(NomadSyncError):
    """A remote call did not complete."""


class SyncTimeout(NetworkError):
    """A remote call exceeded its per-attempt timeout."""


class RemoteRejection(NomadSyncError):
    """The remote endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = int(status_code)
        self.detail = detail
        super().__init__(f"Server error: {self.status_code}" + (f" {detail}" if detail else ""))

    @property
    def permanent(self) -> bool:
        return self.status_code in PERMANENT_REJECTION_STATUSES


__all__ = [
    "PERMANENT_REJECTION_STATUSES",
    "NomadSyncError",
    "StorageError",
    "NetworkError",
    "SyncTimeout",
    "RemoteRejection",
]
