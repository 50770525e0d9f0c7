"""NomadSync: offline response cache and synchronization for field surveys.

The package has two halves that share one wire protocol:

- the client side (`nomadsync.logic.local_store`, `sync_processor`,
  `connectivity`) persists drafts and finalized responses on the device and
  drains a durable sync queue when the network comes back;
- the remote endpoint (`nomadsync.main.create_app`) is a small FastAPI service
  that upserts submitted responses idempotently by `response_id`.

`nomadsync.context.open_client_context` wires the client components for one
session.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
