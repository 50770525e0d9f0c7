"""Client-side domain types for the offline sync subsystem."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    """RFC3339 UTC timestamp with millisecond precision and trailing 'Z'."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Operation(str, Enum):
    CREATE_RESPONSE = "create-response"
    BATCH_SYNC = "batch-sync"


class QueueStatus(str, Enum):
    PENDING = "pending"
    # Only ever held in memory by the processor; never written to the store
    IN_FLIGHT = "in-flight"
    FAILED = "failed"


@dataclass
class Response:
    """A finalized survey submission.

    `payload` maps question_id to answer value and is opaque to the sync
    layer. `submitted_at` is set once at finalization and never changed.
    """

    survey_id: str
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    response_id: Optional[str] = None
    submitted_at: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    is_offline: bool = True
    synced: bool = False
    synced_at: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Return the JSON body sent to the remote endpoint (deep copy)."""
        return {
            "response_id": self.response_id,
            "survey_id": self.survey_id,
            "session_id": self.session_id,
            "payload": copy.deepcopy(self.payload),
            "submitted_at": self.submitted_at,
            "device_info": copy.deepcopy(self.device_info),
            "is_offline": self.is_offline,
        }


@dataclass
class Draft:
    session_id: str
    answers: Dict[str, Any]
    saved_at: str
    survey_id: Optional[str] = None


@dataclass
class SyncQueueEntry:
    id: int
    operation: Operation
    payload: Dict[str, Any]
    retries: int = 0
    last_error: Optional[str] = None
    status: QueueStatus = QueueStatus.PENDING
    created_at: Optional[str] = None
    response_ids: List[str] = field(default_factory=list)


@dataclass
class SyncSummary:
    """Outcome of one `process_queue` run, for status display and tests."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    # Entries already at the policy cap, left for manual review
    skipped_failed: int = 0
    # True when the run was refused because another run was active
    busy: bool = False
    errors: Dict[int, str] = field(default_factory=dict)
    # Set when local bookkeeping failed and the run stopped early
    aborted: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.busy and self.aborted is None and self.failed == 0


@dataclass(frozen=True)
class StoreStats:
    total_responses: int
    synced_responses: int
    unsynced_responses: int
    drafts: int
    sync_queue: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "total_responses": self.total_responses,
            "synced_responses": self.synced_responses,
            "unsynced_responses": self.unsynced_responses,
            "drafts": self.drafts,
            "sync_queue": self.sync_queue,
        }


__all__ = [
    "utc_now_iso",
    "Operation",
    "QueueStatus",
    "Response",
    "Draft",
    "SyncQueueEntry",
    "SyncSummary",
    "StoreStats",
]
