"""ORM models for the device-side local store.

Four logical collections: `responses` (keyed by response_id, indexed by the
synced flag), `drafts` (keyed by session_id), `sync_queue` (auto-incrementing
id that is never reused) and `survey_cache` (cached form definitions).
"""

from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base


LocalBase = declarative_base()


class ResponseRecord(LocalBase):  # type: ignore[valid-type]
    __tablename__ = "responses"
    __table_args__ = (
        Index("ix_responses_synced", "synced"),
        Index("ix_responses_session", "session_id"),
    )

    response_id = Column(String, primary_key=True)
    survey_id = Column(String, nullable=False)
    session_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    submitted_at = Column(String, nullable=False)
    device_info = Column(JSON, nullable=False, default=dict)
    is_offline = Column(Boolean, nullable=False, default=True)
    synced = Column(Boolean, nullable=False, default=False)
    synced_at = Column(String, nullable=True)


class DraftRecord(LocalBase):  # type: ignore[valid-type]
    __tablename__ = "drafts"
    __table_args__ = (Index("ix_drafts_saved_at", "saved_at"),)

    session_id = Column(String, primary_key=True)
    survey_id = Column(String, nullable=True)
    answers = Column(JSON, nullable=False)
    saved_at = Column(String, nullable=False)


class SyncQueueRecord(LocalBase):  # type: ignore[valid-type]
    __tablename__ = "sync_queue"
    # AUTOINCREMENT keeps ids monotonic even after the highest row is deleted
    __table_args__ = (
        Index("ix_sync_queue_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    # Response ids covered by this entry; used by orphan recovery
    response_ids = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default="pending")
    retries = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)


class SurveyCacheRecord(LocalBase):  # type: ignore[valid-type]
    __tablename__ = "survey_cache"

    survey_id = Column(String, primary_key=True)
    definition = Column(JSON, nullable=False)
    updated_at = Column(String, nullable=False)


__all__ = [
    "LocalBase",
    "ResponseRecord",
    "DraftRecord",
    "SyncQueueRecord",
    "SurveyCacheRecord",
]
