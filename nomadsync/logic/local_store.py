"""Device-side local store for drafts, responses and the sync queue.

Every public operation is a short transaction against a SQLite database and is
exposed as a coroutine: the blocking SQLAlchemy work runs on an anyio worker
thread so the UI event loop never waits on disk I/O. Operations are serialized
through a single lock because exactly one client owns a store at a time and an
in-memory SQLite database shares one connection.

Storage failures surface as `StorageError` to the immediate caller; nothing in
this module retries or swallows them.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

import anyio
from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from nomadsync.db.base import build_engine
from nomadsync.errors import StorageError
from nomadsync.logic.events import (
    RESPONSE_REENQUEUED,
    RESPONSE_SAVED,
    RESPONSE_SYNCED,
    EventBus,
)
from nomadsync.models.local_records import (
    DraftRecord,
    LocalBase,
    ResponseRecord,
    SurveyCacheRecord,
    SyncQueueRecord,
)
from nomadsync.models.sync_types import (
    Draft,
    Operation,
    QueueStatus,
    Response,
    StoreStats,
    SyncQueueEntry,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _coerce_response(response: Response | Mapping[str, Any]) -> Response:
    if isinstance(response, Response):
        return copy.deepcopy(response)
    data = dict(response)
    try:
        return Response(
            survey_id=str(data["survey_id"]),
            session_id=str(data["session_id"]),
            payload=copy.deepcopy(dict(data.get("payload") or {})),
            response_id=data.get("response_id"),
            submitted_at=data.get("submitted_at"),
            device_info=copy.deepcopy(dict(data.get("device_info") or {})),
            is_offline=bool(data.get("is_offline", True)),
        )
    except KeyError as exc:
        raise ValueError(f"response is missing required field {exc.args[0]!r}") from exc


def _response_from_record(rec: ResponseRecord) -> Response:
    return Response(
        response_id=rec.response_id,
        survey_id=rec.survey_id,
        session_id=rec.session_id,
        payload=copy.deepcopy(rec.payload or {}),
        submitted_at=rec.submitted_at,
        device_info=copy.deepcopy(rec.device_info or {}),
        is_offline=bool(rec.is_offline),
        synced=bool(rec.synced),
        synced_at=rec.synced_at,
    )


def _entry_from_record(rec: SyncQueueRecord) -> SyncQueueEntry:
    return SyncQueueEntry(
        id=int(rec.id),
        operation=Operation(rec.operation),
        payload=copy.deepcopy(rec.payload or {}),
        retries=int(rec.retries or 0),
        last_error=rec.last_error,
        status=QueueStatus(rec.status),
        created_at=rec.created_at,
        response_ids=list(rec.response_ids or []),
    )


def _draft_from_record(rec: DraftRecord) -> Draft:
    return Draft(
        session_id=rec.session_id,
        survey_id=rec.survey_id,
        answers=copy.deepcopy(rec.answers or {}),
        saved_at=rec.saved_at,
    )


class LocalStore:
    """Durable store owning responses, drafts, the sync queue and survey cache."""

    def __init__(
        self,
        engine: Engine,
        *,
        events: EventBus | None = None,
        device_id: str | None = None,
    ) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, future=True, expire_on_commit=False)
        self._lock = threading.Lock()
        self._events = events or EventBus()
        self._device_id = device_id

    @classmethod
    def open(cls, url: str, **kwargs: Any) -> "LocalStore":
        """Create a store for `url` and make sure its schema exists."""
        try:
            engine = build_engine(url)
        except (SQLAlchemyError, OSError) as exc:
            raise StorageError(f"cannot open local store: {exc}") from exc
        store = cls(engine, **kwargs)
        store.create_schema()
        return store

    @property
    def events(self) -> EventBus:
        return self._events

    def create_schema(self) -> None:
        try:
            LocalBase.metadata.create_all(self._engine)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("local_store_schema_failed", exc_info=True)
            raise StorageError(f"cannot create local store schema: {exc}") from exc

    def close(self) -> None:
        self._engine.dispose()

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _transact(self, op: str, work: Callable[[Session], T]) -> T:
        with self._lock:
            session = self._sessions()
            try:
                result = work(session)
                session.commit()
                return result
            except (SQLAlchemyError, OSError) as exc:
                session.rollback()
                logger.error("local_store_error op=%s", op, exc_info=True)
                raise StorageError(f"{op} failed: {exc}") from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    async def _run(self, op: str, work: Callable[[Session], T]) -> T:
        return await anyio.to_thread.run_sync(partial(self._transact, op, work))

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    async def save_response(self, response: Response | Mapping[str, Any]) -> str:
        """Persist a finalized response and append its sync queue snapshot.

        Assigns a response_id when absent, sets `synced=False` and deletes the
        session's draft. The record write, the queue append and the draft
        removal commit in one transaction. Saving an id that already exists
        overwrites the record (keeping its original `submitted_at`) and
        appends a fresh snapshot; the remote upsert makes the extra entry
        harmless.
        """
        resp = _coerce_response(response)
        resp.response_id = str(resp.response_id or uuid.uuid4())
        resp.submitted_at = resp.submitted_at or utc_now_iso()
        if self._device_id and "device_id" not in resp.device_info:
            resp.device_info["device_id"] = self._device_id
        resp.synced = False
        resp.synced_at = None

        def work(session: Session) -> int:
            rec = session.get(ResponseRecord, resp.response_id)
            if rec is None:
                rec = ResponseRecord(response_id=resp.response_id, submitted_at=resp.submitted_at)
                session.add(rec)
            else:
                resp.submitted_at = rec.submitted_at
            rec.survey_id = resp.survey_id
            rec.session_id = resp.session_id
            rec.payload = copy.deepcopy(resp.payload)
            rec.device_info = copy.deepcopy(resp.device_info)
            rec.is_offline = resp.is_offline
            rec.synced = False
            rec.synced_at = None
            entry = SyncQueueRecord(
                operation=Operation.CREATE_RESPONSE.value,
                payload=resp.to_wire(),
                response_ids=[resp.response_id],
                status=QueueStatus.PENDING.value,
                retries=0,
                created_at=utc_now_iso(),
            )
            session.add(entry)
            session.execute(delete(DraftRecord).where(DraftRecord.session_id == resp.session_id))
            session.flush()
            return int(entry.id)

        entry_id = await self._run("save_response", work)
        logger.info("response_saved response_id=%s queue_id=%s", resp.response_id, entry_id)
        self._events.publish(
            RESPONSE_SAVED,
            {"response_id": resp.response_id, "session_id": resp.session_id, "queue_id": entry_id},
        )
        return resp.response_id

    async def get_response(self, response_id: str) -> Optional[Response]:
        def work(session: Session) -> Optional[Response]:
            rec = session.get(ResponseRecord, response_id)
            return _response_from_record(rec) if rec is not None else None

        return await self._run("get_response", work)

    async def list_unsynced_responses(self) -> List[Response]:
        """All responses with `synced=False`, in no particular order."""

        def work(session: Session) -> List[Response]:
            rows = session.scalars(select(ResponseRecord).where(ResponseRecord.synced.is_(False)))
            return [_response_from_record(r) for r in rows]

        return await self._run("list_unsynced_responses", work)

    async def mark_synced(self, response_id: str) -> bool:
        """Set `synced=True` and `synced_at=now`.

        Returns False without raising when the record no longer exists (the
        cache was cleared while the request was in flight).
        """
        synced_at = utc_now_iso()

        def work(session: Session) -> bool:
            rec = session.get(ResponseRecord, response_id)
            if rec is None:
                return False
            rec.synced = True
            rec.synced_at = synced_at
            return True

        found = await self._run("mark_synced", work)
        if found:
            self._events.publish(RESPONSE_SYNCED, {"response_id": response_id, "synced_at": synced_at})
        else:
            logger.info("mark_synced_missing response_id=%s", response_id)
        return found

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    async def save_draft(
        self, session_id: str, answers: Mapping[str, Any], survey_id: str | None = None
    ) -> str:
        """Upsert the single draft for `session_id`; the last write wins."""
        snapshot = copy.deepcopy(dict(answers))
        saved_at = utc_now_iso()

        def work(session: Session) -> None:
            rec = session.get(DraftRecord, session_id)
            if rec is None:
                rec = DraftRecord(session_id=session_id)
                session.add(rec)
            rec.answers = snapshot
            rec.saved_at = saved_at
            if survey_id is not None:
                rec.survey_id = survey_id

        await self._run("save_draft", work)
        logger.debug("draft_saved session_id=%s", session_id)
        return session_id

    async def get_draft(self, session_id: str) -> Optional[Draft]:
        def work(session: Session) -> Optional[Draft]:
            rec = session.get(DraftRecord, session_id)
            return _draft_from_record(rec) if rec is not None else None

        return await self._run("get_draft", work)

    async def list_drafts(self) -> List[Draft]:
        def work(session: Session) -> List[Draft]:
            rows = session.scalars(select(DraftRecord).order_by(DraftRecord.saved_at))
            return [_draft_from_record(r) for r in rows]

        return await self._run("list_drafts", work)

    async def delete_draft(self, session_id: str) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(delete(DraftRecord).where(DraftRecord.session_id == session_id))
            return bool(result.rowcount)

        deleted = await self._run("delete_draft", work)
        logger.info("draft_deleted session_id=%s found=%s", session_id, deleted)
        return deleted

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        operation: Operation,
        payload: Mapping[str, Any],
        response_ids: Iterable[str] | None = None,
    ) -> SyncQueueEntry:
        """Append an entry holding a deep-copied snapshot of `payload`."""
        op = Operation(operation)
        snapshot = copy.deepcopy(dict(payload))
        ids = list(response_ids or [])
        if not ids and op is Operation.CREATE_RESPONSE and snapshot.get("response_id"):
            ids = [str(snapshot["response_id"])]

        def work(session: Session) -> SyncQueueEntry:
            rec = SyncQueueRecord(
                operation=op.value,
                payload=snapshot,
                response_ids=ids,
                status=QueueStatus.PENDING.value,
                retries=0,
                created_at=utc_now_iso(),
            )
            session.add(rec)
            session.flush()
            return _entry_from_record(rec)

        return await self._run("enqueue", work)

    async def enqueue_batch(self, responses: Iterable[Response | Mapping[str, Any]]) -> SyncQueueEntry:
        """Append one batch-sync entry covering `responses`."""
        items = [_coerce_response(r) for r in responses]
        missing = [r for r in items if not r.response_id]
        if missing:
            raise ValueError("batch-sync responses must already carry a response_id")
        payload = {"responses": [r.to_wire() for r in items]}
        return await self.enqueue(Operation.BATCH_SYNC, payload, [str(r.response_id) for r in items])

    async def dequeue(self, entry_id: int) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(delete(SyncQueueRecord).where(SyncQueueRecord.id == entry_id))
            return bool(result.rowcount)

        return await self._run("dequeue", work)

    async def get_entry(self, entry_id: int) -> Optional[SyncQueueEntry]:
        def work(session: Session) -> Optional[SyncQueueEntry]:
            rec = session.get(SyncQueueRecord, entry_id)
            return _entry_from_record(rec) if rec is not None else None

        return await self._run("get_entry", work)

    async def list_queue(self) -> List[SyncQueueEntry]:
        """Every queue entry, ordered by id ascending (processing order)."""

        def work(session: Session) -> List[SyncQueueEntry]:
            rows = session.scalars(select(SyncQueueRecord).order_by(SyncQueueRecord.id.asc()))
            return [_entry_from_record(r) for r in rows]

        return await self._run("list_queue", work)

    async def list_failed_entries(self) -> List[SyncQueueEntry]:
        def work(session: Session) -> List[SyncQueueEntry]:
            rows = session.scalars(
                select(SyncQueueRecord)
                .where(SyncQueueRecord.status == QueueStatus.FAILED.value)
                .order_by(SyncQueueRecord.id.asc())
            )
            return [_entry_from_record(r) for r in rows]

        return await self._run("list_failed_entries", work)

    async def record_failure(
        self,
        entry_id: int,
        error_message: str,
        *,
        max_retries: int | None = None,
        permanent: bool = False,
    ) -> Optional[SyncQueueEntry]:
        """Increment `retries` and store `last_error`.

        The entry stays `pending` unless `permanent` is set or the new retry
        count reaches `max_retries`, in which case it becomes `failed` and is
        left for manual review. Returns None when the entry no longer exists.
        """

        def work(session: Session) -> Optional[SyncQueueEntry]:
            rec = session.get(SyncQueueRecord, entry_id)
            if rec is None:
                return None
            rec.retries = int(rec.retries or 0) + 1
            rec.last_error = str(error_message)
            capped = max_retries is not None and rec.retries >= max_retries
            rec.status = QueueStatus.FAILED.value if (permanent or capped) else QueueStatus.PENDING.value
            return _entry_from_record(rec)

        return await self._run("record_failure", work)

    async def replace_payload(
        self, entry_id: int, payload: Mapping[str, Any], response_ids: Iterable[str]
    ) -> bool:
        """Narrow an entry's snapshot, e.g. to the failed subset of a batch."""
        snapshot = copy.deepcopy(dict(payload))
        ids = list(response_ids)

        def work(session: Session) -> bool:
            rec = session.get(SyncQueueRecord, entry_id)
            if rec is None:
                return False
            rec.payload = snapshot
            rec.response_ids = ids
            return True

        return await self._run("replace_payload", work)

    async def requeue(self, entry_id: int) -> bool:
        """Return a failed entry to `pending` with its retry count reset."""

        def work(session: Session) -> bool:
            rec = session.get(SyncQueueRecord, entry_id)
            if rec is None:
                return False
            rec.status = QueueStatus.PENDING.value
            rec.retries = 0
            rec.last_error = None
            return True

        found = await self._run("requeue", work)
        logger.info("sync_entry_requeued id=%s found=%s", entry_id, found)
        return found

    async def recover_orphaned_responses(self) -> List[str]:
        """Re-enqueue unsynced responses that no queue entry references.

        Covers a crash between the record write and the queue append. Safe to
        run repeatedly: a response already referenced by any entry (pending or
        failed, single or batch) is left alone.
        """

        def work(session: Session) -> List[str]:
            referenced: set[str] = set()
            for ids in session.scalars(select(SyncQueueRecord.response_ids)):
                referenced.update(str(i) for i in (ids or []))
            orphans = session.scalars(
                select(ResponseRecord)
                .where(ResponseRecord.synced.is_(False))
                .order_by(ResponseRecord.submitted_at, ResponseRecord.response_id)
            ).all()
            recovered: List[str] = []
            for rec in orphans:
                if rec.response_id in referenced:
                    continue
                snapshot = _response_from_record(rec).to_wire()
                session.add(
                    SyncQueueRecord(
                        operation=Operation.CREATE_RESPONSE.value,
                        payload=snapshot,
                        response_ids=[rec.response_id],
                        status=QueueStatus.PENDING.value,
                        retries=0,
                        created_at=utc_now_iso(),
                    )
                )
                recovered.append(rec.response_id)
            return recovered

        recovered = await self._run("recover_orphaned_responses", work)
        for response_id in recovered:
            logger.warning("orphaned_response_reenqueued response_id=%s", response_id)
            self._events.publish(RESPONSE_REENQUEUED, {"response_id": response_id})
        return recovered

    # ------------------------------------------------------------------
    # Survey definition cache
    # ------------------------------------------------------------------

    async def cache_survey(self, survey_id: str, definition: Mapping[str, Any]) -> None:
        snapshot = copy.deepcopy(dict(definition))
        updated_at = utc_now_iso()

        def work(session: Session) -> None:
            rec = session.get(SurveyCacheRecord, survey_id)
            if rec is None:
                rec = SurveyCacheRecord(survey_id=survey_id)
                session.add(rec)
            rec.definition = snapshot
            rec.updated_at = updated_at

        await self._run("cache_survey", work)

    async def get_cached_survey(self, survey_id: str) -> Optional[Dict[str, Any]]:
        def work(session: Session) -> Optional[Dict[str, Any]]:
            rec = session.get(SurveyCacheRecord, survey_id)
            return copy.deepcopy(rec.definition) if rec is not None else None

        return await self._run("get_cached_survey", work)

    # ------------------------------------------------------------------
    # Statistics and reset
    # ------------------------------------------------------------------

    async def get_stats(self) -> StoreStats:
        def work(session: Session) -> StoreStats:
            total = session.scalar(select(func.count()).select_from(ResponseRecord)) or 0
            unsynced = session.scalar(
                select(func.count()).select_from(ResponseRecord).where(ResponseRecord.synced.is_(False))
            ) or 0
            drafts = session.scalar(select(func.count()).select_from(DraftRecord)) or 0
            queue = session.scalar(select(func.count()).select_from(SyncQueueRecord)) or 0
            return StoreStats(
                total_responses=int(total),
                synced_responses=int(total) - int(unsynced),
                unsynced_responses=int(unsynced),
                drafts=int(drafts),
                sync_queue=int(queue),
            )

        return await self._run("get_stats", work)

    async def clear_all(self) -> None:
        """Wipe every collection. Explicit user reset only; sync never calls this."""

        def work(session: Session) -> None:
            for model in (SyncQueueRecord, ResponseRecord, DraftRecord, SurveyCacheRecord):
                session.execute(delete(model))

        await self._run("clear_all", work)
        logger.warning("local_store_cleared")


__all__ = ["LocalStore"]
