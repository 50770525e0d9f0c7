"""Sync queue processor.

Drains a snapshot of the local sync queue against a remote endpoint:

- entries are taken in ascending id order and dispatched one at a time;
- each entry gets exactly one attempt per run, bounded by a per-attempt
  timeout; retry cadence comes from repeated runs, not from this loop;
- a failure is recorded on the entry and the run moves on to the next entry;
- an entry whose recorded failures reach the policy cap (or that the endpoint
  rejected permanently) becomes `failed` and is skipped until requeued;
- overlapping runs are refused by a busy guard.

Network and remote errors never leave this module; they are summarized in the
returned `SyncSummary`. A `StorageError` while doing bookkeeping stops the
run, since the local state can no longer be trusted for it; the error is
logged and reported as `SyncSummary.aborted`, and the next run starts fresh.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import anyio

from nomadsync.errors import NetworkError, RemoteRejection, StorageError, SyncTimeout
from nomadsync.logic.events import (
    SYNC_ENTRY_ABANDONED,
    SYNC_ENTRY_FAILED,
    SYNC_RUN_COMPLETED,
    EventBus,
)
from nomadsync.logic.local_store import LocalStore
from nomadsync.logic.remote_client import SyncEndpoint
from nomadsync.models.sync_types import Operation, QueueStatus, SyncQueueEntry, SyncSummary

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _PartialBatch(Exception):
    """Some items of a batch-sync entry were not accepted by the endpoint."""

    def __init__(self, remaining: List[Dict[str, Any]], message: str) -> None:
        super().__init__(message)
        self.remaining = remaining


class SyncProcessor:
    def __init__(
        self,
        store: LocalStore,
        *,
        max_retries: int = 5,
        timeout: float = 5.0,
        events: EventBus | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._store = store
        self.max_retries = int(max_retries)
        self.timeout = float(timeout)
        self._events = events or store.events
        self._busy = False
        self._in_flight: Optional[SyncQueueEntry] = None

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def in_flight(self) -> Optional[SyncQueueEntry]:
        """The entry currently awaiting the endpoint, if any (memory only)."""
        return self._in_flight

    async def process_queue(self, endpoint: SyncEndpoint) -> SyncSummary:
        """Run one pass over the queue snapshot taken at call time.

        The caller is responsible for only invoking this while the network is
        believed reachable.
        """
        if self._busy:
            logger.info("sync_run_refused reason=busy")
            return SyncSummary(busy=True)
        self._busy = True
        summary = SyncSummary()
        try:
            snapshot = sorted(await self._store.list_queue(), key=lambda e: e.id)
            logger.info("sync_run_started entries=%d", len(snapshot))
            for entry in snapshot:
                if entry.status is QueueStatus.FAILED:
                    summary.skipped_failed += 1
                    continue
                await self._process_entry(entry, endpoint, summary)
        except StorageError as exc:
            summary.aborted = str(exc)
            logger.error("sync_run_aborted error=%s", exc, exc_info=True)
        finally:
            self._in_flight = None
            self._busy = False
        logger.info(
            "sync_run_completed attempted=%d succeeded=%d failed=%d skipped_failed=%d",
            summary.attempted,
            summary.succeeded,
            summary.failed,
            summary.skipped_failed,
        )
        self._events.publish(
            SYNC_RUN_COMPLETED,
            {
                "attempted": summary.attempted,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped_failed": summary.skipped_failed,
                "aborted": summary.aborted,
            },
        )
        return summary

    async def _process_entry(self, entry: SyncQueueEntry, endpoint: SyncEndpoint, summary: SyncSummary) -> None:
        entry.status = QueueStatus.IN_FLIGHT
        self._in_flight = entry
        summary.attempted += 1
        try:
            await self._dispatch(entry, endpoint)
        except _PartialBatch as exc:
            ids = [str(r.get("response_id")) for r in exc.remaining]
            await self._store.replace_payload(entry.id, {"responses": exc.remaining}, ids)
            await self._fail(entry, str(exc), permanent=False, summary=summary)
        except RemoteRejection as exc:
            await self._fail(entry, str(exc), permanent=exc.permanent, summary=summary)
        except NetworkError as exc:
            await self._fail(entry, str(exc), permanent=False, summary=summary)
        else:
            summary.succeeded += 1
            logger.info("sync_entry_succeeded id=%s operation=%s", entry.id, entry.operation.value)
        finally:
            self._in_flight = None

    async def _remote(self, call: Callable[[], Awaitable[T]]) -> T:
        # The timeout covers the remote call only, never local bookkeeping
        try:
            with anyio.fail_after(self.timeout):
                return await call()
        except TimeoutError as exc:
            raise SyncTimeout(f"timeout after {self.timeout:g}s") from exc

    async def _dispatch(self, entry: SyncQueueEntry, endpoint: SyncEndpoint) -> None:
        if entry.operation is Operation.CREATE_RESPONSE:
            await self._remote(lambda: endpoint.submit_response(entry.payload))
            await self._store.dequeue(entry.id)
            response_id = entry.payload.get("response_id")
            if response_id:
                await self._store.mark_synced(str(response_id))
            return

        items: List[Dict[str, Any]] = list(entry.payload.get("responses") or [])
        results = await self._remote(lambda: endpoint.submit_batch(items))
        accepted: set[int] = set()
        for result in results:
            if result.get("status") != "synced":
                continue
            try:
                accepted.add(int(result["index"]))
            except (KeyError, TypeError, ValueError):
                continue
        remaining = [item for i, item in enumerate(items) if i not in accepted]
        for i in sorted(accepted):
            if 0 <= i < len(items) and items[i].get("response_id"):
                await self._store.mark_synced(str(items[i]["response_id"]))
        if remaining:
            errors = sorted({str(r.get("error")) for r in results if r.get("status") != "synced" and r.get("error")})
            detail = "; ".join(errors) if errors else "no result returned"
            raise _PartialBatch(remaining, f"{len(remaining)} of {len(items)} batch items failed: {detail}")
        await self._store.dequeue(entry.id)

    async def _fail(self, entry: SyncQueueEntry, message: str, *, permanent: bool, summary: SyncSummary) -> None:
        summary.failed += 1
        summary.errors[entry.id] = message
        updated = await self._store.record_failure(
            entry.id, message, max_retries=self.max_retries, permanent=permanent
        )
        if updated is None:
            logger.info("sync_entry_vanished id=%s", entry.id)
            return
        logger.warning(
            "sync_entry_failed id=%s retries=%d status=%s error=%s",
            updated.id,
            updated.retries,
            updated.status.value,
            message,
        )
        payload = {"id": updated.id, "retries": updated.retries, "error": message}
        self._events.publish(SYNC_ENTRY_FAILED, payload)
        if updated.status is QueueStatus.FAILED:
            self._events.publish(SYNC_ENTRY_ABANDONED, payload)


__all__ = ["SyncProcessor"]
