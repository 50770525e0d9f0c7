"""Per-session client context.

One `ClientContext` is built when a client session starts and passed to
whoever needs the store, the processor or the monitor. It replaces module-level
queue and cache state, so two contexts in the same process (for example two
tests) never see each other's data.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import anyio
import httpx

from nomadsync.config import AppConfig, load_config
from nomadsync.logic.connectivity import ConnectivityMonitor, HttpReachabilityProbe
from nomadsync.logic.events import EventBus
from nomadsync.logic.local_store import LocalStore
from nomadsync.logic.remote_client import RemoteSyncEndpoint, SyncEndpoint
from nomadsync.logic.sync_processor import SyncProcessor
from nomadsync.models.sync_types import SyncSummary

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    config: AppConfig
    events: EventBus
    store: LocalStore
    endpoint: SyncEndpoint
    processor: SyncProcessor
    monitor: ConnectivityMonitor

    async def sync_now(self) -> SyncSummary:
        """Manual trigger: drain the queue once against the configured endpoint."""
        return await self.processor.process_queue(self.endpoint)

    async def watch_connectivity(self, *, poll_seconds: float = 5.0) -> None:
        """Drive the monitor from `GET /health` probes until cancelled."""
        if not isinstance(self.endpoint, RemoteSyncEndpoint):
            raise TypeError("health probing needs an HTTP RemoteSyncEndpoint")
        await self.monitor.run(HttpReachabilityProbe(self.endpoint), poll_seconds=poll_seconds)


@asynccontextmanager
async def open_client_context(
    config: Optional[AppConfig] = None,
    *,
    initially_online: bool = False,
    endpoint: Optional[SyncEndpoint] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[ClientContext]:
    """Open the local store, recover orphaned responses and wire the components.

    `initially_online` is the platform's reachability signal at startup.
    Supply `endpoint` to use a non-HTTP endpoint, or `transport` to route the
    default httpx endpoint through a custom transport.
    """
    cfg = config or load_config()
    events = EventBus()
    store = await anyio.to_thread.run_sync(
        lambda: LocalStore.open(cfg.local_store.url, events=events, device_id=cfg.sync.device_id)
    )
    owned_endpoint: Optional[RemoteSyncEndpoint] = None
    if endpoint is None:
        owned_endpoint = RemoteSyncEndpoint(
            cfg.sync.endpoint_url, timeout=cfg.sync.timeout_seconds, transport=transport
        )
        endpoint = owned_endpoint
    processor = SyncProcessor(
        store, max_retries=cfg.sync.max_retries, timeout=cfg.sync.timeout_seconds, events=events
    )
    resolved_endpoint = endpoint

    async def _trigger() -> SyncSummary:
        return await processor.process_queue(resolved_endpoint)

    monitor = ConnectivityMonitor(
        _trigger,
        initially_online=initially_online,
        interval_seconds=cfg.sync.interval_seconds,
        events=events,
    )
    ctx = ClientContext(
        config=cfg,
        events=events,
        store=store,
        endpoint=resolved_endpoint,
        processor=processor,
        monitor=monitor,
    )
    try:
        recovered = await store.recover_orphaned_responses()
        if recovered:
            logger.warning("client_context_recovered count=%d", len(recovered))
        yield ctx
    finally:
        if owned_endpoint is not None:
            await owned_endpoint.aclose()
        store.close()


__all__ = ["ClientContext", "open_client_context"]
