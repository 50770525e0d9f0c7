"""Connectivity monitor: an explicit Online/Offline state machine.

The monitor owns no data. Its single input is `set_reachable()`, fed either by
the platform's reachability signal or by `run()` polling a probe. Every
transition goes through one dispatch point that publishes a
`connectivity.changed` event and notifies subscribers; an Offline -> Online
transition additionally triggers one sync run.

Rapid flaps collapse: a reconnect that arrives while a triggered run is still
active sets a rerun flag, and exactly one follow-up run happens after the
active one returns (provided the monitor is still online).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

import anyio

from nomadsync.logic.events import CONNECTIVITY_CHANGED, EventBus
from nomadsync.logic.remote_client import RemoteSyncEndpoint

logger = logging.getLogger(__name__)

SyncTrigger = Callable[[], Awaitable[Any]]
TransitionCallback = Callable[["ConnectivityState", "ConnectivityState"], None]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectivityMonitor:
    def __init__(
        self,
        trigger: SyncTrigger,
        *,
        initially_online: bool,
        interval_seconds: float = 0.0,
        events: EventBus | None = None,
    ) -> None:
        self._trigger = trigger
        self._state = ConnectivityState.ONLINE if initially_online else ConnectivityState.OFFLINE
        self.interval_seconds = float(interval_seconds)
        self._events = events or EventBus()
        self._subscribers: List[TransitionCallback] = []
        self._syncing = False
        self._rerun = False
        # Set when a triggered run was refused by the busy guard or raised
        self._pending = False
        self._last_run_at: Optional[float] = None
        self.last_result: Any = None
        self.runs_triggered = 0

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    def subscribe(self, callback: TransitionCallback) -> None:
        """Register `callback(old_state, new_state)` for every transition."""
        self._subscribers.append(callback)

    async def set_reachable(self, reachable: bool) -> None:
        """Apply a reachability signal.

        An Offline -> Online transition awaits the triggered sync run (and any
        collapsed rerun) before returning, so `last_result` is current when
        this returns. Callers that must not wait on the network should run
        this in their own task, e.g. `task_group.start_soon(monitor.set_reachable, True)`.
        """
        new = ConnectivityState.ONLINE if reachable else ConnectivityState.OFFLINE
        if new is self._state:
            return
        old, self._state = self._state, new
        self._dispatch(old, new)
        if new is ConnectivityState.ONLINE:
            await self.trigger_sync("reconnect")

    def _dispatch(self, old: ConnectivityState, new: ConnectivityState) -> None:
        logger.info("connectivity_changed from=%s to=%s", old.value, new.value)
        self._events.publish(CONNECTIVITY_CHANGED, {"from": old.value, "to": new.value})
        for callback in list(self._subscribers):
            try:
                callback(old, new)
            except Exception:
                logger.error("connectivity_subscriber_failed", exc_info=True)

    async def trigger_sync(self, reason: str = "manual") -> Any:
        """Invoke the sync trigger unless one triggered run is already active.

        An exception from the trigger is logged and leaves a pending run for
        the next `tick()`; it is never raised to the caller.

        Going offline performs no store work; the run simply is not started
        while the monitor believes the network is unreachable.
        """
        if not self.online:
            logger.info("sync_trigger_skipped reason=%s state=offline", reason)
            return None
        if self._syncing:
            self._rerun = True
            logger.info("sync_trigger_deferred reason=%s", reason)
            return None
        self._syncing = True
        try:
            while True:
                self._rerun = False
                self._pending = False
                self.runs_triggered += 1
                logger.info("sync_triggered reason=%s", reason)
                try:
                    result = await self._trigger()
                except Exception:
                    # Retried on the next tick; the monitor itself keeps running
                    logger.error("sync_trigger_failed reason=%s", reason, exc_info=True)
                    self._pending = True
                    self._last_run_at = anyio.current_time()
                    break
                self.last_result = result
                self._last_run_at = anyio.current_time()
                if getattr(result, "busy", False) or getattr(result, "aborted", None):
                    self._pending = True
                if not (self._rerun and self.online):
                    break
                reason = "rerun"
        finally:
            self._syncing = False
        return self.last_result

    def _due(self) -> bool:
        if self._pending:
            return True
        if self.interval_seconds <= 0:
            return False
        if self._last_run_at is None:
            return True
        return anyio.current_time() - self._last_run_at >= self.interval_seconds

    async def tick(self, reachable: bool) -> None:
        """Apply one reachability observation and fire a periodic run if due."""
        was_online = self.online
        await self.set_reachable(reachable)
        if was_online and self.online and self._due():
            await self.trigger_sync("interval")

    async def run(self, probe: Probe, *, poll_seconds: float = 5.0) -> None:
        """Poll `probe` forever; cancel the surrounding scope to stop."""
        while True:
            try:
                reachable = bool(await probe())
            except Exception:
                logger.warning("reachability_probe_failed", exc_info=True)
                reachable = False
            await self.tick(reachable)
            await anyio.sleep(poll_seconds)


class HttpReachabilityProbe:
    """Probe that treats a non-5xx `GET /health` answer as reachable."""

    def __init__(self, endpoint: RemoteSyncEndpoint) -> None:
        self._endpoint = endpoint

    async def __call__(self) -> bool:
        return await self._endpoint.check_health()


__all__ = [
    "ConnectivityState",
    "ConnectivityMonitor",
    "HttpReachabilityProbe",
]
