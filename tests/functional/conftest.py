"""Functional test bootstrap for the offline sync subsystem.

Every test gets its own in-memory SQLite databases: one for the device-side
local store and one for the remote endpoint. Async tests run on anyio's pytest
plugin with the asyncio backend. Remote behaviour is stubbed with
`StubEndpoint` (no I/O) or served in-process through `httpx.ASGITransport`.
"""

from __future__ import annotations

import os
import typing as t

import pytest

# The endpoint app must never pick up a developer's DATABASE_URL during tests
os.environ.pop("DATABASE_URL", None)
os.environ.pop("TEST_DATABASE_URL", None)

from nomadsync.config import AppConfig, LocalStoreConfig, ServerConfig, SyncConfig
from nomadsync.db.base import build_engine
from nomadsync.errors import NetworkError, RemoteRejection
from nomadsync.logic.events import EventBus
from nomadsync.logic.local_store import LocalStore

MEMORY_URL = "sqlite+pysqlite:///:memory:"


class StubEndpoint:
    """In-memory remote endpoint with upsert semantics and scripted failures.

    - `fail_ids`: response ids answered with a simulated network error
    - `reject`: response id -> HTTP status answered as a RemoteRejection
    - `batch_fail_ids`: response ids reported as failed inside a batch
    """

    def __init__(
        self,
        fail_ids: t.Iterable[str] = (),
        reject: dict[str, int] | None = None,
        batch_fail_ids: t.Iterable[str] = (),
        delay: float = 0.0,
    ) -> None:
        self.fail_ids = set(fail_ids)
        self.reject = dict(reject or {})
        self.batch_fail_ids = set(batch_fail_ids)
        self.delay = delay
        self.calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.stored: dict[str, dict] = {}

    async def submit_response(self, payload: t.Mapping[str, t.Any]) -> dict:
        rid = str(payload["response_id"])
        self.calls.append(rid)
        if self.delay:
            import anyio

            await anyio.sleep(self.delay)
        if rid in self.fail_ids:
            raise NetworkError(f"simulated network error for {rid}")
        if rid in self.reject:
            raise RemoteRejection(self.reject[rid], "simulated rejection")
        created = rid not in self.stored
        self.stored[rid] = dict(payload)
        return {"success": True, "data": {"response_id": rid, "created": created}}

    async def submit_batch(self, responses: t.Sequence[t.Mapping[str, t.Any]]) -> list[dict]:
        ids = [str(r["response_id"]) for r in responses]
        self.batch_calls.append(ids)
        results = []
        for index, item in enumerate(responses):
            rid = str(item["response_id"])
            if rid in self.batch_fail_ids:
                results.append({"index": index, "response_id": rid, "status": "failed", "error": "rejected"})
                continue
            self.stored[rid] = dict(item)
            results.append({"index": index, "response_id": rid, "status": "synced", "error": None})
        return results


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def store(events: EventBus) -> t.Iterator[LocalStore]:
    s = LocalStore.open(MEMORY_URL, events=events, device_id="tablet-07")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def stub_endpoint() -> StubEndpoint:
    return StubEndpoint()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        local_store=LocalStoreConfig(url=MEMORY_URL),
        sync=SyncConfig(endpoint_url="http://nomadsync.test", timeout_seconds=2.0, max_retries=3, interval_seconds=0),
        server=ServerConfig(database_url=MEMORY_URL, auto_apply_migrations=True),
    )


@pytest.fixture
def server_engine():
    engine = build_engine(MEMORY_URL)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def server_app(server_engine, app_config: AppConfig):
    from nomadsync.main import create_app

    return create_app(engine=server_engine, config=app_config)


@pytest.fixture
def client(server_app):
    from fastapi.testclient import TestClient

    with TestClient(server_app) as c:
        yield c


def make_response(n: int | str, **overrides: t.Any) -> dict:
    """Build a response mapping like the form-submission collaborator does."""
    body = {
        "response_id": f"r{n}",
        "survey_id": "s1",
        "session_id": f"sess{n}",
        "payload": {"q1": str(n)},
    }
    body.update(overrides)
    return body


@pytest.fixture(name="make_response")
def make_response_fixture() -> t.Callable[..., dict]:
    return make_response


@pytest.fixture
def stub_factory() -> t.Callable[..., StubEndpoint]:
    return StubEndpoint
