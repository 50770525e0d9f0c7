"""End-to-end offline capture and reconnect sync.

The device side runs through `open_client_context`; the remote side is the
real FastAPI app served in-process over `httpx.ASGITransport`.
"""

from __future__ import annotations

import anyio
import httpx
import pytest

from nomadsync.config import LocalStoreConfig
from nomadsync.context import open_client_context
from nomadsync.logic.events import RESPONSE_REENQUEUED
from nomadsync.logic.remote_client import RemoteSyncEndpoint
from nomadsync.logic.repository_responses import count_responses, get_response

pytestmark = pytest.mark.anyio


@pytest.fixture
async def asgi_endpoint(anyio_backend, server_app, app_config):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server_app), base_url=app_config.sync.endpoint_url
    ) as http:
        yield RemoteSyncEndpoint(app_config.sync.endpoint_url, client=http)


async def test_offline_capture_then_reconnect_sync(app_config, asgi_endpoint, server_engine):
    async with open_client_context(app_config, initially_online=False, endpoint=asgi_endpoint) as ctx:
        await ctx.store.save_response(
            {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {"q1": "42"}}
        )
        before = await ctx.store.get_stats()
        assert before.unsynced_responses == 1
        assert before.sync_queue == 1

        await ctx.monitor.set_reachable(True)

        saved = await ctx.store.get_response("r1")
        assert saved.synced is True
        assert await ctx.store.list_queue() == []
        assert (await ctx.store.get_stats()).as_dict() == {
            "total_responses": 1,
            "synced_responses": 1,
            "unsynced_responses": 0,
            "drafts": 0,
            "sync_queue": 0,
        }
        assert ctx.monitor.last_result.succeeded == 1

    stored = get_response(server_engine, "r1")
    assert stored["payload"] == {"q1": "42"}
    assert stored["is_offline"] is True
    assert count_responses(server_engine, "r1") == 1


async def test_manual_sync_now_uses_configured_endpoint(app_config, asgi_endpoint, server_engine):
    async with open_client_context(app_config, endpoint=asgi_endpoint) as ctx:
        await ctx.store.save_draft("sess1", {"q1": "draft"}, survey_id="s1")
        await ctx.store.save_response(
            {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {"q1": "final"}}
        )
        summary = await ctx.sync_now()

        assert summary.succeeded == 1
        assert await ctx.store.get_draft("sess1") is None

    assert get_response(server_engine, "r1")["payload"] == {"q1": "final"}


async def test_lost_acknowledgement_resend_is_upsert(app_config, asgi_endpoint, server_engine):
    async with open_client_context(app_config, endpoint=asgi_endpoint) as ctx:
        await ctx.store.save_response(
            {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {"q1": "1"}}
        )
        # The server stores the response but the device never hears back
        await asgi_endpoint.submit_response((await ctx.store.list_queue())[0].payload)

        await ctx.sync_now()

        assert (await ctx.store.get_response("r1")).synced is True

    assert count_responses(server_engine, "r1") == 1
    assert get_response(server_engine, "r1")["revision"] == 2


async def test_unreachable_endpoint_keeps_response_queued(app_config):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with open_client_context(app_config, transport=httpx.MockTransport(refuse)) as ctx:
        await ctx.store.save_response(
            {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {}}
        )
        summary = await ctx.sync_now()

        assert summary.failed == 1
        entry = (await ctx.store.list_queue())[0]
        assert entry.retries == 1
        assert "network error" in entry.last_error
        assert (await ctx.store.get_response("r1")).synced is False


async def test_crash_between_save_and_enqueue_is_recovered(app_config, tmp_path, stub_endpoint):
    url = f"sqlite+pysqlite:///{tmp_path / 'device.db'}"
    cfg = app_config.model_copy(update={"local_store": LocalStoreConfig(url=url)})

    async with open_client_context(cfg, endpoint=stub_endpoint) as ctx:
        await ctx.store.save_response(
            {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {"q1": "42"}}
        )
        # Simulate the queue append being lost
        for entry in await ctx.store.list_queue():
            await ctx.store.dequeue(entry.id)

    async with open_client_context(cfg, endpoint=stub_endpoint) as ctx:
        queue = await ctx.store.list_queue()
        assert len(queue) == 1
        assert queue[0].payload["response_id"] == "r1"
        assert [e["payload"]["response_id"] for e in ctx.events.buffered() if e["type"] == RESPONSE_REENQUEUED] == [
            "r1"
        ]

    # A second open finds nothing orphaned
    async with open_client_context(cfg, endpoint=stub_endpoint) as ctx:
        assert len(await ctx.store.list_queue()) == 1
        await ctx.sync_now()
        assert (await ctx.store.get_response("r1")).synced is True

    assert stub_endpoint.calls == ["r1"]


async def test_contexts_do_not_share_state(app_config, stub_endpoint):
    async with open_client_context(app_config, endpoint=stub_endpoint) as first:
        async with open_client_context(app_config, endpoint=stub_endpoint) as second:
            await first.store.save_response(
                {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {}}
            )
            assert (await second.store.get_stats()).total_responses == 0
            assert second.events.buffered() == []


async def test_watch_connectivity_syncs_when_health_probe_succeeds(app_config, asgi_endpoint):
    async with open_client_context(app_config, initially_online=False, endpoint=asgi_endpoint) as ctx:
        await ctx.store.save_response(
            {"response_id": "r1", "survey_id": "s1", "session_id": "sess1", "payload": {}}
        )
        with anyio.move_on_after(0.5):
            await ctx.watch_connectivity(poll_seconds=0.05)

        assert ctx.monitor.online is True
        assert (await ctx.store.get_response("r1")).synced is True


async def test_watch_connectivity_needs_http_endpoint(app_config, stub_endpoint):
    async with open_client_context(app_config, endpoint=stub_endpoint) as ctx:
        with pytest.raises(TypeError):
            await ctx.watch_connectivity()
