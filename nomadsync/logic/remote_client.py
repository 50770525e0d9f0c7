"""HTTP client side of the sync wire protocol.

`RemoteSyncEndpoint` posts one queue entry per request with httpx. Transport
failures become `NetworkError` (`SyncTimeout` for timeouts) and non-2xx
statuses become `RemoteRejection`; the sync processor decides what to record.
The stable `response_id` travels in every body and as the `Idempotency-Key`
header so a resend after a lost acknowledgement is an upsert, not a duplicate.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from nomadsync.errors import NetworkError, RemoteRejection, SyncTimeout

logger = logging.getLogger(__name__)

RESPONSES_PATH = "/api/responses"
BATCH_SYNC_PATH = "/api/sync"
HEALTH_PATH = "/health"


class SyncEndpoint(Protocol):
    """What the sync processor needs from a remote endpoint."""

    async def submit_response(self, payload: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def submit_batch(self, responses: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]: ...


def _problem_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body.get("title") or "")
    return ""


class RemoteSyncEndpoint:
    """httpx-backed implementation of `SyncEndpoint`."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "RemoteSyncEndpoint":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, body: Any, headers: Dict[str, str] | None = None) -> httpx.Response:
        try:
            resp = await self._client.post(path, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise SyncTimeout(f"timeout after {self.timeout:g}s posting {path}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"network error posting {path}: {exc}") from exc
        if not resp.is_success:
            raise RemoteRejection(resp.status_code, _problem_detail(resp))
        return resp

    async def submit_response(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """POST one response; returns the decoded body (informational only)."""
        response_id = str(payload.get("response_id") or "")
        headers = {"Idempotency-Key": response_id} if response_id else None
        resp = await self._post(RESPONSES_PATH, dict(payload), headers)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        logger.debug("remote_response_accepted response_id=%s status=%s", response_id, resp.status_code)
        return body if isinstance(body, dict) else {}

    async def submit_batch(self, responses: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """POST a batch; returns per-item results in request order.

        Each result carries `index`, `response_id`, `status` ("synced" or
        "failed") and `error`.
        """
        resp = await self._post(BATCH_SYNC_PATH, {"responses": [dict(r) for r in responses]})
        try:
            results = resp.json()["data"]["results"]
        except (ValueError, KeyError, TypeError) as exc:
            raise RemoteRejection(resp.status_code, "batch response without per-item results") from exc
        if not isinstance(results, list):
            raise RemoteRejection(resp.status_code, "batch response without per-item results")
        return [dict(r) for r in results if isinstance(r, dict)]

    async def check_health(self) -> bool:
        """Reachability probe used by the connectivity monitor."""
        try:
            resp = await self._client.get(HEALTH_PATH)
        except httpx.HTTPError:
            return False
        return resp.status_code < 500


__all__ = [
    "RESPONSES_PATH",
    "BATCH_SYNC_PATH",
    "HEALTH_PATH",
    "SyncEndpoint",
    "RemoteSyncEndpoint",
]
