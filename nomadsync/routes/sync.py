"""Batch sync route.

`POST /sync` upserts each item independently and reports per-item outcomes, so
the client can mark only the accepted subset as synced.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from nomadsync.http.problem import problem_response
from nomadsync.logic.repository_responses import upsert_response
from nomadsync.models.wire import BatchData, BatchItemResult, BatchResult, BatchSyncIn, ResponseIn
from nomadsync.routes.deps import get_request_engine

router = APIRouter()
logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', '')}" if loc else str(err.get("msg", "")))
    return "; ".join(parts) or "invalid response"


@router.post("/sync", summary="Batch upsert of offline responses", response_model=BatchResult)
def batch_sync(body: BatchSyncIn, engine: Engine = Depends(get_request_engine)):
    if not body.responses:
        return problem_response(400, "No responses to sync")

    results: List[BatchItemResult] = []
    for index, raw in enumerate(body.responses):
        rid = raw.get("response_id") if isinstance(raw, dict) else None
        try:
            item = ResponseIn.model_validate(raw)
        except ValidationError as exc:
            results.append(
                BatchItemResult(index=index, response_id=rid, status="failed", error=_validation_message(exc))
            )
            continue
        try:
            # One transaction per item: a failed item must not roll back the others
            with engine.begin() as conn:
                upsert_response(conn, item)
        except SQLAlchemyError:
            logger.error("batch_item_upsert_failed index=%d response_id=%s", index, item.response_id, exc_info=True)
            results.append(
                BatchItemResult(index=index, response_id=item.response_id, status="failed", error="storage error")
            )
            continue
        results.append(BatchItemResult(index=index, response_id=item.response_id, status="synced"))

    synced = sum(1 for r in results if r.status == "synced")
    failed = len(results) - synced
    logger.info("batch_sync_completed synced=%d failed=%d", synced, failed)
    payload = BatchResult(
        message=f"Synced {synced} of {len(results)} responses",
        data=BatchData(synced=synced, failed=failed, results=results),
    )
    return JSONResponse(payload.model_dump())


__all__ = ["router", "batch_sync"]
