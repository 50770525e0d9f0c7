"""Single-response upsert route.

`POST /responses` is the per-entry target of the client sync queue. The
client-generated `response_id` is the upsert key, so a resend after a lost
acknowledgement updates the stored row instead of duplicating it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from nomadsync.http.problem import problem_response
from nomadsync.logic.repository_responses import upsert_response
from nomadsync.models.wire import ResponseIn, UpsertData, UpsertResult
from nomadsync.routes.deps import get_request_engine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/responses",
    summary="Upsert one survey response",
    response_model=UpsertResult,
    responses={201: {"model": UpsertResult}},
)
def submit_response(item: ResponseIn, request: Request, engine: Engine = Depends(get_request_engine)):
    """Store `item`; 201 when the response_id is new, 200 when it was updated."""
    idem_key = request.headers.get("Idempotency-Key")
    if idem_key and idem_key != item.response_id:
        logger.warning(
            "idempotency_key_mismatch header=%s response_id=%s", idem_key, item.response_id
        )
    try:
        with engine.begin() as conn:
            outcome = upsert_response(conn, item)
    except SQLAlchemyError:
        logger.error("response_upsert_failed response_id=%s", item.response_id, exc_info=True)
        return problem_response(503, "response store unavailable")
    body = UpsertResult(data=UpsertData(**outcome))
    return JSONResponse(body.model_dump(), status_code=201 if outcome["created"] else 200)


__all__ = ["router", "submit_response"]
