"""Read-only survey routes over the synced response store."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.engine import Engine

from nomadsync.logic.repository_responses import list_survey_responses, survey_analytics
from nomadsync.models.wire import StoredResponse, SurveyAnalytics
from nomadsync.routes.deps import get_request_engine

router = APIRouter()


@router.get("/surveys/{survey_id}/responses", summary="List stored responses for a survey")
def get_survey_responses(survey_id: str, engine: Engine = Depends(get_request_engine)):
    rows = [StoredResponse(**r).model_dump() for r in list_survey_responses(engine, survey_id)]
    return {"success": True, "data": rows, "count": len(rows)}


@router.get("/surveys/{survey_id}/analytics", summary="Response counts for a survey")
def get_survey_analytics(survey_id: str, engine: Engine = Depends(get_request_engine)):
    return {"success": True, "data": SurveyAnalytics(**survey_analytics(engine, survey_id)).model_dump()}


__all__ = ["router", "get_survey_responses", "get_survey_analytics"]
