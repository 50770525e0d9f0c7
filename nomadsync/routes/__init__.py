"""APIRouter registration for the remote sync endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from nomadsync.routes.responses import router as responses_router
from nomadsync.routes.surveys import router as surveys_router
from nomadsync.routes.sync import router as sync_router

api_router = APIRouter()
api_router.include_router(responses_router, tags=["Responses"])
api_router.include_router(sync_router, tags=["Sync"])
api_router.include_router(surveys_router, tags=["Surveys"])

__all__ = ["api_router"]
