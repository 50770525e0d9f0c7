"""Pydantic models for the sync wire protocol.

Declares request and response bodies shared by the remote endpoint routes and
the tests without coupling them to the route implementation files.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ResponseIn(BaseModel):
    """One submitted response.

    `payload` is also accepted under the legacy key `responses` used by older
    form clients.
    """

    model_config = ConfigDict(extra="ignore")

    response_id: str = Field(min_length=1)
    survey_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("payload", "responses")
    )
    submitted_at: str | None = None
    device_info: Dict[str, Any] = Field(default_factory=dict)
    is_offline: bool = False


class BatchSyncIn(BaseModel):
    # Items are validated one by one so a malformed item fails alone
    responses: List[Dict[str, Any]] = Field(default_factory=list)


class UpsertData(BaseModel):
    response_id: str
    created: bool
    revision: int


class UpsertResult(BaseModel):
    success: bool = True
    data: UpsertData


class BatchItemResult(BaseModel):
    index: int
    response_id: str | None = None
    status: Literal["synced", "failed"]
    error: str | None = None


class BatchData(BaseModel):
    synced: int
    failed: int
    results: List[BatchItemResult]


class BatchResult(BaseModel):
    success: bool = True
    message: str
    data: BatchData


class StoredResponse(BaseModel):
    response_id: str
    survey_id: str
    session_id: str
    payload: Dict[str, Any]
    submitted_at: str
    device_info: Dict[str, Any]
    is_offline: bool
    synced_at: str
    revision: int


class DailyCount(BaseModel):
    date: str
    count: int


class SurveyAnalytics(BaseModel):
    total_responses: int
    offline_responses: int
    online_responses: int
    responses_by_day: List[DailyCount]


__all__ = [
    "ResponseIn",
    "BatchSyncIn",
    "UpsertData",
    "UpsertResult",
    "BatchItemResult",
    "BatchData",
    "BatchResult",
    "StoredResponse",
    "DailyCount",
    "SurveyAnalytics",
]
