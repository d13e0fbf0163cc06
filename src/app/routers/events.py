# src/app/routers/events.py
"""
Trigger endpoints called by the storage bucket and the document-change relay.

Deliveries are at-least-once; every handler is safe to run twice.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from src.app.deps import get_orchestrator, rate_limited, require_internal_caller
from src.app.domain.errors import NotificationDeliveryError, RateLimitExceededError
from src.app.domain.models import StorageObjectEvent
from src.app.services.job_orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/events",
    tags=["Internal events"],
    dependencies=[Depends(require_internal_caller)],
)


class ObjectFinalizedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket: str = ""
    name: str
    content_type: str = Field("", alias="contentType")
    size: int = Field(0, ge=0)


class LectureWrittenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)
    lecture_id: str = Field(..., alias="lectureId", min_length=1)


class EventResponse(BaseModel):
    status: str
    job_status: Optional[str] = None


@router.post("/object-finalized", response_model=EventResponse)
def object_finalized(
    request: ObjectFinalizedRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    event = StorageObjectEvent(
        bucket=request.bucket,
        name=request.name,
        content_type=request.content_type,
        size_bytes=request.size,
    )
    try:
        result = orchestrator.handle_upload(event)
    except RateLimitExceededError as e:
        logger.info("Upload trigger rate limited: %s", e)
        raise rate_limited(e)

    if result is None:
        return EventResponse(status="ignored")
    return EventResponse(status="processed", job_status=result.value)


@router.post("/lecture-written", response_model=EventResponse)
def lecture_written(
    request: LectureWrittenRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.handle_lecture_written(request.user_id, request.lecture_id)
    except RateLimitExceededError as e:
        logger.info("Lecture trigger rate limited: %s", e)
        raise rate_limited(e)
    except NotificationDeliveryError as e:
        logger.warning("Notification delivery failed, asking for redelivery: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return EventResponse(status="processed")
