# src/app/routers/v2/lectures.py
"""
Client routes for lecture follow-up actions and plan usage.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.app.deps import CurrentUser, get_current_user, get_orchestrator, get_quota_service, rate_limited
from src.app.domain.errors import (
    InvalidJobStateError,
    InvalidObjectKeyError,
    JobNotFoundError,
    RateLimitExceededError,
    UnsupportedLanguageError,
)
from src.app.services.job_orchestrator import JobOrchestrator
from src.app.services.quota_service import QuotaService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v2", tags=["Lectures V2"])


# =============================================================================
# Request/Response Models
# =============================================================================

class TranslationRequest(BaseModel):
    language: str = Field(..., min_length=2, max_length=8, description="Target language code, e.g. 'ar'")


class TranslationResponse(BaseModel):
    language: str
    requested: bool = Field(..., description="False when the translation already exists or is running")


class ResubmitResponse(BaseModel):
    job_id: str
    status: Optional[str] = Field(None, description="Status after the new attempt")


class UsageResponse(BaseModel):
    plan: str
    monthly_key: str
    monthly_minutes_used: int
    monthly_limit: Optional[int] = None
    free_lifetime_minutes_used: int
    free_lifetime_limit: Optional[int] = None
    minutes_remaining: int
    renews_at: datetime


# =============================================================================
# Routes
# =============================================================================

@router.post("/lectures/{job_id}/translations", response_model=TranslationResponse, status_code=status.HTTP_202_ACCEPTED)
def request_translation(
    job_id: str,
    request: TranslationRequest,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Ask for the summary in another language.

    The translation is produced by the lecture-written trigger; poll the
    lecture record for `summaryTranslations.{language}`.
    """
    language = request.language.strip().lower()
    try:
        requested = orchestrator.request_translation(current_user.id, job_id, language)
    except UnsupportedLanguageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lecture not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("Translation requested: user=%s, lecture=%s, language=%s", current_user.id, job_id, language)
    return TranslationResponse(language=language, requested=requested)


@router.post("/lectures/{job_id}/resubmit", response_model=ResubmitResponse)
def resubmit_lecture(
    job_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Retry a lecture that was blocked by quota, e.g. after upgrading."""
    try:
        result = orchestrator.resubmit(current_user.id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lecture not found")
    except (InvalidJobStateError, InvalidObjectKeyError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except RateLimitExceededError as e:
        raise rate_limited(e)

    return ResubmitResponse(job_id=job_id, status=result.value if result else None)


@router.get("/usage", response_model=UsageResponse)
def get_usage(
    current_user: CurrentUser = Depends(get_current_user),
    quota_service: QuotaService = Depends(get_quota_service),
):
    usage = quota_service.get_usage(current_user.id)
    return UsageResponse(
        plan=usage.plan.value,
        monthly_key=usage.monthly_key,
        monthly_minutes_used=usage.monthly_minutes_used,
        monthly_limit=usage.monthly_limit,
        free_lifetime_minutes_used=usage.free_lifetime_minutes_used,
        free_lifetime_limit=usage.free_lifetime_limit,
        minutes_remaining=usage.minutes_remaining,
        renews_at=usage.renews_at,
    )
