# src/app/deps.py
from __future__ import annotations

import hmac
import logging
import math
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from supabase import Client, create_client

from src.app.config import settings
from src.app.domain.errors import RateLimitExceededError
from src.app.infra.db.base import DocumentStore
from src.app.services.entitlements import EntitlementService
from src.app.services.job_orchestrator import JobOrchestrator
from src.app.services.quota_service import QuotaService
from src.app.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

_client: Client | None = None


def get_supabase() -> Client:
    global _client
    if _client is None:
        _client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


@lru_cache(maxsize=1)
def get_document_store() -> DocumentStore:
    if settings.DOCUMENT_STORE == "memory":
        from src.app.infra.db.memory_store import InMemoryDocumentStore

        logger.warning("Using the in-memory document store; data is lost on restart")
        return InMemoryDocumentStore()

    from src.app.infra.db.supabase_store import SupabaseDocumentStore

    return SupabaseDocumentStore(get_supabase())


def get_quota_service(store: DocumentStore = Depends(get_document_store)) -> QuotaService:
    return QuotaService(store)


def get_entitlement_service(store: DocumentStore = Depends(get_document_store)) -> EntitlementService:
    return EntitlementService(store, settings.REVENUECAT_ENTITLEMENT_ID)


@lru_cache(maxsize=1)
def get_orchestrator() -> JobOrchestrator:
    from src.app.infra.storage.r2_provider import R2StorageProvider
    from src.app.services.llm_client import GeminiClient
    from src.app.services.notifications import OneSignalNotifier
    from src.app.services.summarizer import Summarizer
    from src.app.services.transcription_pipeline import TranscriptionPipeline
    from src.app.services.translator import Translator

    store = get_document_store()
    llm = GeminiClient()
    return JobOrchestrator(
        store=store,
        storage=R2StorageProvider(),
        quota=QuotaService(store),
        rate_limiter=RateLimiter(store),
        transcriber=TranscriptionPipeline(),
        summarizer=Summarizer(llm),
        translator=Translator(llm),
        notifier=OneSignalNotifier(),
    )


def rate_limited(error: RateLimitExceededError) -> HTTPException:
    retry_after_seconds = max(1, math.ceil((error.retry_after_ms or 1000) / 1000))
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=str(error),
        headers={"Retry-After": str(retry_after_seconds)},
    )


auth_scheme = HTTPBearer(auto_error=False)


def verify_shared_secret(cred: HTTPAuthorizationCredentials | None, secret: str) -> None:
    """Reject the request unless it carries `Authorization: Bearer <secret>`."""
    if not secret:
        logger.error("Shared secret is not configured; rejecting request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    if not hmac.compare_digest(cred.credentials.encode(), secret.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def require_internal_caller(cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme)) -> None:
    verify_shared_secret(cred, settings.INTERNAL_EVENTS_SECRET)


def require_billing_webhook(cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme)) -> None:
    verify_shared_secret(cred, settings.REVENUECAT_WEBHOOK_SECRET)


class CurrentUser(BaseModel):
    id: str
    email: str | None = None


async def get_current_user(
    cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
    supa: Client = Depends(get_supabase),
) -> CurrentUser:
    """
    Takes `Authorization: Bearer <access_token>` issued by Supabase,
    validates it against GoTrue and returns the minimal user data.
    """
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    token = cred.credentials
    try:
        res = supa.auth.get_user(token)
        user = res.user
        if not user:
            raise HTTPException(status_code=401, detail="Invalid token")
        return CurrentUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid/expired token")
