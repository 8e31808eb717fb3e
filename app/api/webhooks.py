"""Webhooks API — unauthenticated endpoint for Git provider deliveries."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_build_queue
from app.metrics import observe_webhook
from app.rate_limit import webhook_limiter
from app.services.common import coerce_uuid
from app.services.git_providers import get_provider
from app.services.pipeline_errors import VerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _ingest(queue, repository_id: UUID, provider: str, body: bytes, headers: dict[str, str]) -> dict:
    from app.db import SessionLocal
    from app.services.webhook_ingest_service import WebhookIngestService

    db = SessionLocal()
    try:
        result = WebhookIngestService(db, queue=queue).receive(repository_id, provider, body, headers)
        db.commit()
        return result
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.post("/{provider}/{repository_id}")
async def receive_webhook(provider: str, repository_id: str, request: Request) -> dict:
    """Receive a push/tag event.

    This endpoint is unauthenticated; the provider adapter verifies the
    signature or token. Builds run on the queue, so the response only carries
    the build id.
    """
    webhook_limiter.check(request)
    try:
        kind = get_provider(provider).kind.value
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    repo_id = coerce_uuid(repository_id)
    body = await request.body()
    headers = dict(request.headers)
    queue = get_build_queue(request)
    try:
        result = await run_in_threadpool(_ingest, queue, repo_id, kind, body, headers)
    except LookupError as e:
        observe_webhook(kind, "not_found")
        raise HTTPException(status_code=404, detail=str(e))
    except VerificationError as e:
        observe_webhook(kind, "unverified")
        raise HTTPException(status_code=401, detail=e.message)
    except ValueError as e:
        observe_webhook(kind, "rejected")
        raise HTTPException(status_code=400, detail=str(e))
    observe_webhook(kind, "queued" if result.get("build_id") else "ignored")
    return result
