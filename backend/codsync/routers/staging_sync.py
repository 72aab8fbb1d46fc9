"""Staging reconciliation endpoints.

WHAT:
    Thin HTTP wrappers around the staging sync orchestrator: trigger a run,
    poll its progress, reset it.

WHY:
    - Routers handle request parsing only
    - The same orchestrator serves the ARQ worker and the scheduled sweep
    - The actual run happens in the worker; the request returns immediately

REFERENCES:
    - codsync/services/staging_sync_service.py
    - codsync/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from codsync.database import get_db
from codsync.models import User
from codsync.schemas import StagingSyncTriggerRequest, StagingSyncTriggerResponse, SyncProgressResponse
from codsync.services import staging_sync_service
from codsync.services.exceptions import StagingSyncFailed, SyncAlreadyRunningError
from codsync.workers import arq_enqueue

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/users/{user_id}/staging-sync",
    tags=["Staging Sync"],
)


def _require_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user


@router.post("", response_model=StagingSyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_staging_sync(
    user_id: UUID,
    payload: Optional[StagingSyncTriggerRequest] = None,
    db: Session = Depends(get_db),
) -> StagingSyncTriggerResponse:
    """Start (or continue) a staging reconciliation for the user.

    Returns 409 when a different run already owns the user's session.
    """
    _require_user(db, user_id)
    run_id = payload.run_id if payload else None

    try:
        claimed = await staging_sync_service.trigger_reconciliation(
            user_id,
            run_id=run_id,
            enqueue=arq_enqueue.enqueue_staging_sync_job,
        )
    except SyncAlreadyRunningError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": e.message, "run_id": e.run_id},
        )
    except StagingSyncFailed as e:
        raise HTTPException(status_code=503, detail=e.message)

    return StagingSyncTriggerResponse(queued=True, run_id=claimed)


@router.get("/progress", response_model=SyncProgressResponse)
def get_staging_sync_progress(
    user_id: UUID,
    db: Session = Depends(get_db),
) -> SyncProgressResponse:
    """Current session snapshot; safe to poll at high frequency."""
    _require_user(db, user_id)
    session = staging_sync_service.get_progress(db, user_id)
    return SyncProgressResponse.model_validate(session)


@router.post("/reset", response_model=SyncProgressResponse)
def reset_staging_sync_progress(
    user_id: UUID,
    db: Session = Depends(get_db),
) -> SyncProgressResponse:
    """Administrative escape hatch: clear the session and release the run guard."""
    _require_user(db, user_id)
    session = staging_sync_service.reset_progress(db, user_id)
    logger.warning("[STAGING_SYNC] Session of user %s reset via API", user_id)
    return SyncProgressResponse.model_validate(session)
