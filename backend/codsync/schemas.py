"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import SyncPhaseEnum


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


class StagingSyncTriggerRequest(BaseModel):
    """Request body for starting a staging reconciliation.

    WHAT: Optional run id of the pipeline this request continues
    WHY: A multi-stage sync calls the trigger again with the run id returned
         by its first call; that is a continuation, not a concurrent start
    """

    run_id: Optional[str] = Field(
        default=None,
        description="Run id of the already-started pipeline this call continues",
    )


class StagingSyncTriggerResponse(BaseModel):
    queued: bool = Field(description="Whether the run was handed to the worker")
    run_id: str = Field(description="Run id to correlate progress polls with")


class ProviderProgress(BaseModel):
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class SyncProgressResponse(BaseModel):
    """Snapshot of a user's staging sync session.

    percentage is 0-100 and reaches exactly 100 only in phase `completed`.
    """

    user_id: UUID
    is_running: bool
    phase: SyncPhaseEnum
    message: Optional[str] = None
    run_id: Optional[str] = None
    version: int = Field(description="Bumps on every write; lets pollers skip unchanged snapshots")

    percentage: int = Field(ge=0, le=100)
    total_records: int = 0
    processed_records: int = 0
    updated_orders: int = 0
    created_orders: int = 0
    skipped_records: int = 0
    error_count: int = 0
    provider_stats: Optional[Dict[str, ProviderProgress]] = None

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
