from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


JobStatus = Literal["queued", "processing", "processed", "failed", "discarded"]


class WebhookAck(BaseModel):
    status: Literal["queued", "processed", "ignored"]
    event_type: str | None = None
    job_id: str | None = None
    action: str | None = None


class WebhookJobListItem(BaseModel):
    id: str
    installation_id: str
    declared_event: str | None = None
    kind: str | None = None
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 1
    available_at: datetime | None = None
    last_error: str | None = None
    request_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None


class WebhookJobDetailResponse(WebhookJobListItem):
    event: dict[str, Any] = Field(default_factory=dict)
    snapshot: dict[str, Any] = Field(default_factory=dict)


class WebhookJobRetryResponse(BaseModel):
    status: Literal["requeued"]
    job_id: str
    previous_status: JobStatus


class WebhookJobRunRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=200)


class WebhookJobRunResponse(BaseModel):
    claimed: int
    reclaimed: int
    processed: int
    retried: int
    failed: int
    discarded: int
    crashed: int = 0
