"""Pydantic schemas for the notification queue API"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EnqueueRequest(BaseModel):
    """Schema for queueing a notification from outside the process"""
    template_slug: str = Field(..., min_length=1, max_length=100)
    recipients: List[str] = Field(..., min_length=1, max_length=50)
    variables: Dict[str, Any] = Field(default_factory=dict)
    dedup_key: Optional[str] = Field(None, max_length=512)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    reference_id: Optional[str] = None
    created_by: Optional[str] = None


class EnqueueResponse(BaseModel):
    queued: bool


class ProcessQueueResponse(BaseModel):
    processed: int
    sent: int
    skipped: int
    skipped_duplicate: int
    failed: int
    errors: List[str]
    escalated: bool


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    template_slug: str
    recipients: List[str]
    variables: Dict[str, Any]
    metadata: Dict[str, Any] = Field(validation_alias="meta")
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    dedup_key: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class QueueStatsResponse(BaseModel):
    counts: Dict[str, int]
    total: int
    consecutive_failures: int
    escalation_threshold: int
