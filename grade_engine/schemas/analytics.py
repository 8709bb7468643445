"""Rollup and intervention schemas."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel

from grade_engine.db.models import InterventionStatusEnum


class LORollupRead(BaseModel):
    lo_id: int
    snapshot_date: date
    stats: dict[str, Any] = {}
    confidence: float
    sample_size: int
    low_confidence: bool

    model_config = {"from_attributes": True}


class RollupRead(BaseModel):
    id: int
    course_id: int
    snapshot_date: date
    metrics: dict[str, Any] = {}
    confidence: float
    sample_size: int
    low_confidence: bool
    computed_at: datetime
    lo_rollups: list[LORollupRead] = []

    model_config = {"from_attributes": True}


class InterventionResultRead(BaseModel):
    metrics_before: dict[str, Any] = {}
    metrics_after: dict[str, Any] = {}
    improvement: dict[str, float] = {}
    evaluated_at: datetime

    model_config = {"from_attributes": True}


class InterventionRead(BaseModel):
    id: int
    course_id: int
    lo_id: int | None = None
    type: str
    target_group: str
    reason: str | None = None
    parameters: dict[str, Any] = {}
    status: InterventionStatusEnum
    trigger_snapshot_date: date | None = None
    metrics_before: dict[str, Any] = {}
    created_at: datetime
    scheduled_at: datetime | None = None
    executed_at: datetime | None = None
    evaluated_at: datetime | None = None
    cancelled_at: datetime | None = None
    results: list[InterventionResultRead] = []

    model_config = {"from_attributes": True}


class InterventionEvaluationRead(BaseModel):
    course_id: int
    snapshot_date: date | None = None
    created: list[InterventionRead] = []
    scheduled: list[InterventionRead] = []
    evaluated: list[InterventionRead] = []
    suppressed: int = 0


class InterventionExecuted(BaseModel):
    """POST /api/engine/interventions/{id}/executed"""

    executed_at: datetime | None = None
