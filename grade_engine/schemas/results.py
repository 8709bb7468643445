"""Quiz result / course grade / gamification read schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from grade_engine.db.models import GradeStatusEnum, QuizResultStatusEnum


class QuizResultRead(BaseModel):
    id: int
    learner_id: int
    quiz_id: int
    status: QuizResultStatusEnum
    raw_total_points: float
    max_points: float
    bonuses_total: float
    score: float
    completion_time: datetime | None = None
    synced_at: datetime | None = None

    model_config = {"from_attributes": True}


class QuizRecomputeRead(BaseModel):
    result: QuizResultRead
    coalesced: bool
    skipped: list[str] = []


class CourseGradeRead(BaseModel):
    id: int
    learner_id: int
    course_id: int
    grade: float | None = None
    letter_grade: str | None = None
    status: GradeStatusEnum
    error: str | None = None
    column_values: dict[str, Any] = {}
    unmapped_quiz_ids: list[int] = []
    computed_at: datetime | None = None

    model_config = {"from_attributes": True}


class CourseGradeRecomputeRead(BaseModel):
    result: CourseGradeRead
    changed: bool
    history_sequence: int | None = None


class GradeHistoryRead(BaseModel):
    """One write-once snapshot, oldest first in listings."""

    sequence: int
    changed_at: datetime
    grade: float | None = None
    letter_grade: str | None = None
    status: GradeStatusEnum
    column_values: dict[str, Any] = {}
    computed_at: datetime | None = None

    model_config = {"from_attributes": True}


class CourseBatchReportRead(BaseModel):
    course_id: int
    recomputed: list[int] = []
    changed: list[int] = []
    failed: dict[int, str] = {}


class GamificationRead(BaseModel):
    learner_id: int
    total_points: float
    current_level: int
    experience_points: float
    next_level_at: float
    stats: dict[str, Any] = {}
