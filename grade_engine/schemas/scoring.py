"""Scoring schemas: penalty policy and attempt submission."""

from pydantic import BaseModel, Field

from grade_engine.config import settings


class PenaltyPolicy(BaseModel):
    """Per-quiz penalty configuration (``Quiz.penalty_policy`` JSON).

    Unknown keys are ignored so authoring can extend the blob freely.
    """

    late_penalty_per_second: float = Field(default=settings.DEFAULT_LATE_PENALTY_PER_SECOND, ge=0)
    allowed_time_seconds: float | None = Field(default=settings.DEFAULT_ALLOWED_TIME_SECONDS, ge=0)
    max_attempts_before_zero: int | None = Field(
        default=settings.DEFAULT_MAX_ATTEMPTS_BEFORE_ZERO, ge=1
    )
    attempt_decay_factor: float = Field(
        default=settings.DEFAULT_ATTEMPT_DECAY_FACTOR, gt=0, le=1
    )

    model_config = {"extra": "ignore"}


class AttemptSubmit(BaseModel):
    """POST /api/engine/attempts: one answer from the quiz-taking flow."""

    learner_id: int
    quiz_id: int
    question_id: int
    selected_answer_id: int | None = None
    is_correct: bool
    time_spent: float = Field(default=0.0, ge=0)
    attempt_index: int | None = Field(default=None, ge=1)  # next index when omitted


class AttemptRecorded(BaseModel):
    attempt_id: int
    learner_id: int
    quiz_id: int
    question_id: int
    attempt_index: int
    points_earned: float
