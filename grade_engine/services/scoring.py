"""Scoring Unit: turns one question attempt into awarded points.

Rule, applied in order:
  1. base points = question.max_points if correct else 0
  2. zero once ``attempt_index`` exceeds ``max_attempts_before_zero``
  3. multiplicative decay ``attempt_decay_factor ** (attempt_index - 1)``
  4. time penalty ``(time_spent - allowed) * late_penalty_per_second``,
     only when time_spent exceeds the allowed threshold
  5. clamp to ``[0, question.max_points]``

The unit never raises: malformed input (unknown question, unusable point
value, bad attempt index) comes back as a ``DataIntegrityError`` in the
outcome and the attempt is skipped by aggregation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from grade_engine.core.errors import DataIntegrityError
from grade_engine.schemas.scoring import PenaltyPolicy

logger = logging.getLogger(__name__)

_POINT_PRECISION = 4


@dataclass(frozen=True)
class ScoreOutcome:
    question_id: int
    attempt_index: int
    points: float
    error: DataIntegrityError | None = None

    @property
    def skipped(self) -> bool:
        return self.error is not None


# ── Policy resolution ─────────────────────────────────────────────────────────


def resolve_policy(raw: dict[str, Any] | None, quiz_id: Any = None) -> PenaltyPolicy:
    """Build a policy from a quiz's JSON blob, falling back to defaults.

    A malformed blob is logged and replaced by the defaults rather than
    failing every attempt of the quiz.
    """
    if not raw:
        return PenaltyPolicy()
    try:
        return PenaltyPolicy.model_validate(raw)
    except ValidationError as e:
        logger.warning("Quiz %s has an invalid penalty policy, using defaults: %s", quiz_id, e)
        return PenaltyPolicy()


# ── Rule steps ────────────────────────────────────────────────────────────────


def _attempt_multiplier(attempt_index: int, policy: PenaltyPolicy) -> float:
    if (
        policy.max_attempts_before_zero is not None
        and attempt_index > policy.max_attempts_before_zero
    ):
        return 0.0
    return policy.attempt_decay_factor ** (attempt_index - 1)


def _time_penalty(time_spent: float, policy: PenaltyPolicy) -> float:
    allowed = policy.allowed_time_seconds
    if allowed is None or time_spent <= allowed:
        return 0.0
    return (time_spent - allowed) * policy.late_penalty_per_second


# ── Main scoring function ────────────────────────────────────────────────────


def score_attempt(
    *,
    question_id: int,
    attempt_index: int,
    is_correct: bool,
    time_spent: float,
    max_points: float | None,
    policy: PenaltyPolicy,
) -> ScoreOutcome:
    """Score one attempt. ``max_points=None`` means the question is unknown."""
    if max_points is None:
        return ScoreOutcome(
            question_id, attempt_index, 0.0,
            DataIntegrityError("question", question_id, "attempt references an unknown question"),
        )
    if max_points < 0:
        return ScoreOutcome(
            question_id, attempt_index, 0.0,
            DataIntegrityError("question", question_id, f"negative max_points {max_points}"),
        )
    if attempt_index < 1:
        return ScoreOutcome(
            question_id, attempt_index, 0.0,
            DataIntegrityError("question", question_id, f"invalid attempt_index {attempt_index}"),
        )

    points = max_points if is_correct else 0.0
    points *= _attempt_multiplier(attempt_index, policy)
    if points > 0:
        points -= _time_penalty(max(time_spent, 0.0), policy)

    points = min(max(points, 0.0), max_points)
    return ScoreOutcome(question_id, attempt_index, round(points, _POINT_PRECISION))
