"""Gamification Tracker: streaks, levels and the in-quiz bonus modifier.

Two entry points:
  * ``streak_bonus`` – pure function over the counted attempts of one quiz
    result, used by the Quiz Result Aggregator as ``bonuses_total``.
  * ``process_completion`` – applied once per QuizResult transition to
    ``completed``. Replays are no-ops: the result carries a processed marker
    (``gamification_processed_at``), so the event, not the call count, is
    what gets counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from grade_engine.config import settings
from grade_engine.core.clock import to_engine_tz
from grade_engine.core.errors import DataIntegrityError, NotFound
from grade_engine.db.models import QuizResult, QuizResultStatusEnum, User

logger = logging.getLogger(__name__)


@dataclass
class GamificationUpdate:
    learner_id: int
    points_added: float
    experience_gained: float
    current_level: int
    experience_points: float
    current_streak: int
    best_streak: int
    level_ups: list[int] = field(default_factory=list)


# ── Bonus modifier ────────────────────────────────────────────────────────────


def streak_bonus(
    correctness: Iterable[bool],
    min_streak: int | None = None,
    points_per_answer: float | None = None,
) -> float:
    """In-quiz streak bonus over attempts given in answer order.

    From the ``min_streak``-th consecutive correct answer onwards every
    further correct answer earns ``points_per_answer``.
    """
    min_streak = settings.STREAK_BONUS_MIN if min_streak is None else min_streak
    per_answer = settings.STREAK_BONUS_POINTS if points_per_answer is None else points_per_answer
    run = 0
    bonus = 0.0
    for correct in correctness:
        run = run + 1 if correct else 0
        if run >= min_streak:
            bonus += per_answer
    return bonus


# ── Levels ────────────────────────────────────────────────────────────────────


def level_threshold(level: int, base: float | None = None) -> float:
    """Experience needed to leave ``level``: ``base * level ** 1.5``."""
    base = settings.LEVEL_BASE_XP if base is None else base
    return base * level**1.5


def apply_experience(level: int, experience: float, gained: float) -> tuple[int, float, list[int]]:
    """Add experience and level up, carrying the remainder over."""
    experience += gained
    reached: list[int] = []
    while experience >= level_threshold(level):
        experience -= level_threshold(level)
        level += 1
        reached.append(level)
    return level, round(experience, 4), reached


def _running_average(current: float, count: int, new_values: Sequence[float]) -> float:
    if not new_values:
        return current
    total = current * count + sum(new_values)
    return round(total / (count + len(new_values)), 4)


# ── Completion event ──────────────────────────────────────────────────────────


def process_completion(
    db: Session,
    result: QuizResult,
    response_times: Sequence[float] = (),
) -> GamificationUpdate | None:
    """Fold one completed quiz result into the learner's stats.

    Does not commit: the caller commits together with the QuizResult write
    so the processed marker and the stat changes land atomically.
    """
    if result.status != QuizResultStatusEnum.COMPLETED:
        return None
    if result.gamification_processed_at is not None:
        logger.debug(
            "Completion of quiz_result %s already processed at %s",
            result.id, result.gamification_processed_at,
        )
        return None

    user = db.get(User, result.learner_id)
    if user is None:
        err = DataIntegrityError("user", result.learner_id, "learner missing for completed quiz result")
        logger.warning("Skipping gamification: %s", err)
        return None

    stats = dict(user.gamification_stats or {})
    succeeded = result.score >= settings.SUCCESS_THRESHOLD
    current_streak = stats.get("current_streak", 0) + 1 if succeeded else 0
    best_streak = max(stats.get("best_streak", 0), current_streak)

    answered_before = stats.get("total_questions_answered", 0)
    stats.update(
        current_streak=current_streak,
        best_streak=best_streak,
        total_quizzes_completed=stats.get("total_quizzes_completed", 0) + 1,
        total_questions_answered=answered_before + len(response_times),
        average_response_time=_running_average(
            stats.get("average_response_time", 0.0), answered_before, response_times
        ),
    )
    if result.max_points > 0 and result.score >= 1.0:
        stats["perfect_scores"] = stats.get("perfect_scores", 0) + 1

    points_added = round(result.raw_total_points + result.bonuses_total, 4)
    gained = round(result.raw_total_points * settings.XP_PER_POINT, 4)
    level, experience, reached = apply_experience(
        user.current_level or 1, user.experience_points or 0.0, gained
    )
    if reached:
        stats["level_ups"] = [
            *stats.get("level_ups", []),
            *(
                {"level": lvl, "at": to_engine_tz(result.synced_at).isoformat()}
                for lvl in reached
            ),
        ]
        logger.info("Learner %s reached level %s", user.id, level)

    user.total_points = round((user.total_points or 0.0) + points_added, 4)
    user.current_level = level
    user.experience_points = experience
    user.gamification_stats = stats  # reassign so the JSON change is tracked
    result.gamification_processed_at = result.synced_at

    return GamificationUpdate(
        learner_id=user.id,
        points_added=points_added,
        experience_gained=gained,
        current_level=level,
        experience_points=experience,
        current_streak=current_streak,
        best_streak=best_streak,
        level_ups=reached,
    )


def learner_summary(db: Session, learner_id: int) -> dict:
    user = db.get(User, learner_id)
    if user is None:
        raise NotFound("user", learner_id, "learner not found")
    level = user.current_level or 1
    return {
        "learner_id": user.id,
        "total_points": user.total_points or 0.0,
        "current_level": level,
        "experience_points": user.experience_points or 0.0,
        "next_level_at": round(level_threshold(level), 4),
        "stats": dict(user.gamification_stats or {}),
    }
