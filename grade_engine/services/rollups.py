"""Rollup Engine: confidence-scored course and LO snapshots per date.

A rollup for ``(course[, lo], snapshot_date)`` is built from every learner's
data as of the end of that day (engine offset) and overwrites any rollup
already stored for the same key. Nothing is written until all learners are
aggregated, so a cancelled or timed-out run leaves no partial rows.

Confidence is ``1 - 1/sqrt(n + 1)`` where n is the number of learners in
the sample; rollups under the course's minimum sample size are stored but
flagged ``low_confidence``.
"""

from __future__ import annotations

import logging
import math
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from grade_engine.config import settings
from grade_engine.core.clock import end_of_day, now, to_engine_tz, today
from grade_engine.core.errors import ConcurrencyConflict, ConfigurationError, NotFound
from grade_engine.db.models import (
    Course,
    CourseAnalyticsConfig,
    CourseAnalyticsRollup,
    CourseGradeResult,
    CourseLORollup,
    Question,
    QuestionAttempt,
    Quiz,
    QuizResult,
    QuizResultStatusEnum,
)
from grade_engine.services.course_grades import course_learner_ids
from grade_engine.services.jobs import JobContext
from grade_engine.services.locks import get_lock_manager

logger = logging.getLogger(__name__)

_BUCKETS = 10


def confidence(sample_size: int) -> float:
    """Monotonically increasing in ``sample_size``, 0 at n=0, capped at 1."""
    if sample_size <= 0:
        return 0.0
    return round(min(1.0, 1 - 1 / math.sqrt(sample_size + 1)), 4)


def min_sample_size(db: Session, course_id: int) -> int:
    config = (
        db.query(CourseAnalyticsConfig)
        .filter(CourseAnalyticsConfig.course_id == course_id)
        .first()
    )
    if config and config.thresholds and "min_sample_size" in config.thresholds:
        try:
            return int(config.thresholds["min_sample_size"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                "course_analytics_config", course_id, f"unreadable min_sample_size: {e}"
            ) from e
    return settings.ROLLUP_MIN_SAMPLE_SIZE


def score_distribution(scores: list[float]) -> dict[str, int]:
    """Counts per 0.1-wide bucket; a perfect 1.0 lands in the top bucket."""
    buckets = {f"{i / _BUCKETS:.1f}-{(i + 1) / _BUCKETS:.1f}": 0 for i in range(_BUCKETS)}
    labels = list(buckets)
    for s in scores:
        idx = min(int(s * _BUCKETS), _BUCKETS - 1)
        buckets[labels[max(idx, 0)]] += 1
    return buckets


def _mean(values: list[float]) -> float | None:
    return round(statistics.fmean(values), 6) if values else None


def _median(values: list[float]) -> float | None:
    return round(statistics.median(values), 6) if values else None


@dataclass
class _LearnerAccumulator:
    scores: list[float] = field(default_factory=list)
    grade: float | None = None
    lo_earned: dict[int, float] = field(default_factory=lambda: defaultdict(float))
    lo_max: dict[int, float] = field(default_factory=lambda: defaultdict(float))
    active: bool = False


@dataclass
class RollupOutcome:
    rollup: CourseAnalyticsRollup
    lo_rollups: list[CourseLORollup]


# ── Data loading ──────────────────────────────────────────────────────────────


def _before(value: datetime | None, cutoff: datetime) -> bool:
    return value is not None and to_engine_tz(value) < cutoff


def _latest_attempts(attempts: list[QuestionAttempt]) -> list[QuestionAttempt]:
    latest: dict[tuple[int, int, int], QuestionAttempt] = {}
    for a in attempts:
        key = (a.learner_id, a.quiz_id, a.question_id)
        current = latest.get(key)
        if current is None or a.attempt_index > current.attempt_index:
            latest[key] = a
    return list(latest.values())


# ── Build ─────────────────────────────────────────────────────────────────────


def build_rollup(
    db: Session, course_id: int, snapshot_date: date, ctx: JobContext
) -> tuple[dict, int, dict[int, tuple[dict, int]]]:
    """Aggregate metrics; returns (course metrics, n, {lo_id: (stats, n)})."""
    cutoff = end_of_day(snapshot_date)
    learners = course_learner_ids(db, course_id)
    quiz_ids = [q for (q,) in db.query(Quiz.id).filter(Quiz.course_id == course_id)]

    results = [
        r
        for r in (
            db.query(QuizResult).filter(QuizResult.quiz_id.in_(quiz_ids)).all() if quiz_ids else []
        )
        if r.status == QuizResultStatusEnum.COMPLETED and _before(r.completion_time, cutoff)
    ]
    grades = [
        g
        for g in db.query(CourseGradeResult).filter(CourseGradeResult.course_id == course_id).all()
        if g.grade is not None and _before(g.computed_at, cutoff)
    ]
    attempts = _latest_attempts(
        [
            a
            for a in (
                db.query(QuestionAttempt).filter(QuestionAttempt.quiz_id.in_(quiz_ids)).all()
                if quiz_ids else []
            )
            if _before(a.created_at, cutoff)
        ]
    )
    question_ids = {a.question_id for a in attempts}
    questions = {
        q.id: q for q in db.query(Question).filter(Question.id.in_(question_ids)).all()
    } if question_ids else {}

    results_by_learner: dict[int, list[QuizResult]] = defaultdict(list)
    for r in results:
        results_by_learner[r.learner_id].append(r)
    grade_by_learner = {g.learner_id: g.grade for g in grades}
    attempts_by_learner: dict[int, list[QuestionAttempt]] = defaultdict(list)
    for a in attempts:
        attempts_by_learner[a.learner_id].append(a)

    difficulty: dict[str, list[int]] = defaultdict(lambda: [0, 0])  # attempts, correct
    acc: dict[int, _LearnerAccumulator] = {}
    for learner_id in sorted(set(learners) | set(results_by_learner) | set(attempts_by_learner)):
        ctx.checkpoint()
        la = _LearnerAccumulator()
        la.scores = sorted(r.score for r in results_by_learner.get(learner_id, []))
        la.grade = grade_by_learner.get(learner_id)
        for a in attempts_by_learner.get(learner_id, []):
            la.active = True
            question = questions.get(a.question_id)
            if question is None:
                continue
            bucket = difficulty[question.difficulty or "unrated"]
            bucket[0] += 1
            bucket[1] += int(a.is_correct)
            if question.lo_id is not None:
                la.lo_earned[question.lo_id] += a.points_earned
                la.lo_max[question.lo_id] += question.max_points
        acc[learner_id] = la

    all_scores = [s for la in acc.values() for s in la.scores]
    completers = [lid for lid, la in acc.items() if la.scores]
    course_grades = [la.grade for la in acc.values() if la.grade is not None]
    expected = len(learners) * len(quiz_ids)

    lo_learner_mastery: dict[int, dict[str, float]] = defaultdict(dict)
    lo_totals: dict[int, list[float]] = defaultdict(lambda: [0.0, 0.0, 0, 0])
    for lid, la in acc.items():
        for lo_id, maximum in la.lo_max.items():
            if maximum <= 0:
                continue
            lo_learner_mastery[lo_id][str(lid)] = round(la.lo_earned[lo_id] / maximum, 6)
            lo_totals[lo_id][0] += la.lo_earned[lo_id]
            lo_totals[lo_id][1] += maximum
    for a in attempts:
        question = questions.get(a.question_id)
        if question is not None and question.lo_id is not None:
            lo_totals[question.lo_id][2] += 1
            lo_totals[question.lo_id][3] += int(a.is_correct)

    lo_rollups: dict[int, tuple[dict, int]] = {}
    lo_mastery: dict[str, float] = {}
    for lo_id, per_learner in sorted(lo_learner_mastery.items()):
        earned, maximum, n_attempts, n_correct = lo_totals[lo_id]
        mastered = sum(1 for v in per_learner.values() if v >= settings.MASTERY_THRESHOLD)
        mastery_rate = round(mastered / len(per_learner), 6)
        lo_mastery[str(lo_id)] = mastery_rate
        lo_rollups[lo_id] = (
            {
                "attempts": n_attempts,
                "correct": n_correct,
                "accuracy": round(earned / maximum, 6) if maximum else 0.0,
                "learners": len(per_learner),
                "mastery_rate": mastery_rate,
                "learner_mastery": per_learner,
            },
            len(per_learner),
        )

    metrics = {
        "enrolled_learners": len(learners),
        "active_learners": sum(1 for la in acc.values() if la.active),
        "learners_with_completions": len(completers),
        "completed_results": len(all_scores),
        "completion_rate": round(len(all_scores) / expected, 6) if expected else 0.0,
        "mean_score": _mean(all_scores),
        "median_score": _median(all_scores),
        "pass_rate": (
            round(sum(1 for s in all_scores if s >= settings.PASS_THRESHOLD) / len(all_scores), 6)
            if all_scores else None
        ),
        "score_distribution": score_distribution(all_scores),
        "mean_course_grade": _mean(course_grades),
        "lo_mastery": lo_mastery,
        "difficulty_breakdown": {
            level: {"attempts": n, "correct_rate": round(c / n, 6) if n else 0.0}
            for level, (n, c) in sorted(difficulty.items())
        },
        "learner_scores": {
            str(lid): round(statistics.fmean(la.scores), 6) for lid, la in acc.items() if la.scores
        },
    }
    return metrics, len(completers), lo_rollups


# ── Persist ───────────────────────────────────────────────────────────────────


def run_rollup(
    db: Session,
    course_id: int,
    snapshot_date: date | None = None,
    ctx: JobContext | None = None,
) -> RollupOutcome:
    """Compute and overwrite the course + LO rollups for one date."""
    course = db.get(Course, course_id)
    if course is None or course.deleted_at is not None:
        raise NotFound("course", course_id, "course not found")
    snapshot_date = snapshot_date or today()
    ctx = ctx or JobContext(db, course_id)
    floor = min_sample_size(db, course_id)

    with get_lock_manager().hold("rollup", course_id, snapshot_date.isoformat()):
        try:
            metrics, n, lo_stats = build_rollup(db, course_id, snapshot_date, ctx)
            computed_at = now()

            rollup = (
                db.query(CourseAnalyticsRollup)
                .filter(
                    CourseAnalyticsRollup.course_id == course_id,
                    CourseAnalyticsRollup.snapshot_date == snapshot_date,
                )
                .first()
            )
            if rollup is None:
                rollup = CourseAnalyticsRollup(course_id=course_id, snapshot_date=snapshot_date)
                db.add(rollup)
            rollup.metrics = metrics
            rollup.sample_size = n
            rollup.confidence = confidence(n)
            rollup.low_confidence = n < floor
            rollup.computed_at = computed_at

            existing_lo = {
                r.lo_id: r
                for r in db.query(CourseLORollup).filter(
                    CourseLORollup.course_id == course_id,
                    CourseLORollup.snapshot_date == snapshot_date,
                )
            }
            lo_rows: list[CourseLORollup] = []
            for lo_id, (stats, lo_n) in lo_stats.items():
                row = existing_lo.get(lo_id)
                if row is None:
                    row = CourseLORollup(course_id=course_id, lo_id=lo_id, snapshot_date=snapshot_date)
                    db.add(row)
                row.stats = stats
                row.sample_size = lo_n
                row.confidence = confidence(lo_n)
                row.low_confidence = lo_n < floor
                row.computed_at = computed_at
                lo_rows.append(row)

            # LOs absent from this run must not survive the overwrite
            for lo_id, row in existing_lo.items():
                if lo_id not in lo_stats:
                    db.delete(row)

            ctx.checkpoint()
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConcurrencyConflict(
                "rollup", (course_id, snapshot_date.isoformat()), "rollup written concurrently"
            ) from e
        except Exception:
            db.rollback()
            logger.warning(
                "Rollup for course %s on %s discarded", course_id, snapshot_date.isoformat()
            )
            raise

    db.refresh(rollup)
    logger.info(
        "Rollup course=%s date=%s n=%d confidence=%.4f low_confidence=%s lo_rollups=%d",
        course_id, snapshot_date.isoformat(), n, rollup.confidence, rollup.low_confidence, len(lo_rows),
    )
    return RollupOutcome(rollup=rollup, lo_rollups=lo_rows)


def latest_rollup(
    db: Session, course_id: int, before: date | None = None
) -> CourseAnalyticsRollup | None:
    query = db.query(CourseAnalyticsRollup).filter(CourseAnalyticsRollup.course_id == course_id)
    if before is not None:
        query = query.filter(CourseAnalyticsRollup.snapshot_date < before)
    return query.order_by(CourseAnalyticsRollup.snapshot_date.desc()).first()


def lo_rollups_for(db: Session, course_id: int, snapshot_date: date) -> list[CourseLORollup]:
    return (
        db.query(CourseLORollup)
        .filter(
            CourseLORollup.course_id == course_id,
            CourseLORollup.snapshot_date == snapshot_date,
        )
        .order_by(CourseLORollup.lo_id)
        .all()
    )
