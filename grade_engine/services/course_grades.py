"""Course Grade Aggregator.

Combines a learner's completed quiz scores into per-column values and one
weighted course grade:

    grade = Σ(column_value × weight) / Σ(weight over columns with ≥1 scored quiz)

Columns without a scored quiz are left out of numerator *and* denominator;
missing data is never read as zero. With nothing scored at all the grade is
``Incomplete``. A ``ConfigurationError`` leaves the grade ``Incomplete`` with
the message stored on the row for operators.

Every stored value change first appends a CourseGradeResultHistory row
holding the prior state; snapshot and update commit together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from grade_engine.config import settings
from grade_engine.core.clock import now
from grade_engine.core.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    DataIntegrityError,
    NotFound,
)
from grade_engine.db.models import (
    ColumnAggregationEnum,
    Course,
    CourseGradeResult,
    CourseGradeResultHistory,
    Enrollment,
    GradeColumn,
    Quiz,
    QuizResult,
    QuizResultStatusEnum,
    GradeStatusEnum,
)
from grade_engine.services.grade_columns import (
    check_required_columns,
    effective_weights,
    load_course_columns,
)
from grade_engine.services.jobs import JobContext, with_retry
from grade_engine.services.locks import get_lock_manager

logger = logging.getLogger(__name__)

_VALUE_PRECISION = 6


@dataclass(frozen=True)
class ScoredQuiz:
    quiz_id: int
    score: float  # normalised, [0, 1]
    earned: float  # clamp(raw + bonus, 0, max)
    max_points: float
    weight: float | None = None  # per-quiz weight inside its column


# ── Column aggregation modes ──────────────────────────────────────────────────
# Each mode maps (scored quizzes, column) → value in [0, 1] or None.


def _average(scored: list[ScoredQuiz], column: GradeColumn) -> float | None:
    if not scored:
        return None
    weighted = [s for s in scored if s.weight]
    if weighted:
        total_weight = sum(s.weight for s in weighted)
        return sum(s.score * s.weight for s in weighted) / total_weight
    return sum(s.score for s in scored) / len(scored)


def _best_of_n(scored: list[ScoredQuiz], column: GradeColumn) -> float | None:
    if not scored:
        return None
    n = max(column.best_n or 1, 1)
    top = sorted((s.score for s in scored), reverse=True)[:n]
    return sum(top) / len(top)


def _sum(scored: list[ScoredQuiz], column: GradeColumn) -> float | None:
    achievable = sum(s.max_points for s in scored)
    if achievable <= 0:
        return None
    return sum(s.earned for s in scored) / achievable


COLUMN_AGGREGATORS: dict[ColumnAggregationEnum, Callable[[list[ScoredQuiz], GradeColumn], float | None]] = {
    ColumnAggregationEnum.AVERAGE: _average,
    ColumnAggregationEnum.BEST_OF_N: _best_of_n,
    ColumnAggregationEnum.SUM: _sum,
}


def aggregate_column(scored: list[ScoredQuiz], column: GradeColumn) -> float | None:
    mode = column.aggregation or ColumnAggregationEnum(settings.DEFAULT_COLUMN_AGGREGATION)
    value = COLUMN_AGGREGATORS[mode](scored, column)
    return None if value is None else round(value, _VALUE_PRECISION)


def combine_columns(values: dict[int, float | None], weights: dict[int, float]) -> float | None:
    """Weighted mean over scored columns only; ``None`` means Incomplete."""
    numerator = 0.0
    denominator = 0.0
    for column_id, value in values.items():
        if value is None:
            continue
        weight = weights.get(column_id, 0.0)
        numerator += value * weight
        denominator += weight
    if denominator <= 0:
        return None
    return round(numerator / denominator, _VALUE_PRECISION)


def letter_grade(grade: float | None) -> str | None:
    """Letter on the 10-point scale (grade × 10)."""
    if grade is None:
        return None
    score = grade * 10
    if score >= 9.0:
        return "A+"
    if score >= 8.5:
        return "A"
    if score >= 8.0:
        return "B+"
    if score >= 7.0:
        return "B"
    if score >= 6.5:
        return "C+"
    if score >= 5.5:
        return "C"
    if score >= 5.0:
        return "D+"
    if score >= 4.0:
        return "D"
    return "F"


# ── Computation ───────────────────────────────────────────────────────────────


@dataclass
class CourseGradeComputation:
    column_values: dict[str, dict]
    grade: float | None
    letter_grade: str | None
    status: GradeStatusEnum
    error: str | None = None
    unmapped_quiz_ids: list[int] = field(default_factory=list)


@dataclass
class CourseGradeRecompute:
    result: CourseGradeResult
    changed: bool
    history: CourseGradeResultHistory | None = None
    config_error: ConfigurationError | None = None


def _load_course(db: Session, course_id: int) -> Course:
    course = db.get(Course, course_id)
    if course is None or course.deleted_at is not None:
        raise NotFound("course", course_id, "course not found")
    return course


def compute_course_grade(db: Session, learner_id: int, course_id: int) -> CourseGradeComputation:
    course = _load_course(db, course_id)
    cmap = load_course_columns(db, course_id)
    try:
        weights = effective_weights(course, cmap)
        check_required_columns(cmap)
    except ConfigurationError as e:
        logger.error("Course grade for learner %s left incomplete: %s", learner_id, e)
        return CourseGradeComputation(
            column_values={},
            grade=None,
            letter_grade=None,
            status=GradeStatusEnum.INCOMPLETE,
            error=str(e),
            unmapped_quiz_ids=cmap.unmapped_quiz_ids,
        )

    quiz_ids = list(cmap.quiz_column)
    results = (
        db.query(QuizResult)
        .filter(
            QuizResult.learner_id == learner_id,
            QuizResult.quiz_id.in_(quiz_ids),
            QuizResult.status == QuizResultStatusEnum.COMPLETED,
        )
        .all()
    ) if quiz_ids else []

    by_column: dict[int, list[ScoredQuiz]] = {c.id: [] for c in cmap.columns}
    for r in results:
        if r.max_points <= 0:
            logger.warning(
                "Skipping %s",
                DataIntegrityError("quiz_result", r.id, "completed result without achievable points"),
            )
            continue
        earned = min(max(r.raw_total_points + r.bonuses_total, 0.0), r.max_points)
        by_column[cmap.quiz_column[r.quiz_id]].append(
            ScoredQuiz(
                quiz_id=r.quiz_id,
                score=r.score,
                earned=earned,
                max_points=r.max_points,
                weight=cmap.quiz_weight.get(r.quiz_id),
            )
        )

    values: dict[int, float | None] = {}
    column_values: dict[str, dict] = {}
    for column in cmap.columns:
        scored = sorted(by_column[column.id], key=lambda s: s.quiz_id)
        values[column.id] = aggregate_column(scored, column)
        column_values[str(column.id)] = {
            "name": column.name,
            "kind": column.kind.value,
            "weight": round(weights[column.id], _VALUE_PRECISION),
            "value": values[column.id],
            "scored_quizzes": [s.quiz_id for s in scored],
        }

    grade = combine_columns(values, weights)
    return CourseGradeComputation(
        column_values=column_values,
        grade=grade,
        letter_grade=letter_grade(grade),
        status=GradeStatusEnum.COMPLETE if grade is not None else GradeStatusEnum.INCOMPLETE,
        unmapped_quiz_ids=cmap.unmapped_quiz_ids,
    )


# ── Change detection ──────────────────────────────────────────────────────────


def _differs(a: float | None, b: float | None, eps: float) -> bool:
    if a is None or b is None:
        return a is not b
    return abs(a - b) > eps


def value_changed(result: CourseGradeResult, comp: CourseGradeComputation) -> bool:
    eps = settings.GRADE_CHANGE_EPSILON
    if result.status != comp.status or _differs(result.grade, comp.grade, eps):
        return True
    old = result.column_values or {}
    if set(old) != set(comp.column_values):
        return True
    return any(
        _differs(old[key].get("value"), comp.column_values[key]["value"], eps)
        or old[key].get("weight") != comp.column_values[key]["weight"]
        for key in old
    )


def _snapshot(db: Session, result: CourseGradeResult) -> CourseGradeResultHistory:
    last = (
        db.query(func.max(CourseGradeResultHistory.sequence))
        .filter(CourseGradeResultHistory.result_id == result.id)
        .scalar()
    )
    row = CourseGradeResultHistory(
        result_id=result.id,
        sequence=(last or 0) + 1,
        changed_at=now(),
        grade=result.grade,
        letter_grade=result.letter_grade,
        status=result.status,
        column_values=dict(result.column_values or {}),
        computed_at=result.computed_at,
    )
    db.add(row)
    return row


def _apply(result: CourseGradeResult, comp: CourseGradeComputation, at: datetime) -> None:
    result.column_values = comp.column_values
    result.grade = comp.grade
    result.letter_grade = comp.letter_grade
    result.status = comp.status
    result.error = comp.error
    result.unmapped_quiz_ids = comp.unmapped_quiz_ids
    result.computed_at = at


# ── Recompute + persist ───────────────────────────────────────────────────────


def recompute_course_grade(db: Session, learner_id: int, course_id: int) -> CourseGradeRecompute:
    """Recompute and store one learner's course grade (serialised per key)."""
    with get_lock_manager().hold("course_grade", learner_id, course_id):
        comp = compute_course_grade(db, learner_id, course_id)
        result = (
            db.query(CourseGradeResult)
            .filter(
                CourseGradeResult.learner_id == learner_id,
                CourseGradeResult.course_id == course_id,
            )
            .first()
        )
        history = None
        changed = True
        try:
            if result is None:
                result = CourseGradeResult(learner_id=learner_id, course_id=course_id)
                db.add(result)
            else:
                changed = value_changed(result, comp)
                if changed:
                    history = _snapshot(db, result)
            _apply(result, comp, now())
            db.commit()
        except (StaleDataError, IntegrityError) as e:
            db.rollback()
            raise ConcurrencyConflict(
                "course_grade", (learner_id, course_id), "course grade changed underneath us"
            ) from e
        except Exception:
            db.rollback()
            raise
        db.refresh(result)

    config_error = None
    if comp.error is not None:
        config_error = ConfigurationError("course", course_id, comp.error)
    logger.info(
        "course_grade %s: learner=%s course=%s grade=%s status=%s changed=%s",
        result.id, learner_id, course_id, result.grade, result.status.value, changed,
    )
    return CourseGradeRecompute(
        result=result, changed=changed, history=history, config_error=config_error
    )


def course_learner_ids(db: Session, course_id: int) -> list[int]:
    """Enrolled learners, plus anyone holding a quiz result in the course."""
    enrolled = {
        lid for (lid,) in db.query(Enrollment.learner_id).filter(Enrollment.course_id == course_id)
    }
    with_results = {
        lid
        for (lid,) in db.query(QuizResult.learner_id)
        .join(Quiz, Quiz.id == QuizResult.quiz_id)
        .filter(Quiz.course_id == course_id)
        .distinct()
    }
    return sorted(enrolled | with_results)


@dataclass
class CourseBatchReport:
    course_id: int
    recomputed: list[int] = field(default_factory=list)
    changed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


def recompute_course_grades(
    db: Session, course_id: int, ctx: JobContext | None = None
) -> CourseBatchReport:
    """Recompute every learner's grade in a course.

    Per-learner integrity and conflict failures are reported, not fatal;
    cancellation and timeouts propagate from ``ctx.checkpoint()``.
    """
    _load_course(db, course_id)
    ctx = ctx or JobContext(db, course_id)
    report = CourseBatchReport(course_id=course_id)
    for learner_id in course_learner_ids(db, course_id):
        ctx.checkpoint()
        try:
            outcome = with_retry(lambda: recompute_course_grade(db, learner_id, course_id))
        except (DataIntegrityError, ConcurrencyConflict) as e:
            logger.warning("Course %s learner %s not recomputed: %s", course_id, learner_id, e)
            report.failed[learner_id] = str(e)
            continue
        report.recomputed.append(learner_id)
        if outcome.changed:
            report.changed.append(learner_id)
    return report


def grade_history(db: Session, learner_id: int, course_id: int) -> list[CourseGradeResultHistory]:
    result = (
        db.query(CourseGradeResult)
        .filter(
            CourseGradeResult.learner_id == learner_id,
            CourseGradeResult.course_id == course_id,
        )
        .first()
    )
    if result is None:
        raise NotFound("course_grade", (learner_id, course_id), "no course grade stored")
    return (
        db.query(CourseGradeResultHistory)
        .filter(CourseGradeResultHistory.result_id == result.id)
        .order_by(CourseGradeResultHistory.sequence)
        .all()
    )
