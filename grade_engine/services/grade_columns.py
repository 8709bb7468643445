"""Grade Column Mapper: which weighted column a quiz counts toward.

Also resolves each column's effective weight. GradeColumn weights are
authoritative when set; columns without one share their kind's GradeConfig
weight (``process_weight`` / ``final_exam_weight``) evenly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from grade_engine.config import settings
from grade_engine.core.errors import ConfigurationError, DataIntegrityError
from grade_engine.db.models import (
    ColumnKindEnum,
    ColumnQuizMapping,
    Course,
    GradeColumn,
    Quiz,
)

logger = logging.getLogger(__name__)

_WEIGHT_TOLERANCE = 1e-6


class _Unmapped:
    """Lookup result for a quiz with no ColumnQuizMapping in the course."""

    _instance: "_Unmapped | None" = None

    def __new__(cls) -> "_Unmapped":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "Unmapped"


Unmapped = _Unmapped()


@dataclass
class CourseColumnMap:
    course_id: int
    columns: list[GradeColumn]
    quiz_column: dict[int, int] = field(default_factory=dict)  # quiz_id → column_id
    quiz_weight: dict[int, float | None] = field(default_factory=dict)
    unmapped_quiz_ids: list[int] = field(default_factory=list)

    def quizzes_in(self, column_id: int) -> list[int]:
        return sorted(q for q, c in self.quiz_column.items() if c == column_id)


# ── Lookups ───────────────────────────────────────────────────────────────────


def column_for_quiz(db: Session, quiz_id: int, course_id: int) -> GradeColumn | _Unmapped:
    """Return the active column ``quiz_id`` belongs to in ``course_id``, or ``Unmapped``."""
    columns = (
        db.query(GradeColumn)
        .join(ColumnQuizMapping, ColumnQuizMapping.column_id == GradeColumn.id)
        .filter(
            ColumnQuizMapping.quiz_id == quiz_id,
            GradeColumn.course_id == course_id,
            GradeColumn.is_active.is_(True),
        )
        .all()
    )
    if not columns:
        return Unmapped
    if len(columns) > 1:
        raise DataIntegrityError(
            "quiz", quiz_id, f"mapped to {len(columns)} columns in course {course_id}"
        )
    return columns[0]


def load_course_columns(db: Session, course_id: int) -> CourseColumnMap:
    """All active columns of a course with their quiz mappings.

    Course quizzes without a mapping are collected in ``unmapped_quiz_ids``
    so course owners can be told; a quiz mapped twice is skipped with a
    ``DataIntegrityError`` logged.
    """
    columns = (
        db.query(GradeColumn)
        .filter(GradeColumn.course_id == course_id, GradeColumn.is_active.is_(True))
        .order_by(GradeColumn.column_order, GradeColumn.id)
        .all()
    )
    cmap = CourseColumnMap(course_id=course_id, columns=columns)
    column_ids = [c.id for c in columns]

    mappings = (
        db.query(ColumnQuizMapping)
        .filter(ColumnQuizMapping.column_id.in_(column_ids))
        .order_by(ColumnQuizMapping.id)
        .all()
    ) if column_ids else []

    duplicated: set[int] = set()
    for m in mappings:
        if m.quiz_id in cmap.quiz_column and cmap.quiz_column[m.quiz_id] != m.column_id:
            duplicated.add(m.quiz_id)
            continue
        cmap.quiz_column[m.quiz_id] = m.column_id
        cmap.quiz_weight[m.quiz_id] = m.weight_percentage
    for quiz_id in duplicated:
        logger.warning(
            "Skipping quiz: %s",
            DataIntegrityError("quiz", quiz_id, f"mapped to several columns in course {course_id}"),
        )
        cmap.quiz_column.pop(quiz_id, None)
        cmap.quiz_weight.pop(quiz_id, None)

    course_quiz_ids = [q for (q,) in db.query(Quiz.id).filter(Quiz.course_id == course_id).all()]
    cmap.unmapped_quiz_ids = sorted(
        q for q in course_quiz_ids if q not in cmap.quiz_column and q not in duplicated
    )
    if cmap.unmapped_quiz_ids:
        logger.info(
            "Course %s has quizzes outside every grade column: %s",
            course_id, cmap.unmapped_quiz_ids,
        )
    return cmap


# ── Weights ───────────────────────────────────────────────────────────────────


def grade_config_weights(course: Course) -> dict[ColumnKindEnum, float]:
    raw = course.grade_config or {}
    try:
        process = float(raw.get("process_weight", settings.DEFAULT_PROCESS_WEIGHT))
        final = float(raw.get("final_exam_weight", settings.DEFAULT_FINAL_EXAM_WEIGHT))
    except (TypeError, ValueError) as e:
        raise ConfigurationError("course", course.id, f"unreadable grade_config: {e}") from e
    if process < 0 or final < 0 or abs(process + final - 100) > _WEIGHT_TOLERANCE:
        raise ConfigurationError(
            "course", course.id,
            f"grade_config weights must sum to 100 (process={process}, final_exam={final})",
        )
    return {ColumnKindEnum.PROCESS: process, ColumnKindEnum.FINAL: final}


def effective_weights(course: Course, cmap: CourseColumnMap) -> dict[int, float]:
    """Column id → weight percentage; the weights must total 100."""
    if not cmap.columns:
        raise ConfigurationError("course", course.id, "no active grade columns configured")

    weights: dict[int, float] = {}
    fallback: dict[ColumnKindEnum, list[GradeColumn]] = {}
    for column in cmap.columns:
        if column.weight_percentage is not None:
            if column.weight_percentage < 0:
                raise ConfigurationError("grade_column", column.id, "negative weight_percentage")
            weights[column.id] = float(column.weight_percentage)
        else:
            fallback.setdefault(column.kind, []).append(column)

    if fallback:
        kind_weights = grade_config_weights(course)
        for kind, cols in fallback.items():
            share = kind_weights[kind] / len(cols)
            for column in cols:
                weights[column.id] = share

    total = sum(weights.values())
    if abs(total - 100) > _WEIGHT_TOLERANCE:
        raise ConfigurationError(
            "course", course.id, f"grade column weights sum to {total:g}, expected 100"
        )
    return weights


def check_required_columns(cmap: CourseColumnMap) -> None:
    for column in cmap.columns:
        if column.is_required and not cmap.quizzes_in(column.id):
            raise ConfigurationError(
                "grade_column", column.id, f"required column '{column.name}' has no quizzes mapped"
            )
