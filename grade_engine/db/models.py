"""SQLAlchemy ORM models read and written by the grade engine.

Tables
------
Read-only inputs (owned by authoring / enrollment):
- users                   – learners, plus engine-owned gamification fields
- courses                 – course + GradeConfig weights
- enrollments             – learner ↔ course
- learning_objectives     – LO tags for mastery tracking
- questions / quizzes     – authoring data, quiz_questions join with history
- question_attempts       – immutable per-answer rows
- grade_columns           – weighted buckets per course
- column_quiz_mappings    – quiz → column (at most one column per quiz)
- course_analytics_configs – thresholds + feature flags

Engine-owned outputs:
- quiz_results, course_grade_results (+ _histories)
- course_analytics_rollups, course_lo_rollups
- course_interventions, intervention_results
"""

import enum
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from grade_engine.config import settings
from grade_engine.core.clock import now
from grade_engine.db.session import Base


# ── Enums (stored as VARCHAR via SQLAlchemy Enum) ─────────────────────────────


class QuizResultStatusEnum(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ColumnKindEnum(str, enum.Enum):
    PROCESS = "process"
    FINAL = "final"


class ColumnAggregationEnum(str, enum.Enum):
    AVERAGE = "average"
    BEST_OF_N = "best_of_n"
    SUM = "sum"


class GradeStatusEnum(str, enum.Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class InterventionStatusEnum(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    EXECUTED = "executed"
    EVALUATED = "evaluated"
    CANCELLED = "cancelled"


# ── Learners ──────────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), default="")

    # gamification (written only by the Gamification Tracker)
    total_points: Mapped[float] = mapped_column(Float, default=0.0)
    current_level: Mapped[int] = mapped_column(Integer, default=1)
    experience_points: Mapped[float] = mapped_column(Float, default=0.0)
    gamification_stats: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)


# ── Courses ───────────────────────────────────────────────────────────────────


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    # {"process_weight": 50, "final_exam_weight": 50}
    grade_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    quizzes: Mapped[list["Quiz"]] = relationship(back_populates="course")
    grade_columns: Mapped[list["GradeColumn"]] = relationship(
        back_populates="course", order_by="GradeColumn.column_order"
    )


class Enrollment(Base):
    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"))
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    __table_args__ = (
        UniqueConstraint("learner_id", "course_id", name="uq_enrollment_learner_course"),
    )


class LearningObjective(Base):
    __tablename__ = "learning_objectives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    course_id: Mapped[int | None] = mapped_column(ForeignKey("courses.id"), nullable=True)


# ── Questions & quizzes ───────────────────────────────────────────────────────


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    text: Mapped[str] = mapped_column(Text, default="")
    max_points: Mapped[float] = mapped_column(
        Float, default=lambda: settings.DEFAULT_QUESTION_POINTS
    )
    difficulty: Mapped[str | None] = mapped_column(String(20), nullable=True)
    lo_id: Mapped[int | None] = mapped_column(
        ForeignKey("learning_objectives.id"), nullable=True
    )


class Quiz(Base):
    __tablename__ = "quizzes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    # late_penalty_per_second / allowed_time_seconds /
    # max_attempts_before_zero / attempt_decay_factor
    penalty_policy: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    course: Mapped["Course"] = relationship(back_populates="quizzes")
    quiz_questions: Mapped[list["QuizQuestion"]] = relationship(
        back_populates="quiz", cascade="all, delete-orphan"
    )


class QuizQuestion(Base):
    """Quiz ↔ question assignment. Removal is soft so history stays scorable."""

    __tablename__ = "quiz_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quiz_id: Mapped[int] = mapped_column(ForeignKey("quizzes.id"))
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"))
    position: Mapped[int] = mapped_column(Integer, default=0)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)
    removed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    quiz: Mapped["Quiz"] = relationship(back_populates="quiz_questions")

    __table_args__ = (
        UniqueConstraint("quiz_id", "question_id", name="uq_quiz_question"),
    )


class QuestionAttempt(Base):
    """One answer submission. Immutable once written."""

    __tablename__ = "question_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    quiz_id: Mapped[int] = mapped_column(ForeignKey("quizzes.id"), index=True)
    question_id: Mapped[int] = mapped_column(Integer, index=True)
    selected_answer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    time_spent: Mapped[float] = mapped_column(Float, default=0.0)  # seconds
    attempt_index: Mapped[int] = mapped_column(Integer, default=1)
    points_earned: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    __table_args__ = (
        UniqueConstraint(
            "learner_id", "quiz_id", "question_id", "attempt_index",
            name="uq_attempt_learner_quiz_question_index",
        ),
    )


# ── Quiz results ──────────────────────────────────────────────────────────────


class QuizResult(Base):
    __tablename__ = "quiz_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    quiz_id: Mapped[int] = mapped_column(ForeignKey("quizzes.id"), index=True)
    status: Mapped[QuizResultStatusEnum] = mapped_column(
        Enum(QuizResultStatusEnum, name="quiz_result_status_enum"),
        default=QuizResultStatusEnum.IN_PROGRESS,
    )
    raw_total_points: Mapped[float] = mapped_column(Float, default=0.0)
    max_points: Mapped[float] = mapped_column(Float, default=0.0)
    bonuses_total: Mapped[float] = mapped_column(Float, default=0.0)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    completion_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # digest of the attempt ids the current values were computed from
    source_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gamification_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("learner_id", "quiz_id", name="uq_quiz_result_learner_quiz"),
    )


# ── Grade columns ─────────────────────────────────────────────────────────────


class GradeColumn(Base):
    __tablename__ = "grade_columns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    kind: Mapped[ColumnKindEnum] = mapped_column(
        Enum(ColumnKindEnum, name="column_kind_enum"), default=ColumnKindEnum.PROCESS
    )
    weight_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    aggregation: Mapped[ColumnAggregationEnum | None] = mapped_column(
        Enum(ColumnAggregationEnum, name="column_aggregation_enum"), nullable=True
    )
    best_n: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_order: Mapped[int] = mapped_column(Integer, default=1)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    course: Mapped["Course"] = relationship(back_populates="grade_columns")
    mappings: Mapped[list["ColumnQuizMapping"]] = relationship(
        back_populates="column", cascade="all, delete-orphan"
    )


class ColumnQuizMapping(Base):
    __tablename__ = "column_quiz_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    column_id: Mapped[int] = mapped_column(ForeignKey("grade_columns.id"))
    quiz_id: Mapped[int] = mapped_column(ForeignKey("quizzes.id"), index=True)
    weight_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)

    column: Mapped["GradeColumn"] = relationship(back_populates="mappings")

    __table_args__ = (
        UniqueConstraint("column_id", "quiz_id", name="uq_column_quiz"),
    )


# ── Course grades ─────────────────────────────────────────────────────────────


class CourseGradeResult(Base):
    __tablename__ = "course_grade_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), index=True)
    # {column_id: {"name", "weight", "value", "scored_quizzes"}}
    column_values: Mapped[dict] = mapped_column(JSON, default=dict)
    grade: Mapped[float | None] = mapped_column(Float, nullable=True)
    letter_grade: Mapped[str | None] = mapped_column(String(4), nullable=True)
    status: Mapped[GradeStatusEnum] = mapped_column(
        Enum(GradeStatusEnum, name="grade_status_enum"),
        default=GradeStatusEnum.INCOMPLETE,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    unmapped_quiz_ids: Mapped[list] = mapped_column(JSON, default=list)
    computed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    history: Mapped[list["CourseGradeResultHistory"]] = relationship(
        back_populates="result",
        order_by="CourseGradeResultHistory.sequence",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("learner_id", "course_id", name="uq_course_grade_learner_course"),
    )


class CourseGradeResultHistory(Base):
    """Write-once snapshot of the prior state of a CourseGradeResult."""

    __tablename__ = "course_grade_result_histories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    result_id: Mapped[int] = mapped_column(ForeignKey("course_grade_results.id"))
    sequence: Mapped[int] = mapped_column(Integer)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)
    grade: Mapped[float | None] = mapped_column(Float, nullable=True)
    letter_grade: Mapped[str | None] = mapped_column(String(4), nullable=True)
    status: Mapped[GradeStatusEnum] = mapped_column(
        Enum(GradeStatusEnum, name="grade_status_enum", create_constraint=False)
    )
    column_values: Mapped[dict] = mapped_column(JSON, default=dict)
    computed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    result: Mapped["CourseGradeResult"] = relationship(back_populates="history")

    __table_args__ = (
        UniqueConstraint("result_id", "sequence", name="uq_grade_history_result_seq"),
    )


# ── Analytics ─────────────────────────────────────────────────────────────────


class CourseAnalyticsConfig(Base):
    __tablename__ = "course_analytics_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), unique=True)
    # {low_mastery, low_completion, low_mean_score, alert_drop,
    #  min_sample_size, observation_window_days, target_percentile}
    thresholds: Mapped[dict] = mapped_column(JSON, default=dict)
    # {intervention_type: bool}
    feature_flags: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=now, onupdate=now
    )


class CourseAnalyticsRollup(Base):
    __tablename__ = "course_analytics_rollups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), index=True)
    snapshot_date: Mapped[date] = mapped_column(Date)
    metrics: Mapped[dict] = mapped_column(JSON, default=dict)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    sample_size: Mapped[int] = mapped_column(Integer, default=0)
    low_confidence: Mapped[bool] = mapped_column(Boolean, default=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    __table_args__ = (
        UniqueConstraint("course_id", "snapshot_date", name="uq_course_date_rollup"),
    )


class CourseLORollup(Base):
    __tablename__ = "course_lo_rollups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), index=True)
    lo_id: Mapped[int] = mapped_column(ForeignKey("learning_objectives.id"), index=True)
    snapshot_date: Mapped[date] = mapped_column(Date)
    stats: Mapped[dict] = mapped_column(JSON, default=dict)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    sample_size: Mapped[int] = mapped_column(Integer, default=0)
    low_confidence: Mapped[bool] = mapped_column(Boolean, default=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    __table_args__ = (
        UniqueConstraint(
            "course_id", "lo_id", "snapshot_date", name="uq_course_lo_date_rollup"
        ),
    )


# ── Interventions ─────────────────────────────────────────────────────────────


class CourseIntervention(Base):
    __tablename__ = "course_interventions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), index=True)
    lo_id: Mapped[int | None] = mapped_column(
        ForeignKey("learning_objectives.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(50))
    target_group: Mapped[str] = mapped_column(String(50))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[InterventionStatusEnum] = mapped_column(
        Enum(InterventionStatusEnum, name="intervention_status_enum"),
        default=InterventionStatusEnum.PENDING,
        index=True,
    )
    trigger_rollup_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trigger_snapshot_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    # copied at trigger time; the rollup itself is overwritten in place
    metrics_before: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    executed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    evaluated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    results: Mapped[list["InterventionResult"]] = relationship(
        back_populates="intervention", cascade="all, delete-orphan"
    )


class InterventionResult(Base):
    __tablename__ = "intervention_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    intervention_id: Mapped[int] = mapped_column(
        ForeignKey("course_interventions.id"), index=True
    )
    metrics_before: Mapped[dict] = mapped_column(JSON, default=dict)
    metrics_after: Mapped[dict] = mapped_column(JSON, default=dict)
    improvement: Mapped[dict] = mapped_column(JSON, default=dict)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    intervention: Mapped["CourseIntervention"] = relationship(back_populates="results")
