"""Pydantic schemas: re-exported for convenience."""

from grade_engine.schemas.common import ErrorResponse  # noqa: F401
from grade_engine.schemas.scoring import (  # noqa: F401
    AttemptRecorded,
    AttemptSubmit,
    PenaltyPolicy,
)
from grade_engine.schemas.results import (  # noqa: F401
    CourseBatchReportRead,
    CourseGradeRead,
    CourseGradeRecomputeRead,
    GamificationRead,
    GradeHistoryRead,
    QuizRecomputeRead,
    QuizResultRead,
)
from grade_engine.schemas.analytics import (  # noqa: F401
    InterventionEvaluationRead,
    InterventionExecuted,
    InterventionRead,
    InterventionResultRead,
    LORollupRead,
    RollupRead,
)
