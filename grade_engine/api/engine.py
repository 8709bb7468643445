"""Engine routes: attempt intake and operator re-run surface.

Recompute endpoints run synchronously and return the stored row, so an
operator can re-run exactly one failed unit and see the result. Attempt
intake only enqueues the quiz recomputation.
"""

import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from grade_engine.db.session import get_db
from grade_engine.schemas import (
    AttemptRecorded,
    AttemptSubmit,
    CourseBatchReportRead,
    CourseGradeRead,
    CourseGradeRecomputeRead,
    GamificationRead,
    GradeHistoryRead,
    InterventionEvaluationRead,
    InterventionExecuted,
    InterventionRead,
    LORollupRead,
    QuizRecomputeRead,
    QuizResultRead,
    RollupRead,
)
from grade_engine.services.attempts import record_attempt
from grade_engine.services.course_grades import (
    grade_history,
    recompute_course_grade,
    recompute_course_grades,
)
from grade_engine.services.gamification import learner_summary
from grade_engine.services.interventions import (
    cancel_intervention,
    evaluate_interventions,
    list_interventions,
    mark_executed,
)
from grade_engine.services.jobs import with_retry
from grade_engine.services.quiz_results import recompute_quiz_result
from grade_engine.services.rollups import run_rollup
from grade_engine.tasks import recompute_course_grade_task, recompute_quiz_result_task

logger = logging.getLogger(__name__)
router = APIRouter()


# ── Attempts ──────────────────────────────────────────────────────────────────


@router.post("/attempts", response_model=AttemptRecorded, status_code=status.HTTP_201_CREATED)
def submit_attempt(body: AttemptSubmit, db: Session = Depends(get_db)):
    """Score and store one answer, then queue the learner's quiz recomputation."""
    recorded = record_attempt(db, body)
    recompute_quiz_result_task.delay(body.learner_id, body.quiz_id)
    return recorded


# ── Quiz results / course grades ──────────────────────────────────────────────


@router.post("/quiz-results/{learner_id}/{quiz_id}/recompute", response_model=QuizRecomputeRead)
def recompute_quiz(
    learner_id: int,
    quiz_id: int,
    force: bool = Query(False),
    db: Session = Depends(get_db),
):
    outcome = with_retry(lambda: recompute_quiz_result(db, learner_id, quiz_id, force=force))
    if not outcome.coalesced and outcome.course_id is not None:
        recompute_course_grade_task.delay(learner_id, outcome.course_id)
    return QuizRecomputeRead(
        result=QuizResultRead.model_validate(outcome.result),
        coalesced=outcome.coalesced,
        skipped=[str(e) for e in outcome.skipped],
    )


@router.post(
    "/course-grades/{learner_id}/{course_id}/recompute",
    response_model=CourseGradeRecomputeRead,
)
def recompute_grade(learner_id: int, course_id: int, db: Session = Depends(get_db)):
    outcome = with_retry(lambda: recompute_course_grade(db, learner_id, course_id))
    return CourseGradeRecomputeRead(
        result=CourseGradeRead.model_validate(outcome.result),
        changed=outcome.changed,
        history_sequence=outcome.history.sequence if outcome.history else None,
    )


@router.post("/courses/{course_id}/grades/recompute", response_model=CourseBatchReportRead)
def recompute_course(course_id: int, db: Session = Depends(get_db)):
    report = recompute_course_grades(db, course_id)
    return CourseBatchReportRead(
        course_id=report.course_id,
        recomputed=report.recomputed,
        changed=report.changed,
        failed=report.failed,
    )


@router.get(
    "/course-grades/{learner_id}/{course_id}/history",
    response_model=list[GradeHistoryRead],
)
def get_grade_history(learner_id: int, course_id: int, db: Session = Depends(get_db)):
    return grade_history(db, learner_id, course_id)


# ── Rollups / interventions ───────────────────────────────────────────────────


@router.post("/courses/{course_id}/rollups", response_model=RollupRead)
def run_course_rollup(
    course_id: int,
    snapshot_date: date | None = Query(None),
    db: Session = Depends(get_db),
):
    outcome = run_rollup(db, course_id, snapshot_date)
    read = RollupRead.model_validate(outcome.rollup)
    read.lo_rollups = [LORollupRead.model_validate(r) for r in outcome.lo_rollups]
    return read


@router.post(
    "/courses/{course_id}/interventions/evaluate",
    response_model=InterventionEvaluationRead,
)
def evaluate_course_interventions(course_id: int, db: Session = Depends(get_db)):
    outcome = evaluate_interventions(db, course_id)
    return InterventionEvaluationRead(
        course_id=course_id,
        snapshot_date=outcome.rollup.snapshot_date if outcome.rollup else None,
        created=[InterventionRead.model_validate(iv) for iv in outcome.created],
        scheduled=[InterventionRead.model_validate(iv) for iv in outcome.scheduled],
        evaluated=[InterventionRead.model_validate(iv) for iv in outcome.evaluated],
        suppressed=outcome.suppressed,
    )


@router.get("/courses/{course_id}/interventions", response_model=list[InterventionRead])
def get_course_interventions(course_id: int, db: Session = Depends(get_db)):
    return list_interventions(db, course_id)


@router.post("/interventions/{intervention_id}/executed", response_model=InterventionRead)
def intervention_executed(
    intervention_id: int,
    body: InterventionExecuted | None = None,
    db: Session = Depends(get_db),
):
    return mark_executed(db, intervention_id, body.executed_at if body else None)


@router.post("/interventions/{intervention_id}/cancel", response_model=InterventionRead)
def intervention_cancel(intervention_id: int, db: Session = Depends(get_db)):
    return cancel_intervention(db, intervention_id)


# ── Gamification ──────────────────────────────────────────────────────────────


@router.get("/learners/{learner_id}/gamification", response_model=GamificationRead)
def get_gamification(learner_id: int, db: Session = Depends(get_db)):
    return learner_summary(db, learner_id)
