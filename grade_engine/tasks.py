"""Background tasks executed by Celery workers.

One task per recomputation unit. Each task opens its own session, so
nothing mutable is shared between courses. Transient failures
(``ConcurrencyConflict``, ``RecomputeTimeout``) are retried with
exponential back-off (10s, 30s, 90s); everything else is reported and
left for an operator to re-run.
"""

import logging
from datetime import date, timedelta

from celery.exceptions import SoftTimeLimitExceeded

from grade_engine.celery_app import celery_app
from grade_engine.config import settings
from grade_engine.core.clock import today
from grade_engine.core.errors import EngineError, RecomputeTimeout
from grade_engine.db.models import Course
from grade_engine.db.session import get_session_factory
from grade_engine.services.course_grades import recompute_course_grade, recompute_course_grades
from grade_engine.services.interventions import evaluate_interventions
from grade_engine.services.jobs import JobContext
from grade_engine.services.quiz_results import recompute_quiz_result
from grade_engine.services.rollups import run_rollup

logger = logging.getLogger(__name__)

_TASK_OPTIONS = {
    "bind": True,
    "max_retries": settings.RECOMPUTE_MAX_RETRIES,
    "soft_time_limit": settings.JOB_TIMEOUT_SECONDS,
}


def retry_countdown(retries: int) -> int:
    return 10 * (3**retries)


def _failed(task, exc: EngineError) -> dict:
    """Retry transient failures; report the rest."""
    if exc.transient:
        logger.warning("%s: transient failure, retrying: %s", task.name, exc)
        raise task.retry(exc=exc, countdown=retry_countdown(task.request.retries))
    logger.error("%s failed: %s", task.name, exc)
    return {"success": False, "error_code": exc.error_code, "message": str(exc)}


@celery_app.task(name="recompute_quiz_result", **_TASK_OPTIONS)
def recompute_quiz_result_task(self, learner_id: int, quiz_id: int, force: bool = False) -> dict:
    """Recompute one QuizResult, then cascade to the learner's course grade."""
    db = get_session_factory()()
    try:
        outcome = recompute_quiz_result(db, learner_id, quiz_id, force=force)
        if not outcome.coalesced and outcome.course_id is not None:
            recompute_course_grade_task.delay(learner_id, outcome.course_id)
        return {
            "success": True,
            "quiz_result_id": outcome.result.id,
            "coalesced": outcome.coalesced,
            "score": outcome.result.score,
        }
    except SoftTimeLimitExceeded:
        return _failed(self, RecomputeTimeout("quiz_result", (learner_id, quiz_id), "soft time limit exceeded"))
    except EngineError as exc:
        return _failed(self, exc)
    finally:
        db.close()


@celery_app.task(name="recompute_course_grade", **_TASK_OPTIONS)
def recompute_course_grade_task(self, learner_id: int, course_id: int) -> dict:
    db = get_session_factory()()
    try:
        outcome = recompute_course_grade(db, learner_id, course_id)
        if outcome.config_error is not None:
            # stored as Incomplete; never retried
            logger.error("Course grade left incomplete: %s", outcome.config_error)
        return {
            "success": outcome.config_error is None,
            "course_grade_id": outcome.result.id,
            "changed": outcome.changed,
            "grade": outcome.result.grade,
        }
    except SoftTimeLimitExceeded:
        return _failed(self, RecomputeTimeout("course_grade", (learner_id, course_id), "soft time limit exceeded"))
    except EngineError as exc:
        return _failed(self, exc)
    finally:
        db.close()


@celery_app.task(name="recompute_course_grades", **_TASK_OPTIONS)
def recompute_course_grades_task(self, course_id: int) -> dict:
    db = get_session_factory()()
    try:
        report = recompute_course_grades(db, course_id, JobContext(db, course_id))
        return {
            "success": not report.failed,
            "course_id": course_id,
            "recomputed": len(report.recomputed),
            "changed": len(report.changed),
            "failed": {str(k): v for k, v in report.failed.items()},
        }
    except SoftTimeLimitExceeded:
        return _failed(self, RecomputeTimeout("course", course_id, "soft time limit exceeded"))
    except EngineError as exc:
        return _failed(self, exc)
    finally:
        db.close()


@celery_app.task(name="run_course_rollup", **_TASK_OPTIONS)
def run_course_rollup_task(self, course_id: int, snapshot_date: str | None = None, evaluate: bool = True) -> dict:
    """Build the rollup for one (course, date); optionally evaluate interventions after."""
    db = get_session_factory()()
    try:
        day = date.fromisoformat(snapshot_date) if snapshot_date else today()
        outcome = run_rollup(db, course_id, day, JobContext(db, course_id))
        if evaluate:
            evaluate_course_interventions_task.delay(course_id)
        return {
            "success": True,
            "rollup_id": outcome.rollup.id,
            "snapshot_date": day.isoformat(),
            "confidence": outcome.rollup.confidence,
            "low_confidence": outcome.rollup.low_confidence,
        }
    except SoftTimeLimitExceeded:
        return _failed(self, RecomputeTimeout("rollup", course_id, "soft time limit exceeded"))
    except EngineError as exc:
        return _failed(self, exc)
    finally:
        db.close()


@celery_app.task(name="evaluate_course_interventions", **_TASK_OPTIONS)
def evaluate_course_interventions_task(self, course_id: int) -> dict:
    db = get_session_factory()()
    try:
        outcome = evaluate_interventions(db, course_id, JobContext(db, course_id))
        return {
            "success": True,
            "course_id": course_id,
            "created": [iv.id for iv in outcome.created],
            "scheduled": [iv.id for iv in outcome.scheduled],
            "evaluated": [iv.id for iv in outcome.evaluated],
            "suppressed": outcome.suppressed,
        }
    except SoftTimeLimitExceeded:
        return _failed(self, RecomputeTimeout("interventions", course_id, "soft time limit exceeded"))
    except EngineError as exc:
        return _failed(self, exc)
    finally:
        db.close()


@celery_app.task(name="schedule_daily_rollups")
def schedule_daily_rollups(snapshot_date: str | None = None) -> dict:
    """Beat entry point: one rollup + evaluation job per live course.

    Runs after midnight, so the default snapshot is the day that just ended.
    """
    day = date.fromisoformat(snapshot_date) if snapshot_date else today() - timedelta(days=1)
    db = get_session_factory()()
    try:
        course_ids = [c for (c,) in db.query(Course.id).filter(Course.deleted_at.is_(None))]
    finally:
        db.close()
    for course_id in course_ids:
        run_course_rollup_task.delay(course_id, day.isoformat())
    logger.info("Queued %d course rollups for %s", len(course_ids), day.isoformat())
    return {"success": True, "snapshot_date": day.isoformat(), "courses": course_ids}
