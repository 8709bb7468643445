"""Intervention Engine tests: triggering, suppression, lifecycle, evaluation."""

from datetime import date, timedelta

import pytest
from sqlalchemy.orm import Session

from conftest import build_cohort
from grade_engine.core.clock import now, today
from grade_engine.core.errors import ConfigurationError, InvalidTransition, NotFound
from grade_engine.db.models import (
    CourseAnalyticsConfig,
    CourseAnalyticsRollup,
    CourseIntervention,
    InterventionResult,
    InterventionStatusEnum,
)
from grade_engine.services.interventions import (
    INTERVENTION_TYPES,
    RollupView,
    Thresholds,
    cancel_intervention,
    evaluate_interventions,
    improvement,
    mark_executed,
    percentile_cohort,
)
from grade_engine.services.quiz_results import recompute_quiz_result
from grade_engine.services.rollups import run_rollup


def _configure(db: Session, course_id: int, flags: dict, **thresholds):
    db.add(
        CourseAnalyticsConfig(
            course_id=course_id,
            thresholds={"min_sample_size": 2, **thresholds},
            feature_flags=flags,
        )
    )
    db.commit()


def _by_type(interventions, type_):
    return next(iv for iv in interventions if iv.type == type_)


# ── Pure helpers ──────────────────────────────────────────────────────────────


def test_percentile_cohort():
    group, members = percentile_cohort({"1": 0.9, "2": 0.2, "3": 0.4, "4": 0.7}, 0.5)
    assert group == "below_p50"
    assert members == [2, 3]
    assert percentile_cohort({}, 0.25) == ("all_learners", [])


def test_improvement_only_numeric():
    before = {"mean_score": 0.5, "pass_rate": None, "snapshot_date": "2025-01-01"}
    after = {"mean_score": 0.75, "pass_rate": 0.5, "snapshot_date": "2025-01-09"}
    assert improvement(before, after) == {"mean_score": 0.25}


def test_score_drop_detection():
    def rollup(mean, day):
        return CourseAnalyticsRollup(
            course_id=1, snapshot_date=day, metrics={"mean_score": mean},
            confidence=0.8, sample_size=15, low_confidence=False,
        )

    thresholds = Thresholds(
        low_mastery=0.6, low_completion=0.5, low_mean_score=0.55, alert_drop=0.15,
        target_percentile=0.25, observation_window_days=7,
    )
    detect = INTERVENTION_TYPES["score_drop"].detect
    dropped = RollupView(rollup(0.6, date(2025, 3, 2)), [], rollup(0.9, date(2025, 3, 1)), thresholds)
    steady = RollupView(rollup(0.85, date(2025, 3, 2)), [], rollup(0.9, date(2025, 3, 1)), thresholds)

    [trigger] = detect(dropped)
    assert trigger.target_group == "all_learners"
    assert trigger.severity == pytest.approx(0.12)
    assert detect(steady) == []


# ── Evaluation ────────────────────────────────────────────────────────────────


def test_breach_opens_interventions(db: Session, make):
    course, lo, _, _, learners = build_cohort(db, make)
    _configure(db, course.id, {"low_score": True})
    run_rollup(db, course.id, today())

    outcome = evaluate_interventions(db, course.id)

    assert {iv.type for iv in outcome.created} == {"low_score", "low_mastery"}
    low_score = _by_type(outcome.created, "low_score")
    assert low_score.status == InterventionStatusEnum.SCHEDULED
    assert low_score.scheduled_at is not None
    assert low_score.target_group == "below_p25"
    assert low_score.parameters["learner_ids"] == [learners[2].id]
    assert low_score.metrics_before["mean_score"] == pytest.approx(0.5)

    # flag off: stays pending
    low_mastery = _by_type(outcome.created, "low_mastery")
    assert low_mastery.lo_id == lo.id
    assert low_mastery.status == InterventionStatusEnum.PENDING


def test_no_duplicate_while_open(db: Session, make):
    course, *_ = build_cohort(db, make)
    _configure(db, course.id, {"low_score": True})
    run_rollup(db, course.id, today())

    first = evaluate_interventions(db, course.id)
    second = evaluate_interventions(db, course.id)

    assert len(first.created) == 2
    assert second.created == []
    assert second.suppressed == 2
    assert db.query(CourseIntervention).count() == 2


def test_cancelled_intervention_can_retrigger(db: Session, make):
    course, *_ = build_cohort(db, make)
    _configure(db, course.id, {})
    run_rollup(db, course.id, today())
    first = evaluate_interventions(db, course.id)
    cancel_intervention(db, _by_type(first.created, "low_score").id)

    again = evaluate_interventions(db, course.id)
    assert [iv.type for iv in again.created] == ["low_score"]


def test_low_confidence_rollup_is_not_scheduled(db: Session, make):
    course, *_ = build_cohort(db, make)
    # default minimum sample size (5) > 3 learners
    db.add(CourseAnalyticsConfig(course_id=course.id, thresholds={}, feature_flags={"low_score": True}))
    db.commit()
    run_rollup(db, course.id, today())

    outcome = evaluate_interventions(db, course.id)
    low_score = _by_type(outcome.created, "low_score")
    assert low_score.status == InterventionStatusEnum.PENDING
    assert low_score.parameters["low_confidence"] is True
    # breach 0.05 × confidence 0.5
    assert low_score.parameters["severity"] == pytest.approx(0.025)


def test_pending_promoted_once_flag_enabled(db: Session, make):
    course, *_ = build_cohort(db, make)
    _configure(db, course.id, {})
    run_rollup(db, course.id, today())
    created = evaluate_interventions(db, course.id).created
    assert all(iv.status == InterventionStatusEnum.PENDING for iv in created)

    config = db.query(CourseAnalyticsConfig).filter_by(course_id=course.id).one()
    config.feature_flags = {"low_mastery": True}
    db.commit()

    outcome = evaluate_interventions(db, course.id)
    assert [iv.type for iv in outcome.scheduled] == ["low_mastery"]


def test_unreadable_thresholds_are_config_error(db: Session, make):
    course, *_ = build_cohort(db, make)
    run_rollup(db, course.id, today())
    db.add(CourseAnalyticsConfig(course_id=course.id, thresholds={"low_mastery": "high"}, feature_flags={}))
    db.commit()

    with pytest.raises(ConfigurationError) as exc:
        evaluate_interventions(db, course.id)
    assert exc.value.entity == "course_analytics_config"
    assert db.query(CourseIntervention).count() == 0


def test_no_rollup_no_interventions(db: Session, make):
    course = make.course()
    outcome = evaluate_interventions(db, course.id)
    assert outcome.rollup is None
    assert outcome.created == []


# ── Lifecycle ─────────────────────────────────────────────────────────────────


def test_full_lifecycle_measures_improvement(db: Session, make):
    course, _, quiz, (easy, hard), learners = build_cohort(db, make)
    _configure(db, course.id, {"low_score": True})
    run_rollup(db, course.id, today())
    low_score = _by_type(evaluate_interventions(db, course.id).created, "low_score")

    executed = mark_executed(db, low_score.id, now() - timedelta(days=10))
    assert executed.status == InterventionStatusEnum.EXECUTED

    # the struggling learner retakes both questions after the intervention
    struggling = learners[2]
    make.attempt(struggling, quiz, easy, 10, index=2)
    make.attempt(struggling, quiz, hard, 10, index=2)
    recompute_quiz_result(db, struggling.id, quiz.id)
    run_rollup(db, course.id, today())

    outcome = evaluate_interventions(db, course.id)
    assert [iv.id for iv in outcome.evaluated] == [low_score.id]
    assert outcome.created == []

    result = db.query(InterventionResult).filter_by(intervention_id=low_score.id).one()
    assert result.improvement["mean_score"] == pytest.approx(0.333333)
    assert result.metrics_before["mean_score"] == pytest.approx(0.5)
    db.refresh(low_score)
    assert low_score.status == InterventionStatusEnum.EVALUATED
    assert low_score.evaluated_at is not None


def test_evaluation_waits_for_observation_window(db: Session, make):
    course, *_ = build_cohort(db, make)
    _configure(db, course.id, {"low_score": True})
    run_rollup(db, course.id, today())
    low_score = _by_type(evaluate_interventions(db, course.id).created, "low_score")
    mark_executed(db, low_score.id)

    outcome = evaluate_interventions(db, course.id)
    assert outcome.evaluated == []
    db.refresh(low_score)
    assert low_score.status == InterventionStatusEnum.EXECUTED


@pytest.mark.parametrize("action", ["execute", "cancel"])
def test_illegal_transitions(db: Session, make, action):
    course, *_ = build_cohort(db, make)
    _configure(db, course.id, {})
    run_rollup(db, course.id, today())
    pending = evaluate_interventions(db, course.id).created[0]

    if action == "execute":
        # pending cannot jump straight to executed
        with pytest.raises(InvalidTransition):
            mark_executed(db, pending.id)
    else:
        cancel_intervention(db, pending.id)
        with pytest.raises(InvalidTransition):
            cancel_intervention(db, pending.id)


def test_unknown_intervention(db: Session):
    with pytest.raises(NotFound):
        mark_executed(db, 999)
