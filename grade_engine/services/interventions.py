"""Intervention Engine.

Reads the latest course rollup, checks it against the course's thresholds
and opens interventions for the cohorts that breached them. Lifecycle::

    pending → scheduled → executed → evaluated
    pending / scheduled → cancelled

Intervention types are plain registry entries (``INTERVENTION_TYPES``)
sharing one detection signature, so adding a type is one new entry.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from grade_engine.config import settings
from grade_engine.core.clock import now, to_engine_tz
from grade_engine.core.errors import ConfigurationError, InvalidTransition, NotFound
from grade_engine.db.models import (
    Course,
    CourseAnalyticsConfig,
    CourseAnalyticsRollup,
    CourseIntervention,
    CourseLORollup,
    InterventionResult,
    InterventionStatusEnum,
)
from grade_engine.services.jobs import JobContext
from grade_engine.services.locks import get_lock_manager
from grade_engine.services.rollups import latest_rollup, lo_rollups_for

logger = logging.getLogger(__name__)

OPEN_STATUSES = (
    InterventionStatusEnum.PENDING,
    InterventionStatusEnum.SCHEDULED,
    InterventionStatusEnum.EXECUTED,
)

_TRANSITIONS = {
    InterventionStatusEnum.PENDING: {InterventionStatusEnum.SCHEDULED, InterventionStatusEnum.CANCELLED},
    InterventionStatusEnum.SCHEDULED: {InterventionStatusEnum.EXECUTED, InterventionStatusEnum.CANCELLED},
    InterventionStatusEnum.EXECUTED: {InterventionStatusEnum.EVALUATED},
}

_COURSE_METRICS = ("completion_rate", "mean_score", "median_score", "pass_rate", "mean_course_grade")
_LO_METRICS = ("mastery_rate", "accuracy")


# ── Detection inputs / outputs ────────────────────────────────────────────────


@dataclass
class Thresholds:
    low_mastery: float
    low_completion: float
    low_mean_score: float
    alert_drop: float
    target_percentile: float
    observation_window_days: int
    feature_flags: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def for_course(cls, db: Session, course_id: int) -> "Thresholds":
        config = (
            db.query(CourseAnalyticsConfig)
            .filter(CourseAnalyticsConfig.course_id == course_id)
            .first()
        )
        raw = (config.thresholds if config else None) or {}
        try:
            return cls(
                low_mastery=float(raw.get("low_mastery", settings.LOW_MASTERY_THRESHOLD)),
                low_completion=float(raw.get("low_completion", settings.LOW_COMPLETION_THRESHOLD)),
                low_mean_score=float(raw.get("low_mean_score", settings.LOW_MEAN_SCORE_THRESHOLD)),
                alert_drop=float(raw.get("alert_drop", settings.ALERT_DROP_THRESHOLD)),
                target_percentile=float(raw.get("target_percentile", settings.TARGET_PERCENTILE)),
                observation_window_days=int(
                    raw.get("observation_window_days", settings.OBSERVATION_WINDOW_DAYS)
                ),
                feature_flags=dict((config.feature_flags if config else None) or {}),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                "course_analytics_config", course_id, f"unreadable thresholds: {e}"
            ) from e

    def enabled(self, intervention_type: str) -> bool:
        return bool(self.feature_flags.get(intervention_type, False))


@dataclass
class RollupView:
    rollup: CourseAnalyticsRollup
    lo_rollups: list[CourseLORollup]
    previous: CourseAnalyticsRollup | None
    thresholds: Thresholds


@dataclass
class Trigger:
    type: str
    metric: str
    value: float
    threshold: float
    breach: float
    target_group: str
    confidence: float
    low_confidence: bool
    lo_id: int | None = None
    learner_ids: list[int] = field(default_factory=list)

    @property
    def severity(self) -> float:
        return round(self.breach * self.confidence, 4)

    @property
    def key(self) -> tuple[int | None, str]:
        return (self.lo_id, self.target_group)


def percentile_cohort(values: dict[str, float], percentile: float) -> tuple[str, list[int]]:
    """Learners at or below the ``percentile`` cut of ``values``."""
    if not values:
        return "all_learners", []
    ordered = sorted(values.values())
    idx = max(0, math.ceil(percentile * len(ordered)) - 1)
    cut = ordered[idx]
    members = sorted(int(k) for k, v in values.items() if v <= cut)
    return f"below_p{round(percentile * 100)}", members


# ── Intervention types ────────────────────────────────────────────────────────


def _detect_low_mastery(view: RollupView) -> list[Trigger]:
    limit = view.thresholds.low_mastery
    triggers = []
    for lo in view.lo_rollups:
        rate = lo.stats.get("mastery_rate")
        if rate is None or rate >= limit:
            continue
        group, members = percentile_cohort(
            lo.stats.get("learner_mastery", {}), view.thresholds.target_percentile
        )
        triggers.append(
            Trigger(
                type="low_mastery", metric="mastery_rate", value=rate, threshold=limit,
                breach=round(limit - rate, 6), target_group=group, learner_ids=members,
                confidence=lo.confidence, low_confidence=lo.low_confidence, lo_id=lo.lo_id,
            )
        )
    return triggers


def _detect_low_completion(view: RollupView) -> list[Trigger]:
    rate = view.rollup.metrics.get("completion_rate")
    limit = view.thresholds.low_completion
    if rate is None or rate >= limit:
        return []
    return [
        Trigger(
            type="low_completion", metric="completion_rate", value=rate, threshold=limit,
            breach=round(limit - rate, 6), target_group="non_completers",
            confidence=view.rollup.confidence, low_confidence=view.rollup.low_confidence,
        )
    ]


def _detect_low_score(view: RollupView) -> list[Trigger]:
    mean = view.rollup.metrics.get("mean_score")
    limit = view.thresholds.low_mean_score
    if mean is None or mean >= limit:
        return []
    group, members = percentile_cohort(
        view.rollup.metrics.get("learner_scores", {}), view.thresholds.target_percentile
    )
    return [
        Trigger(
            type="low_score", metric="mean_score", value=mean, threshold=limit,
            breach=round(limit - mean, 6), target_group=group, learner_ids=members,
            confidence=view.rollup.confidence, low_confidence=view.rollup.low_confidence,
        )
    ]


def _detect_score_drop(view: RollupView) -> list[Trigger]:
    if view.previous is None:
        return []
    before = view.previous.metrics.get("mean_score")
    after = view.rollup.metrics.get("mean_score")
    if before is None or after is None:
        return []
    drop = before - after
    limit = view.thresholds.alert_drop
    if drop <= limit:
        return []
    return [
        Trigger(
            type="score_drop", metric="mean_score", value=after, threshold=limit,
            breach=round(drop - limit, 6), target_group="all_learners",
            confidence=min(view.rollup.confidence, view.previous.confidence),
            low_confidence=view.rollup.low_confidence or view.previous.low_confidence,
        )
    ]


@dataclass(frozen=True)
class InterventionType:
    name: str
    scope: str  # "course" | "lo"
    detect: Callable[[RollupView], list[Trigger]]


INTERVENTION_TYPES: dict[str, InterventionType] = {
    t.name: t
    for t in (
        InterventionType("low_mastery", "lo", _detect_low_mastery),
        InterventionType("low_completion", "course", _detect_low_completion),
        InterventionType("low_score", "course", _detect_low_score),
        InterventionType("score_drop", "course", _detect_score_drop),
    )
}


# ── Metrics snapshots ─────────────────────────────────────────────────────────


def snapshot_metrics(
    rollup: CourseAnalyticsRollup, lo_rollup: CourseLORollup | None = None
) -> dict:
    metrics = {k: rollup.metrics.get(k) for k in _COURSE_METRICS}
    metrics["confidence"] = rollup.confidence
    metrics["sample_size"] = rollup.sample_size
    if lo_rollup is not None:
        for k in _LO_METRICS:
            metrics[f"lo_{k}"] = lo_rollup.stats.get(k)
    metrics["snapshot_date"] = rollup.snapshot_date.isoformat()
    return metrics


def improvement(before: dict, after: dict) -> dict[str, float]:
    """``after - before`` for every metric numeric on both sides."""
    delta = {}
    for k, b in before.items():
        a = after.get(k)
        if isinstance(a, bool) or isinstance(b, bool):
            continue
        if isinstance(a, (int, float)) and isinstance(b, (int, float)):
            delta[k] = round(a - b, 6)
    return delta


# ── State machine ─────────────────────────────────────────────────────────────


def _transition(
    intervention: CourseIntervention, target: InterventionStatusEnum, at: datetime | None = None
) -> None:
    allowed = _TRANSITIONS.get(intervention.status, set())
    if target not in allowed:
        raise InvalidTransition(
            "intervention", intervention.id,
            f"cannot move from {intervention.status.value} to {target.value}",
        )
    setattr(intervention, f"{target.value}_at", at or now())
    logger.info(
        "intervention %s (%s): %s → %s",
        intervention.id, intervention.type, intervention.status.value, target.value,
    )
    intervention.status = target


def _get_intervention(db: Session, intervention_id: int) -> CourseIntervention:
    intervention = db.get(CourseIntervention, intervention_id)
    if intervention is None:
        raise NotFound("intervention", intervention_id, "intervention not found")
    return intervention


def mark_executed(
    db: Session, intervention_id: int, executed_at: datetime | None = None
) -> CourseIntervention:
    """Record that the external actor carried out a scheduled intervention."""
    intervention = _get_intervention(db, intervention_id)
    _transition(
        intervention, InterventionStatusEnum.EXECUTED,
        to_engine_tz(executed_at) if executed_at else None,
    )
    db.commit()
    db.refresh(intervention)
    return intervention


def cancel_intervention(db: Session, intervention_id: int) -> CourseIntervention:
    intervention = _get_intervention(db, intervention_id)
    _transition(intervention, InterventionStatusEnum.CANCELLED)
    db.commit()
    db.refresh(intervention)
    return intervention


# ── Evaluation ────────────────────────────────────────────────────────────────


@dataclass
class InterventionEvaluation:
    course_id: int
    rollup: CourseAnalyticsRollup | None
    created: list[CourseIntervention] = field(default_factory=list)
    scheduled: list[CourseIntervention] = field(default_factory=list)
    evaluated: list[CourseIntervention] = field(default_factory=list)
    suppressed: int = 0

    @property
    def touched(self) -> list[CourseIntervention]:
        seen: dict[int, CourseIntervention] = {}
        for iv in (*self.created, *self.scheduled, *self.evaluated):
            seen[id(iv)] = iv
        return list(seen.values())


def _open_interventions(db: Session, course_id: int) -> list[CourseIntervention]:
    return (
        db.query(CourseIntervention)
        .filter(
            CourseIntervention.course_id == course_id,
            CourseIntervention.status.in_(OPEN_STATUSES),
        )
        .order_by(CourseIntervention.id)
        .all()
    )


def _open_trigger(view: RollupView, trigger: Trigger) -> CourseIntervention:
    lo_row = next((lo for lo in view.lo_rollups if lo.lo_id == trigger.lo_id), None)
    where = f"LO {trigger.lo_id}" if trigger.lo_id is not None else "course"
    return CourseIntervention(
        course_id=view.rollup.course_id,
        lo_id=trigger.lo_id,
        type=trigger.type,
        target_group=trigger.target_group,
        reason=(
            f"{trigger.metric} {trigger.value:.3f} breached threshold {trigger.threshold:.3f} "
            f"({where}, {view.rollup.snapshot_date.isoformat()})"
        ),
        parameters={
            "metric": trigger.metric,
            "value": trigger.value,
            "threshold": trigger.threshold,
            "severity": trigger.severity,
            "confidence": trigger.confidence,
            "low_confidence": trigger.low_confidence,
            "learner_ids": trigger.learner_ids,
        },
        status=InterventionStatusEnum.PENDING,
        trigger_rollup_id=view.rollup.id,
        trigger_snapshot_date=view.rollup.snapshot_date,
        metrics_before=snapshot_metrics(view.rollup, lo_row if trigger.lo_id is not None else None),
        created_at=now(),
    )


def _schedulable(intervention: CourseIntervention, view: RollupView) -> bool:
    if not view.thresholds.enabled(intervention.type):
        return False
    if intervention.lo_id is not None:
        lo_row = next((lo for lo in view.lo_rollups if lo.lo_id == intervention.lo_id), None)
        return lo_row is not None and not lo_row.low_confidence
    return not view.rollup.low_confidence


def _evaluate_executed(
    db: Session, intervention: CourseIntervention, view: RollupView
) -> bool:
    executed_on = to_engine_tz(intervention.executed_at).date()
    due = executed_on + timedelta(days=view.thresholds.observation_window_days)
    if view.rollup.snapshot_date < due:
        return False
    lo_row = None
    if intervention.lo_id is not None:
        lo_row = next((lo for lo in view.lo_rollups if lo.lo_id == intervention.lo_id), None)
    after = snapshot_metrics(view.rollup, lo_row)
    before = dict(intervention.metrics_before or {})
    db.add(
        InterventionResult(
            intervention_id=intervention.id,
            metrics_before=before,
            metrics_after=after,
            improvement=improvement(before, after),
            evaluated_at=now(),
        )
    )
    _transition(intervention, InterventionStatusEnum.EVALUATED)
    return True


def evaluate_interventions(
    db: Session, course_id: int, ctx: JobContext | None = None
) -> InterventionEvaluation:
    """Open, schedule and evaluate the course's interventions against its latest rollup.

    Never opens a second intervention for a (course, LO, target_group) that
    is still pending, scheduled or executed-but-not-evaluated. Triggers from
    a low-confidence rollup stay ``pending``.
    """
    course = db.get(Course, course_id)
    if course is None or course.deleted_at is not None:
        raise NotFound("course", course_id, "course not found")
    ctx = ctx or JobContext(db, course_id)

    with get_lock_manager().hold("interventions", course_id):
        rollup = latest_rollup(db, course_id)
        outcome = InterventionEvaluation(course_id=course_id, rollup=rollup)
        if rollup is None:
            logger.info("No rollup for course %s yet, nothing to evaluate", course_id)
            return outcome

        view = RollupView(
            rollup=rollup,
            lo_rollups=lo_rollups_for(db, course_id, rollup.snapshot_date),
            previous=latest_rollup(db, course_id, before=rollup.snapshot_date),
            thresholds=Thresholds.for_course(db, course_id),
        )
        try:
            existing = _open_interventions(db, course_id)
            open_keys = {(iv.lo_id, iv.target_group) for iv in existing}

            for itype in INTERVENTION_TYPES.values():
                for trigger in itype.detect(view):
                    ctx.checkpoint()
                    if trigger.key in open_keys:
                        outcome.suppressed += 1
                        logger.debug(
                            "Suppressed %s for course %s lo=%s group=%s: already open",
                            trigger.type, course_id, trigger.lo_id, trigger.target_group,
                        )
                        continue
                    intervention = _open_trigger(view, trigger)
                    db.add(intervention)
                    db.flush()
                    open_keys.add(trigger.key)
                    outcome.created.append(intervention)
                    logger.info(
                        "Opened %s intervention %s for course %s lo=%s group=%s severity=%.4f",
                        trigger.type, intervention.id, course_id, trigger.lo_id,
                        trigger.target_group, trigger.severity,
                    )

            for intervention in [*existing, *outcome.created]:
                ctx.checkpoint()
                if intervention.status == InterventionStatusEnum.PENDING and _schedulable(intervention, view):
                    _transition(intervention, InterventionStatusEnum.SCHEDULED)
                    outcome.scheduled.append(intervention)
                elif intervention.status == InterventionStatusEnum.EXECUTED and _evaluate_executed(
                    db, intervention, view
                ):
                    outcome.evaluated.append(intervention)

            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Intervention evaluation for course %s rolled back", course_id)
            raise

    logger.info(
        "Interventions course=%s: created=%d scheduled=%d evaluated=%d suppressed=%d",
        course_id, len(outcome.created), len(outcome.scheduled),
        len(outcome.evaluated), outcome.suppressed,
    )
    return outcome


def list_interventions(
    db: Session, course_id: int, status: InterventionStatusEnum | None = None
) -> list[CourseIntervention]:
    query = db.query(CourseIntervention).filter(CourseIntervention.course_id == course_id)
    if status is not None:
        query = query.filter(CourseIntervention.status == status)
    return query.order_by(CourseIntervention.id).all()
