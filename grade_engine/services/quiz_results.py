"""Quiz Result Aggregator.

Recomputes a learner's QuizResult from the full set of their attempts for
one quiz. Deterministic and idempotent: the same attempt set always
produces the same row (``synced_at`` aside), whatever the call order.

Counting rules
--------------
- Only the latest attempt (highest ``attempt_index``) per question counts.
- ``max_points`` sums the distinct questions assigned to the quiz while the
  learner was taking it, plus every question of the quiz they actually
  attempted, so a question removed afterwards still counts.
- Attempts whose question is missing, was never on the quiz, or whose
  stored points are impossible are reported as ``DataIntegrityError`` and skipped.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from grade_engine.core.clock import now, to_engine_tz
from grade_engine.core.errors import ConcurrencyConflict, DataIntegrityError, NotFound
from grade_engine.db.models import (
    Question,
    QuestionAttempt,
    Quiz,
    QuizQuestion,
    QuizResult,
    QuizResultStatusEnum,
)
from grade_engine.services.gamification import GamificationUpdate, process_completion, streak_bonus
from grade_engine.services.locks import get_lock_manager

logger = logging.getLogger(__name__)

_SCORE_PRECISION = 6


@dataclass
class QuizResultComputation:
    raw_total_points: float
    max_points: float
    bonuses_total: float
    score: float
    status: QuizResultStatusEnum
    completion_time: datetime | None
    fingerprint: str
    course_id: int | None = None
    response_times: list[float] = field(default_factory=list)
    skipped: list[DataIntegrityError] = field(default_factory=list)


@dataclass
class QuizRecompute:
    result: QuizResult
    course_id: int | None = None
    coalesced: bool = False
    skipped: list[DataIntegrityError] = field(default_factory=list)
    gamification: GamificationUpdate | None = None


# ── helpers ───────────────────────────────────────────────────────────────────


def _attempt_order(a: QuestionAttempt) -> tuple:
    return (to_engine_tz(a.created_at), a.id)


def _assigned_question_ids(
    db: Session, quiz_id: int, window: tuple[datetime, datetime] | None
) -> tuple[set[int], set[int]]:
    """Questions on the quiz during ``window`` (or right now, without one),
    and every question ever linked to the quiz."""
    rows = db.query(QuizQuestion).filter(QuizQuestion.quiz_id == quiz_id).all()
    ids: set[int] = set()
    for qq in rows:
        added = to_engine_tz(qq.added_at)
        removed = to_engine_tz(qq.removed_at)
        if window is None:
            if removed is None:
                ids.add(qq.question_id)
            continue
        first, last = window
        if added <= last and (removed is None or removed > first):
            ids.add(qq.question_id)
    return ids, {qq.question_id for qq in rows}


def _fingerprint(attempt_ids: list[int], question_ids: set[int]) -> str:
    payload = json.dumps(
        {"attempts": sorted(attempt_ids), "questions": sorted(question_ids)},
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode()).hexdigest()


def clamp_score(raw_total_points: float, bonuses_total: float, max_points: float) -> float:
    """``clamp(raw + bonus, 0, max) / max``; 0 when nothing is achievable."""
    if max_points <= 0:
        return 0.0
    earned = min(max(raw_total_points + bonuses_total, 0.0), max_points)
    return round(earned / max_points, _SCORE_PRECISION)


# ── Pure computation ──────────────────────────────────────────────────────────


def compute_quiz_result(db: Session, learner_id: int, quiz_id: int) -> QuizResultComputation:
    """Read attempts and derive QuizResult values without writing anything."""
    quiz = db.get(Quiz, quiz_id)
    if quiz is None:
        raise NotFound("quiz", quiz_id, "quiz not found")

    attempts = (
        db.query(QuestionAttempt)
        .filter(QuestionAttempt.learner_id == learner_id, QuestionAttempt.quiz_id == quiz_id)
        .all()
    )
    attempts.sort(key=_attempt_order)

    window = None
    if attempts:
        window = (to_engine_tz(attempts[0].created_at), to_engine_tz(attempts[-1].created_at))
    question_ids, linked = _assigned_question_ids(db, quiz_id, window)
    # removed questions still count; questions never on the quiz do not
    question_ids.update(a.question_id for a in attempts if a.question_id in linked)

    questions = {
        q.id: q
        for q in db.query(Question).filter(Question.id.in_(question_ids)).all()
    } if question_ids else {}

    skipped: list[DataIntegrityError] = []

    # latest attempt per question
    latest: dict[int, QuestionAttempt] = {}
    for a in attempts:
        current = latest.get(a.question_id)
        if current is None or a.attempt_index > current.attempt_index:
            latest[a.question_id] = a

    counted: list[QuestionAttempt] = []
    for qid, a in latest.items():
        if qid not in linked:
            skipped.append(
                DataIntegrityError("question", qid, f"attempt {a.id} references a question not on quiz {quiz_id}")
            )
            continue
        question = questions.get(qid)
        if question is None:
            skipped.append(DataIntegrityError("question", qid, f"attempt {a.id} references a missing question"))
            continue
        if a.points_earned < 0 or a.points_earned > question.max_points:
            skipped.append(
                DataIntegrityError(
                    "question_attempt", a.id,
                    f"points_earned {a.points_earned} outside [0, {question.max_points}]",
                )
            )
            continue
        counted.append(a)
    counted.sort(key=_attempt_order)

    for err in skipped:
        logger.warning("Skipping attempt in quiz %s for learner %s: %s", quiz_id, learner_id, err)

    max_points = round(sum(q.max_points for q in questions.values()), 4)
    raw_total = round(sum(a.points_earned for a in counted), 4)
    bonuses = round(streak_bonus(a.is_correct for a in counted), 4)

    counted_questions = {a.question_id for a in counted}
    completed = bool(questions) and set(questions).issubset(counted_questions)
    completion_time = None
    if completed:
        completion_time = max(to_engine_tz(a.created_at) for a in counted)

    return QuizResultComputation(
        raw_total_points=raw_total,
        max_points=max_points,
        bonuses_total=bonuses,
        score=clamp_score(raw_total, bonuses, max_points),
        status=QuizResultStatusEnum.COMPLETED if completed else QuizResultStatusEnum.IN_PROGRESS,
        completion_time=completion_time,
        fingerprint=_fingerprint([a.id for a in attempts], set(questions)),
        course_id=quiz.course_id,
        response_times=[a.time_spent for a in counted],
        skipped=skipped,
    )


# ── Recompute + persist ───────────────────────────────────────────────────────


def recompute_quiz_result(
    db: Session, learner_id: int, quiz_id: int, *, force: bool = False
) -> QuizRecompute:
    """Recompute and store the QuizResult for ``(learner, quiz)``.

    Serialised per key. A latecomer whose attempt set did not change since
    the stored computation is coalesced into a no-op unless ``force``.
    """
    with get_lock_manager().hold("quiz_result", learner_id, quiz_id):
        comp = compute_quiz_result(db, learner_id, quiz_id)
        result = (
            db.query(QuizResult)
            .filter(QuizResult.learner_id == learner_id, QuizResult.quiz_id == quiz_id)
            .first()
        )
        if result is not None and not force and result.source_fingerprint == comp.fingerprint:
            logger.debug("quiz_result %s unchanged since last sync, coalesced", result.id)
            return QuizRecompute(
                result=result, course_id=comp.course_id, coalesced=True, skipped=comp.skipped
            )

        if result is None:
            result = QuizResult(learner_id=learner_id, quiz_id=quiz_id)
            db.add(result)

        result.status = comp.status
        result.raw_total_points = comp.raw_total_points
        result.max_points = comp.max_points
        result.bonuses_total = comp.bonuses_total
        result.score = comp.score
        result.completion_time = comp.completion_time
        result.source_fingerprint = comp.fingerprint
        result.synced_at = now()

        update = None
        if comp.status == QuizResultStatusEnum.COMPLETED:
            update = process_completion(db, result, comp.response_times)

        try:
            db.commit()
        except (StaleDataError, IntegrityError) as e:
            db.rollback()
            raise ConcurrencyConflict(
                "quiz_result", (learner_id, quiz_id), f"concurrent write detected: {e.__class__.__name__}"
            ) from e
        db.refresh(result)

    logger.info(
        "quiz_result %s synced: learner=%s quiz=%s raw=%.2f max=%.2f bonus=%.2f score=%.4f status=%s",
        result.id, learner_id, quiz_id, result.raw_total_points, result.max_points,
        result.bonuses_total, result.score, result.status.value,
    )
    return QuizRecompute(
        result=result, course_id=comp.course_id, skipped=comp.skipped, gamification=update
    )
