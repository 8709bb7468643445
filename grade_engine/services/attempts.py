"""Attempt intake: score an answer and store it as an immutable row."""

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from grade_engine.core.clock import now
from grade_engine.core.errors import DataIntegrityError, DuplicateRecord, NotFound
from grade_engine.db.models import Question, QuestionAttempt, Quiz, QuizQuestion
from grade_engine.schemas.scoring import AttemptRecorded, AttemptSubmit
from grade_engine.services.scoring import resolve_policy, score_attempt

logger = logging.getLogger(__name__)


def next_attempt_index(db: Session, learner_id: int, quiz_id: int, question_id: int) -> int:
    current = (
        db.query(func.max(QuestionAttempt.attempt_index))
        .filter(
            QuestionAttempt.learner_id == learner_id,
            QuestionAttempt.quiz_id == quiz_id,
            QuestionAttempt.question_id == question_id,
        )
        .scalar()
    )
    return (current or 0) + 1


def question_on_quiz(db: Session, quiz_id: int, question_id: int) -> bool:
    """True while the question is assigned to the quiz (not removed)."""
    return (
        db.query(QuizQuestion.id)
        .filter(
            QuizQuestion.quiz_id == quiz_id,
            QuizQuestion.question_id == question_id,
            QuizQuestion.removed_at.is_(None),
        )
        .first()
        is not None
    )


def record_attempt(db: Session, data: AttemptSubmit) -> AttemptRecorded:
    """Score and persist one attempt.

    Raises ``NotFound`` for an unknown quiz, ``DataIntegrityError`` when the
    question is unknown, unusable or not on the quiz, and
    ``DuplicateRecord`` when the attempt index is already taken.
    """
    quiz = db.get(Quiz, data.quiz_id)
    if quiz is None:
        raise NotFound("quiz", data.quiz_id, "quiz not found")
    question = db.get(Question, data.question_id)
    if question is not None and not question_on_quiz(db, quiz.id, question.id):
        err = DataIntegrityError("question", question.id, f"question is not assigned to quiz {quiz.id}")
        logger.warning("Rejected attempt for learner %s: %s", data.learner_id, err)
        raise err

    attempt_index = data.attempt_index or next_attempt_index(
        db, data.learner_id, data.quiz_id, data.question_id
    )
    outcome = score_attempt(
        question_id=data.question_id,
        attempt_index=attempt_index,
        is_correct=data.is_correct,
        time_spent=data.time_spent,
        max_points=question.max_points if question is not None else None,
        policy=resolve_policy(quiz.penalty_policy, quiz.id),
    )
    if outcome.error is not None:
        logger.warning("Rejected attempt for learner %s: %s", data.learner_id, outcome.error)
        raise outcome.error

    attempt = QuestionAttempt(
        learner_id=data.learner_id,
        quiz_id=data.quiz_id,
        question_id=data.question_id,
        selected_answer_id=data.selected_answer_id,
        is_correct=data.is_correct,
        time_spent=data.time_spent,
        attempt_index=attempt_index,
        points_earned=outcome.points,
        created_at=now(),
    )
    db.add(attempt)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateRecord(
            "question_attempt",
            (data.learner_id, data.quiz_id, data.question_id, attempt_index),
            "attempt already recorded",
        ) from e
    db.refresh(attempt)

    logger.info(
        "Recorded attempt %s: learner=%s quiz=%s question=%s index=%d points=%.2f",
        attempt.id, data.learner_id, data.quiz_id, data.question_id, attempt_index, outcome.points,
    )
    return AttemptRecorded(
        attempt_id=attempt.id,
        learner_id=attempt.learner_id,
        quiz_id=attempt.quiz_id,
        question_id=attempt.question_id,
        attempt_index=attempt.attempt_index,
        points_earned=attempt.points_earned,
    )
