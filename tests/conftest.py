"""Shared pytest fixtures for engine tests."""

import os

os.environ.setdefault("LOCK_BACKEND", "local")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")

from datetime import datetime, timedelta  # noqa: E402
from unittest.mock import MagicMock, patch  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from grade_engine.config import settings  # noqa: E402
from grade_engine.db.models import (  # noqa: E402
    ColumnKindEnum,
    ColumnQuizMapping,
    Course,
    Enrollment,
    GradeColumn,
    LearningObjective,
    Question,
    QuestionAttempt,
    Quiz,
    QuizQuestion,
    User,
)
from grade_engine.db.session import Base, get_db  # noqa: E402
from grade_engine.main import app  # noqa: E402


# Use an in-memory SQLite database for testing with static pool
SQLALCHEMY_TEST_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Use StaticPool to keep connection alive
    echo=False,
)
TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=settings.engine_tz)


@pytest.fixture(autouse=True)
def mock_celery_tasks():
    """Mock Celery entry points so no broker is touched."""
    mocks = {}
    with patch("grade_engine.api.engine.recompute_quiz_result_task") as quiz_task, patch(
        "grade_engine.api.engine.recompute_course_grade_task"
    ) as grade_task:
        quiz_task.delay = MagicMock(return_value=MagicMock(id="fake-task-id"))
        grade_task.delay = MagicMock(return_value=MagicMock(id="fake-task-id"))
        mocks["quiz"] = quiz_task
        mocks["grade"] = grade_task
        yield mocks


@pytest.fixture(scope="function")
def db():
    """Fresh schema and session for each test; services commit."""
    Base.metadata.create_all(bind=engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db: Session):
    """FastAPI test client with overridden DB dependency."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ── Builders ──────────────────────────────────────────────────────────────────


class Factory:
    """Small helpers for building course fixtures directly in the DB."""

    def __init__(self, db: Session):
        self.db = db
        self._n = 0

    def _commit(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def learner(self, name: str = "learner") -> User:
        self._n += 1
        return self._commit(User(email=f"{name}{self._n}@ex.com", full_name=name))

    def course(self, grade_config: dict | None = None, name: str = "Course") -> Course:
        return self._commit(Course(name=name, grade_config=grade_config))

    def enroll(self, learner: User, course: Course) -> Enrollment:
        return self._commit(Enrollment(learner_id=learner.id, course_id=course.id))

    def lo(self, course: Course, name: str = "LO") -> LearningObjective:
        return self._commit(LearningObjective(name=name, course_id=course.id))

    def question(self, max_points: float = 10, difficulty: str | None = None, lo=None) -> Question:
        return self._commit(
            Question(max_points=max_points, difficulty=difficulty, lo_id=lo.id if lo else None)
        )

    def quiz(self, course: Course, questions=(), penalty_policy: dict | None = None, added_at=None) -> Quiz:
        quiz = self._commit(Quiz(course_id=course.id, name="Quiz", penalty_policy=penalty_policy))
        for pos, q in enumerate(questions):
            self.db.add(
                QuizQuestion(
                    quiz_id=quiz.id, question_id=q.id, position=pos,
                    added_at=added_at or T0 - timedelta(days=30),
                )
            )
        self.db.commit()
        return quiz

    def column(
        self,
        course: Course,
        name: str,
        quizzes=(),
        kind: ColumnKindEnum = ColumnKindEnum.PROCESS,
        weight: float | None = None,
        aggregation=None,
        best_n: int | None = None,
        order: int = 1,
        is_required: bool = False,
        quiz_weights: dict | None = None,
    ) -> GradeColumn:
        column = self._commit(
            GradeColumn(
                course_id=course.id, name=name, kind=kind, weight_percentage=weight,
                aggregation=aggregation, best_n=best_n, column_order=order,
                is_required=is_required,
            )
        )
        for quiz in quizzes:
            self.db.add(
                ColumnQuizMapping(
                    column_id=column.id, quiz_id=quiz.id,
                    weight_percentage=(quiz_weights or {}).get(quiz.id),
                )
            )
        self.db.commit()
        return column

    def attempt(
        self,
        learner: User,
        quiz: Quiz,
        question: Question,
        points: float,
        is_correct: bool | None = None,
        index: int = 1,
        at: datetime | None = None,
        time_spent: float = 5.0,
    ) -> QuestionAttempt:
        self._n += 1
        return self._commit(
            QuestionAttempt(
                learner_id=learner.id,
                quiz_id=quiz.id,
                question_id=question.id,
                is_correct=points > 0 if is_correct is None else is_correct,
                time_spent=time_spent,
                attempt_index=index,
                points_earned=points,
                created_at=at or T0 + timedelta(minutes=self._n),
            )
        )


@pytest.fixture
def make(db: Session) -> Factory:
    return Factory(db)


def build_cohort(db: Session, make: Factory, points=(20, 10, 0), course=None):
    """Course with one two-question quiz (one LO) and one learner per entry
    in ``points``; every learner completes the quiz with that many points."""
    from grade_engine.services.quiz_results import recompute_quiz_result

    course = course or make.course()
    lo = make.lo(course)
    easy = make.question(max_points=10, difficulty="easy", lo=lo)
    hard = make.question(max_points=10, difficulty="hard", lo=lo)
    quiz = make.quiz(course, [easy, hard])
    learners = []
    for total in points:
        learner = make.learner()
        make.enroll(learner, course)
        make.attempt(learner, quiz, easy, min(total, 10))
        make.attempt(learner, quiz, hard, max(total - 10, 0))
        recompute_quiz_result(db, learner.id, quiz.id)
        learners.append(learner)
    return course, lo, quiz, (easy, hard), learners
