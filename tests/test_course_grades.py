"""Grade Column Mapper and Course Grade Aggregator tests."""

import pytest
from sqlalchemy.orm import Session

from grade_engine.core.clock import now
from grade_engine.core.errors import ConfigurationError, DataIntegrityError, NotFound
from grade_engine.db.models import (
    ColumnAggregationEnum,
    ColumnKindEnum,
    ColumnQuizMapping,
    CourseGradeResultHistory,
    GradeStatusEnum,
)
from grade_engine.services.course_grades import (
    ScoredQuiz,
    aggregate_column,
    combine_columns,
    grade_history,
    letter_grade,
    recompute_course_grade,
    recompute_course_grades,
)
from grade_engine.services.grade_columns import (
    Unmapped,
    column_for_quiz,
    effective_weights,
    load_course_columns,
)
from grade_engine.services.quiz_results import recompute_quiz_result


def _complete_quiz(db, make, course, learner, earned: float, max_points: float = 10):
    """One-question quiz fully answered, QuizResult recomputed."""
    q = make.question(max_points=max_points)
    quiz = make.quiz(course, [q])
    make.attempt(learner, quiz, q, earned)
    recompute_quiz_result(db, learner.id, quiz.id)
    return quiz


# ── Grade Column Mapper ───────────────────────────────────────────────────────


class TestColumnMapper:
    def test_column_lookup(self, db: Session, make):
        course = make.course()
        quiz, stray = make.quiz(course), make.quiz(course)
        column = make.column(course, "Process", [quiz], weight=100)

        assert column_for_quiz(db, quiz.id, course.id).id == column.id
        assert column_for_quiz(db, stray.id, course.id) is Unmapped
        assert load_course_columns(db, course.id).unmapped_quiz_ids == [stray.id]

    def test_quiz_in_two_columns_is_integrity_error(self, db: Session, make):
        course = make.course()
        quiz = make.quiz(course)
        make.column(course, "A", [quiz], weight=50)
        make.column(course, "B", [quiz], weight=50, order=2)

        with pytest.raises(DataIntegrityError):
            column_for_quiz(db, quiz.id, course.id)
        cmap = load_course_columns(db, course.id)
        assert quiz.id not in cmap.quiz_column

    def test_fallback_weights_from_grade_config(self, db: Session, make):
        course = make.course(grade_config={"process_weight": 40, "final_exam_weight": 60})
        p1 = make.column(course, "Quizzes", kind=ColumnKindEnum.PROCESS)
        p2 = make.column(course, "Labs", kind=ColumnKindEnum.PROCESS, order=2)
        final = make.column(course, "Exam", kind=ColumnKindEnum.FINAL, order=3)

        weights = effective_weights(course, load_course_columns(db, course.id))
        assert weights == {p1.id: 20, p2.id: 20, final.id: 60}

    def test_weights_must_sum_to_100(self, db: Session, make):
        course = make.course()
        make.column(course, "A", weight=30)
        make.column(course, "B", weight=30, order=2)
        with pytest.raises(ConfigurationError):
            effective_weights(course, load_course_columns(db, course.id))

    def test_bad_grade_config(self, db: Session, make):
        course = make.course(grade_config={"process_weight": 70, "final_exam_weight": 70})
        make.column(course, "A")
        with pytest.raises(ConfigurationError):
            effective_weights(course, load_course_columns(db, course.id))


# ── Pure aggregation ──────────────────────────────────────────────────────────


class _Col:
    def __init__(self, aggregation=None, best_n=None):
        self.aggregation = aggregation
        self.best_n = best_n


def _scored(*scores, weights=None):
    weights = weights or [None] * len(scores)
    return [
        ScoredQuiz(quiz_id=i, score=s, earned=s * 10, max_points=10, weight=w)
        for i, (s, w) in enumerate(zip(scores, weights))
    ]


class TestAggregation:
    def test_average(self):
        assert aggregate_column(_scored(0.5, 1.0), _Col()) == 0.75

    def test_weighted_average(self):
        assert aggregate_column(_scored(0.5, 1.0, weights=[3, 1]), _Col()) == 0.625

    def test_best_of_n(self):
        col = _Col(ColumnAggregationEnum.BEST_OF_N, best_n=2)
        assert aggregate_column(_scored(0.2, 0.9, 0.7), col) == 0.8

    def test_sum_is_pooled(self):
        scored = [
            ScoredQuiz(quiz_id=1, score=1.0, earned=5, max_points=5),
            ScoredQuiz(quiz_id=2, score=0.5, earned=10, max_points=20),
        ]
        assert aggregate_column(scored, _Col(ColumnAggregationEnum.SUM)) == 0.6

    def test_empty_column_has_no_value(self):
        assert aggregate_column([], _Col()) is None

    def test_combine_skips_unscored_columns(self):
        assert combine_columns({1: 0.8, 2: None}, {1: 50, 2: 50}) == 0.8
        assert combine_columns({1: 0.8, 2: 0.6}, {1: 50, 2: 50}) == 0.7
        assert combine_columns({1: None}, {1: 100}) is None

    @pytest.mark.parametrize(
        "grade, letter",
        [(0.95, "A+"), (0.86, "A"), (0.8, "B+"), (0.7, "B"), (0.55, "C"), (0.5, "D+"), (0.3, "F"), (None, None)],
    )
    def test_letter_grade(self, grade, letter):
        assert letter_grade(grade) == letter


# ── Recompute + history ───────────────────────────────────────────────────────


class TestCourseGrade:
    def _course(self, db, make):
        course = make.course()
        learner = make.learner()
        make.enroll(learner, course)
        process_quiz = _complete_quiz(db, make, course, learner, 8)
        final_quiz = _complete_quiz(db, make, course, learner, 6)
        make.column(course, "Process", [process_quiz], weight=50)
        make.column(course, "Final", [final_quiz], kind=ColumnKindEnum.FINAL, weight=50, order=2)
        return course, learner

    def test_weighted_grade(self, db: Session, make):
        course, learner = self._course(db, make)
        outcome = recompute_course_grade(db, learner.id, course.id)
        assert outcome.result.grade == pytest.approx(0.7)
        assert outcome.result.status == GradeStatusEnum.COMPLETE
        assert outcome.result.letter_grade == "B"
        assert outcome.history is None

    def test_missing_column_is_not_zero(self, db: Session, make):
        course = make.course()
        learner = make.learner()
        quiz = _complete_quiz(db, make, course, learner, 8)
        make.column(course, "Process", [quiz], weight=50)
        make.column(course, "Final", [make.quiz(course)], kind=ColumnKindEnum.FINAL, weight=50, order=2)

        outcome = recompute_course_grade(db, learner.id, course.id)
        assert outcome.result.grade == pytest.approx(0.8)
        assert outcome.result.status == GradeStatusEnum.COMPLETE

    def test_nothing_scored_is_incomplete(self, db: Session, make):
        course = make.course()
        learner = make.learner()
        make.column(course, "Process", [make.quiz(course)], weight=100)

        outcome = recompute_course_grade(db, learner.id, course.id)
        assert outcome.result.grade is None
        assert outcome.result.status == GradeStatusEnum.INCOMPLETE

    def test_configuration_error_stored(self, db: Session, make):
        course = make.course()
        learner = make.learner()
        quiz = _complete_quiz(db, make, course, learner, 8)
        make.column(course, "Process", [quiz], weight=40)

        outcome = recompute_course_grade(db, learner.id, course.id)
        assert isinstance(outcome.config_error, ConfigurationError)
        assert outcome.result.status == GradeStatusEnum.INCOMPLETE
        assert "sum to 40" in outcome.result.error

    def test_required_column_without_quizzes(self, db: Session, make):
        course = make.course()
        learner = make.learner()
        quiz = _complete_quiz(db, make, course, learner, 8)
        make.column(course, "Process", [quiz], weight=50)
        make.column(course, "Final", kind=ColumnKindEnum.FINAL, weight=50, order=2, is_required=True)

        outcome = recompute_course_grade(db, learner.id, course.id)
        assert outcome.config_error is not None
        assert outcome.result.grade is None

    def test_history_written_only_on_change(self, db: Session, make):
        course, learner = self._course(db, make)
        first_grade = recompute_course_grade(db, learner.id, course.id).result.grade
        again = recompute_course_grade(db, learner.id, course.id)
        assert not again.changed
        assert db.query(CourseGradeResultHistory).count() == 0

        # re-weight: Process 80 / Final 20 → 0.76
        for column in course.grade_columns:
            column.weight_percentage = 80 if column.name == "Process" else 20
        db.commit()
        changed = recompute_course_grade(db, learner.id, course.id)

        assert changed.changed
        assert changed.result.grade == pytest.approx(0.76)
        history = grade_history(db, learner.id, course.id)
        assert [h.sequence for h in history] == [1]
        assert history[0].grade == pytest.approx(first_grade)
        assert history[0].status == GradeStatusEnum.COMPLETE

    def test_unmapping_a_quiz_changes_grade(self, db: Session, make):
        course, learner = self._course(db, make)
        recompute_course_grade(db, learner.id, course.id)
        final = next(c for c in course.grade_columns if c.name == "Final")
        db.query(ColumnQuizMapping).filter(ColumnQuizMapping.column_id == final.id).delete()
        db.commit()

        outcome = recompute_course_grade(db, learner.id, course.id)
        assert outcome.result.grade == pytest.approx(0.8)
        assert len(grade_history(db, learner.id, course.id)) == 1

    def test_history_requires_result(self, db: Session, make):
        course = make.course()
        learner = make.learner()
        with pytest.raises(NotFound):
            grade_history(db, learner.id, course.id)

    def test_deleted_course(self, db: Session, make):
        course = make.course()
        course.deleted_at = now()
        db.commit()
        with pytest.raises(NotFound):
            recompute_course_grade(db, make.learner().id, course.id)


def test_course_wide_recompute_reports_per_learner(db: Session, make):
    course = make.course()
    quiz_learners = [make.learner() for _ in range(3)]
    q = make.question()
    quiz = make.quiz(course, [q])
    make.column(course, "All", [quiz], weight=100)
    for i, learner in enumerate(quiz_learners):
        make.enroll(learner, course)
        make.attempt(learner, quiz, q, 4 + 2 * i)
        recompute_quiz_result(db, learner.id, quiz.id)

    report = recompute_course_grades(db, course.id)
    assert report.recomputed == sorted(learner.id for learner in quiz_learners)
    assert report.changed == report.recomputed
    assert report.failed == {}
