"""Integration tests for the engine HTTP surface.

Covers:
  POST /api/engine/attempts
  POST /api/engine/quiz-results/{learner_id}/{quiz_id}/recompute
  POST /api/engine/course-grades/{learner_id}/{course_id}/recompute
  POST /api/engine/courses/{course_id}/grades/recompute
  GET  /api/engine/course-grades/{learner_id}/{course_id}/history
  POST /api/engine/courses/{course_id}/rollups
  POST /api/engine/courses/{course_id}/interventions/evaluate
  POST /api/engine/interventions/{id}/executed | /cancel
  GET  /api/engine/learners/{learner_id}/gamification

Celery entry points are mocked; tests focus on routing, stored state and
the error envelope.
"""

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from conftest import build_cohort
from grade_engine.core.clock import today
from grade_engine.db.models import CourseAnalyticsConfig, QuestionAttempt


def test_health(client: TestClient):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


# ── Attempts ──────────────────────────────────────────────────────────────────


def test_submit_attempt_queues_recompute(client: TestClient, db: Session, make, mock_celery_tasks):
    course = make.course()
    q = make.question(max_points=10)
    quiz = make.quiz(course, [q])
    learner = make.learner()

    resp = client.post(
        "/api/engine/attempts",
        json={"learner_id": learner.id, "quiz_id": quiz.id, "question_id": q.id, "is_correct": True},
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["points_earned"] == 10
    assert data["attempt_index"] == 1
    assert db.query(QuestionAttempt).count() == 1
    mock_celery_tasks["quiz"].delay.assert_called_once_with(learner.id, quiz.id)


def test_duplicate_attempt_is_conflict(client: TestClient, make):
    course = make.course()
    q = make.question()
    quiz = make.quiz(course, [q])
    learner = make.learner()
    body = {
        "learner_id": learner.id, "quiz_id": quiz.id, "question_id": q.id,
        "is_correct": False, "attempt_index": 1,
    }
    assert client.post("/api/engine/attempts", json=body).status_code == 201

    resp = client.post("/api/engine/attempts", json=body)
    assert resp.status_code == 409
    err = resp.json()
    assert err["success"] is False
    assert err["error_code"] == "duplicate"
    assert err["details"]["entity"] == "question_attempt"


def test_attempt_on_unknown_quiz(client: TestClient, make):
    learner = make.learner()
    resp = client.post(
        "/api/engine/attempts",
        json={"learner_id": learner.id, "quiz_id": 404, "question_id": 1, "is_correct": True},
    )
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "not_found"


def test_attempt_on_unknown_question(client: TestClient, make):
    quiz = make.quiz(make.course())
    learner = make.learner()
    resp = client.post(
        "/api/engine/attempts",
        json={"learner_id": learner.id, "quiz_id": quiz.id, "question_id": 404, "is_correct": True},
    )
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "data_integrity"


# ── Recompute / history ───────────────────────────────────────────────────────


def test_recompute_quiz_cascades_to_course_grade(client: TestClient, make, mock_celery_tasks):
    course = make.course()
    q = make.question()
    quiz = make.quiz(course, [q])
    learner = make.learner()
    make.attempt(learner, quiz, q, 7)

    resp = client.post(f"/api/engine/quiz-results/{learner.id}/{quiz.id}/recompute")
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["coalesced"] is False
    assert data["result"]["score"] == 0.7
    assert data["result"]["status"] == "completed"
    mock_celery_tasks["grade"].delay.assert_called_once_with(learner.id, course.id)

    again = client.post(f"/api/engine/quiz-results/{learner.id}/{quiz.id}/recompute")
    assert again.json()["coalesced"] is True
    assert mock_celery_tasks["grade"].delay.call_count == 1


def test_course_grade_recompute_and_history(client: TestClient, db: Session, make):
    course, _, quiz, _, learners = build_cohort(db, make, points=(16,))
    column = make.column(course, "Process", [quiz], weight=100)
    learner = learners[0]

    resp = client.post(f"/api/engine/course-grades/{learner.id}/{course.id}/recompute")
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["result"]["grade"] == 0.8
    assert body["result"]["letter_grade"] == "B+"
    assert body["history_sequence"] is None

    column.weight_percentage = 60
    db.commit()
    resp = client.post(f"/api/engine/course-grades/{learner.id}/{course.id}/recompute")
    assert resp.json()["result"]["status"] == "incomplete"
    assert resp.json()["history_sequence"] == 1

    history = client.get(f"/api/engine/course-grades/{learner.id}/{course.id}/history")
    assert history.status_code == 200
    assert [h["grade"] for h in history.json()] == [0.8]


def test_history_without_grade_is_404(client: TestClient, make):
    course = make.course()
    learner = make.learner()
    resp = client.get(f"/api/engine/course-grades/{learner.id}/{course.id}/history")
    assert resp.status_code == 404


def test_course_wide_recompute(client: TestClient, db: Session, make):
    course, _, quiz, _, learners = build_cohort(db, make)
    make.column(course, "Process", [quiz], weight=100)

    resp = client.post(f"/api/engine/courses/{course.id}/grades/recompute")
    assert resp.status_code == 200
    assert sorted(resp.json()["recomputed"]) == sorted(learner.id for learner in learners)


# ── Rollups / interventions ───────────────────────────────────────────────────


def test_rollup_endpoint(client: TestClient, db: Session, make):
    course, lo, *_ = build_cohort(db, make)
    resp = client.post(
        f"/api/engine/courses/{course.id}/rollups",
        params={"snapshot_date": today().isoformat()},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["sample_size"] == 3
    assert data["low_confidence"] is True
    assert [r["lo_id"] for r in data["lo_rollups"]] == [lo.id]


def test_intervention_flow(client: TestClient, db: Session, make):
    course, *_ = build_cohort(db, make)
    db.add(
        CourseAnalyticsConfig(
            course_id=course.id,
            thresholds={"min_sample_size": 2},
            feature_flags={"low_score": True},
        )
    )
    db.commit()
    client.post(f"/api/engine/courses/{course.id}/rollups")

    resp = client.post(f"/api/engine/courses/{course.id}/interventions/evaluate")
    assert resp.status_code == 200, resp.text
    created = {iv["type"]: iv for iv in resp.json()["created"]}
    assert created["low_score"]["status"] == "scheduled"
    assert created["low_mastery"]["status"] == "pending"

    executed = client.post(f"/api/engine/interventions/{created['low_score']['id']}/executed", json={})
    assert executed.status_code == 200
    assert executed.json()["status"] == "executed"

    # pending → executed is not a legal move
    illegal = client.post(f"/api/engine/interventions/{created['low_mastery']['id']}/executed")
    assert illegal.status_code == 409
    assert illegal.json()["error_code"] == "invalid_transition"

    cancelled = client.post(f"/api/engine/interventions/{created['low_mastery']['id']}/cancel")
    assert cancelled.json()["status"] == "cancelled"

    listing = client.get(f"/api/engine/courses/{course.id}/interventions")
    assert {iv["status"] for iv in listing.json()} == {"executed", "cancelled"}


# ── Gamification ──────────────────────────────────────────────────────────────


def test_gamification_summary(client: TestClient, db: Session, make):
    _, _, _, _, learners = build_cohort(db, make, points=(20,))
    resp = client.get(f"/api/engine/learners/{learners[0].id}/gamification")
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_points"] == 20
    assert data["current_level"] == 1
    assert data["next_level_at"] == 100
    assert data["stats"]["total_quizzes_completed"] == 1


def test_gamification_unknown_learner(client: TestClient):
    assert client.get("/api/engine/learners/404/gamification").status_code == 404
