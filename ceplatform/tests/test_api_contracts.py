"""
HTTP contract tests

Drive the FastAPI app in-process through httpx.ASGITransport and verify
status codes, the error envelope and the JSON shapes clients depend on.
"""
import random

import httpx
import pytest
import pytest_asyncio

from ceplatform.errors import ErrorCode
from ceplatform.main import create_app
from ceplatform.security.identity import create_access_token

BASE_URL = "http://testserver"


def bearer(user_id, settings):
    return {"Authorization": f"Bearer {create_access_token(user_id, settings)}"}


async def make_client(settings, database, publisher, clock):
    app = create_app(settings, database=database, publisher=publisher, clock=clock, rng=random.Random(11))
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL)


@pytest_asyncio.fixture
async def client(settings, database, publisher, clock):
    async with await make_client(settings, database, publisher, clock) as c:
        yield c


@pytest_asyncio.fixture
async def learner_headers(settings, learner_id):
    return bearer(learner_id, settings)


@pytest_asyncio.fixture
async def admin_headers(settings, admin_id):
    return bearer(admin_id, settings)


async def complete_lessons(client, headers, enrollment_id, lesson_ids):
    for lesson_id in lesson_ids:
        r = await client.post(
            f"/api/enrollments/{enrollment_id}/lessons/{lesson_id}/time", json={"seconds": 60}, headers=headers
        )
        assert r.status_code == 200
        r = await client.post(f"/api/enrollments/{enrollment_id}/lessons/{lesson_id}/complete", headers=headers)
        assert r.status_code == 200


class TestHealth:

    async def test_health_pings_database(self, client):
        r = await client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"
        assert r.json()["database"] is True

    async def test_error_summary(self, client):
        r = await client.get("/api/errors/health")
        assert r.status_code == 200

    async def test_error_envelope_is_documented(self, settings, database, publisher, clock):
        app = create_app(settings, database=database, publisher=publisher, clock=clock)
        schema = app.openapi()

        assert "ErrorResponse" in schema["components"]["schemas"]
        start = schema["paths"]["/api/quizzes/start"]["post"]["responses"]
        assert {"401", "403", "404", "409"} <= set(start)
        assert start["403"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")


class TestAuthentication:

    async def test_missing_token_is_401(self, client, enrollment_id):
        r = await client.get(f"/api/enrollments/{enrollment_id}/progress")
        assert r.status_code == 401
        assert r.json()["code"] == ErrorCode.AUTH_REQUIRED
        assert r.json()["success"] is False

    async def test_bad_token_is_401(self, client, enrollment_id):
        r = await client.get(
            f"/api/enrollments/{enrollment_id}/progress", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert r.status_code == 401
        assert r.json()["code"] == ErrorCode.AUTH_INVALID

    async def test_admin_routes_reject_learners(self, client, learner_headers, enrollment_id):
        r = await client.post(
            f"/api/admin/enrollments/{enrollment_id}/reset", json={"reason": "testing"}, headers=learner_headers
        )
        assert r.status_code == 403
        assert r.json()["code"] == ErrorCode.FORBIDDEN


class TestEnrollmentEndpoints:

    async def test_enroll_is_idempotent(self, client, learner_headers, fl_course):
        first = await client.post("/api/enrollments", json={"course_id": fl_course.course_id}, headers=learner_headers)
        second = await client.post("/api/enrollments", json={"course_id": fl_course.course_id}, headers=learner_headers)

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["expires_at"].startswith("2027-01-15")
        assert second.json()["created"] is False
        assert second.json()["id"] == first.json()["id"]

    async def test_learner_cannot_enroll_someone_else(self, client, learner_headers, admin_id, fl_course):
        r = await client.post(
            "/api/enrollments", json={"course_id": fl_course.course_id, "user_id": admin_id}, headers=learner_headers
        )
        assert r.status_code == 403
        assert r.json()["code"] == ErrorCode.OWNERSHIP_VIOLATION

    async def test_validation_errors_use_envelope(self, client, learner_headers, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]
        r = await client.post(
            f"/api/enrollments/{enrollment_id}/lessons/{lesson_id}/time", json={"seconds": -5}, headers=learner_headers
        )
        assert r.status_code == 422
        body = r.json()
        assert body["code"] == ErrorCode.VALIDATION_ERROR
        assert body["details"]["errors"][0]["loc"][-1] == "seconds"

    async def test_minimum_time_error_body(self, client, learner_headers, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]
        r = await client.post(f"/api/enrollments/{enrollment_id}/lessons/{lesson_id}/complete", headers=learner_headers)
        assert r.status_code == 403
        assert r.json()["code"] == ErrorCode.MINIMUM_TIME_NOT_MET
        assert r.json()["details"]["required_seconds"] == 60

    async def test_unknown_enrollment_is_404(self, client, learner_headers):
        r = await client.get("/api/enrollments/9999/progress", headers=learner_headers)
        assert r.status_code == 404
        assert r.json()["code"] == ErrorCode.ENROLLMENT_NOT_FOUND

    async def test_eligibility_shape(self, client, learner_headers, enrollment_id):
        r = await client.get(f"/api/enrollments/{enrollment_id}/final-exam/eligibility", headers=learner_headers)
        assert r.status_code == 200
        body = r.json()
        assert body["permitted"] is True
        assert body["form_to_use"] == "A"
        assert body["max_attempts"] == 2
        assert body["exam_unlocked"] is False
        assert body["jurisdiction"] == "FL"


class TestQuizEndpoints:

    async def test_unit_quiz_round_trip(self, client, learner_headers, enrollment_id, fl_course):
        unit_id = fl_course.unit_ids[0]
        await complete_lessons(client, learner_headers, enrollment_id, fl_course.lesson_ids[unit_id])

        r = await client.post(
            "/api/quizzes/start",
            json={"enrollment_id": enrollment_id, "bank_id": fl_course.unit_bank_ids[unit_id]},
            headers=learner_headers,
        )
        assert r.status_code == 200
        session = r.json()
        assert len(session["questions"]) == 10
        assert set(session["questions"][0]) == {"id", "prompt", "options"}

        for question in session["questions"]:
            r = await client.post(
                f"/api/quizzes/attempts/{session['attempt_id']}/answers",
                json={"question_id": question["id"], "selected_option": 0},
                headers=learner_headers,
            )
            assert r.status_code == 200
            assert r.json()["feedback"]["is_correct"] is True

        r = await client.post(
            f"/api/quizzes/attempts/{session['attempt_id']}/complete", json={}, headers=learner_headers
        )
        assert r.status_code == 200
        assert r.json()["score"] == 100
        assert r.json()["unlocked_unit_id"] == fl_course.unit_ids[1]

        again = await client.post(
            f"/api/quizzes/attempts/{session['attempt_id']}/complete", json={}, headers=learner_headers
        )
        assert again.status_code == 409
        assert again.json()["code"] == ErrorCode.ATTEMPT_ALREADY_COMPLETED

        progress = await client.get(f"/api/enrollments/{enrollment_id}/progress", headers=learner_headers)
        assert [u["status"] for u in progress.json()["units"]] == ["completed", "in_progress", "locked"]

    async def test_locked_unit_quiz_is_403(self, client, learner_headers, enrollment_id, fl_course):
        r = await client.post(
            "/api/quizzes/start",
            json={"enrollment_id": enrollment_id, "bank_id": fl_course.unit_bank_ids[fl_course.unit_ids[1]]},
            headers=learner_headers,
        )
        assert r.status_code == 403
        assert r.json()["code"] == ErrorCode.UNIT_LOCKED

    async def test_quiz_start_is_rate_limited(self, settings, database, publisher, clock, learner_headers, enrollment_id, fl_course):
        limited = settings.with_overrides(rate_limit_enabled=True, quiz_start_rate_limit="2/minute")
        payload = {"enrollment_id": enrollment_id, "bank_id": fl_course.unit_bank_ids[fl_course.unit_ids[0]]}

        async with await make_client(limited, database, publisher, clock) as c:
            codes = [
                (await c.post("/api/quizzes/start", json=payload, headers=learner_headers)).status_code
                for _ in range(3)
            ]

        assert codes == [403, 403, 429]


class TestAdminEndpoints:

    async def test_override_audit_and_integrity(self, client, admin_headers, enrollment_id, fl_course):
        unit_id = fl_course.unit_ids[0]
        r = await client.post(
            f"/api/admin/enrollments/{enrollment_id}/units/{unit_id}/status",
            json={"status": "completed", "reason": "Transfer credit"},
            headers=admin_headers,
        )
        assert r.status_code == 200
        assert r.json() == {
            "enrollment_id": enrollment_id, "unit_id": unit_id, "status": "completed", "quiz_passed": True
        }

        audit = await client.get(f"/api/admin/enrollments/{enrollment_id}/audit", headers=admin_headers)
        assert [e["action"] for e in audit.json()["entries"]] == ["unit_status_override"]

        report = await client.get(f"/api/admin/enrollments/{enrollment_id}/integrity", headers=admin_headers)
        assert report.status_code == 200
        assert report.json()["ok"] is True
        assert report.json()["violations"] == []

    async def test_invalid_status_is_422(self, client, admin_headers, enrollment_id, fl_course):
        r = await client.post(
            f"/api/admin/enrollments/{enrollment_id}/units/{fl_course.unit_ids[0]}/status",
            json={"status": "skipped", "reason": "nope"},
            headers=admin_headers,
        )
        assert r.status_code == 422

    async def test_reset_endpoint(self, client, admin_headers, enrollment_id):
        r = await client.post(
            f"/api/admin/enrollments/{enrollment_id}/reset", json={"reason": "Support ticket"}, headers=admin_headers
        )
        assert r.status_code == 200
        assert r.json()["reset_count"] == 1
        assert r.json()["final_exam_attempts"] == 0
