from __future__ import annotations

from dataclasses import replace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from elms.controllers.timetable_controller import router as timetable_router
from elms.repository.data_repository import DataRepository
from elms.services.auth_service import AuthService
from elms.services.timetable_service import TimetableService
from elms.utils.config import get_settings


ADMIN_TOKEN = "secret-admin-token"
OFFICER_TOKEN = "secret-officer-token"
VIEWER_TOKEN = "secret-viewer-token"

GENERATE_PAYLOAD = {
    "title": "Semester 1 2026",
    "semester": 1,
    "academic_year": "2025/2026",
    "start_date": "2026-05-04",
    "end_date": "2026-05-08",
}


def _build_test_settings(tmp_path, filename: str, **tokens):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        slot_pattern=("09:00-12:00", "14:00-17:00"),
        include_weekends=False,
        students_per_invigilator=60,
        min_invigilators_per_venue=1,
        publish_requires_approval=False,
        admin_token=tokens.get("admin_token"),
        officer_token=tokens.get("officer_token"),
        viewer_token=tokens.get("viewer_token"),
    )


def _build_test_app(tmp_path, **tokens) -> FastAPI:
    settings = _build_test_settings(tmp_path, "timetable_flow.db", **tokens)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_demo_data()

    app = FastAPI()
    app.include_router(timetable_router)
    app.state.repository = repository
    app.state.auth_service = AuthService(settings=settings)
    app.state.timetable_service = TimetableService(repository=repository, settings=settings)
    return app


def _login(client: TestClient, token: str) -> dict[str, str]:
    response = client.post("/login", json={"token": token})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_timetable_end_to_end_flow(tmp_path) -> None:
    app = _build_test_app(
        tmp_path,
        admin_token=ADMIN_TOKEN,
        officer_token=OFFICER_TOKEN,
        viewer_token=VIEWER_TOKEN,
    )
    client = TestClient(app)

    unauthorized = client.get("/timetables")
    assert unauthorized.status_code == 401

    bad_login = client.post("/login", json={"token": "wrong-token"})
    assert bad_login.status_code == 401

    viewer = _login(client, VIEWER_TOKEN)
    officer = _login(client, OFFICER_TOKEN)
    admin = _login(client, ADMIN_TOKEN)

    forbidden = client.post("/timetables/generate", json=GENERATE_PAYLOAD, headers=viewer)
    assert forbidden.status_code == 403

    generated = client.post("/timetables/generate", json=GENERATE_PAYLOAD, headers=officer)
    assert generated.status_code == 201, generated.text
    body = generated.json()
    timetable = body["timetable"]
    timetable_id = timetable["timetable_id"]
    assert timetable["revision"] == 1
    assert timetable["total_exams"] == 6
    assert body["failures"] == []
    assert all(conflict["severity"] != "HARD" for conflict in body["conflicts"])

    listed = client.get("/timetables", headers=viewer)
    assert listed.status_code == 200
    assert [item["timetable_id"] for item in listed.json()] == [timetable_id]

    fetched = client.get(f"/timetables/{timetable_id}", headers=viewer)
    assert fetched.status_code == 200
    assert fetched.json()["placements"] == timetable["placements"]

    assert client.get("/timetables/999", headers=viewer).status_code == 404

    conflicts = client.get(f"/timetables/{timetable_id}/conflicts", headers=viewer)
    assert conflicts.status_code == 200

    statistics = client.get(f"/timetables/{timetable_id}/statistics", headers=viewer)
    assert statistics.status_code == 200
    assert statistics.json()["total_exams"] == 6

    placement = timetable["placements"][0]
    staff_id = placement["assignments"][-1]["staff_id"]
    removed = client.delete(
        f"/timetables/{timetable_id}/placements/{placement['placement_id']}/invigilators/{staff_id}",
        params={"expected_revision": 1},
        headers=officer,
    )
    assert removed.status_code == 200, removed.text
    assert removed.json()["timetable"]["revision"] == 2

    stale = client.post(
        f"/timetables/{timetable_id}/placements/{placement['placement_id']}/invigilators",
        json={"staff_id": staff_id, "role": "INVIGILATOR", "expected_revision": 1},
        headers=officer,
    )
    assert stale.status_code == 409

    restored = client.post(
        f"/timetables/{timetable_id}/placements/{placement['placement_id']}/invigilators",
        json={"staff_id": staff_id, "role": "INVIGILATOR", "expected_revision": 2},
        headers=officer,
    )
    assert restored.status_code == 200, restored.text

    submitted = client.post(f"/timetables/{timetable_id}/submit", json={}, headers=officer)
    assert submitted.status_code == 200
    assert submitted.json()["status"] == "PENDING_APPROVAL"

    assert client.post(f"/timetables/{timetable_id}/approve", json={}, headers=officer).status_code == 403

    approved = client.post(f"/timetables/{timetable_id}/approve", json={}, headers=admin)
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"

    published = client.post(f"/timetables/{timetable_id}/publish", json={}, headers=admin)
    assert published.status_code == 200, published.text
    assert published.json()["status"] == "PUBLISHED"
    assert published.json()["published_at"] is not None

    frozen = client.post(
        f"/timetables/{timetable_id}/placements/{placement['placement_id']}/invigilators",
        json={
            "staff_id": staff_id,
            "role": "INVIGILATOR",
            "expected_revision": published.json()["revision"],
        },
        headers=officer,
    )
    assert frozen.status_code == 409

    revision = client.post(f"/timetables/{timetable_id}/revisions", headers=officer)
    assert revision.status_code == 201
    assert revision.json()["version"] == 2
    assert revision.json()["previous_version_id"] == timetable_id

    advanced = client.post(
        "/timetables/advance-statuses",
        json={"now": "2026-05-04T09:30:00"},
        headers=admin,
    )
    assert advanced.status_code == 200
    assert advanced.json()["advanced"] == {str(timetable_id): ["IN_PROGRESS"]}

    audit = client.get(f"/timetables/{timetable_id}/audit", headers=viewer)
    assert audit.status_code == 200
    event_types = [event["event_type"] for event in audit.json()]
    assert event_types[0] == "TIMETABLE_GENERATED"
    assert "TIMETABLE_PUBLISHED" in event_types


def test_error_mapping_for_generation(tmp_path) -> None:
    app = _build_test_app(tmp_path)
    client = TestClient(app)

    no_requirements = client.post(
        "/timetables/generate",
        json={**GENERATE_PAYLOAD, "semester": 2},
    )
    assert no_requirements.status_code == 400
    assert no_requirements.json()["detail"]["violations"]

    bad_window = client.post(
        "/timetables/generate",
        json={**GENERATE_PAYLOAD, "start_date": "2026-05-08", "end_date": "2026-05-04"},
    )
    assert bad_window.status_code == 422

    clash = client.post(
        "/timetables/generate",
        json={
            **GENERATE_PAYLOAD,
            "end_date": "2026-05-04",
            "auto_resolve_conflicts": False,
            "requirements": [
                {
                    "course_id": 1,
                    "course_code": "CSC101",
                    "level": 100,
                    "semester": 1,
                    "expected_students": 30,
                    "program_ids": [1],
                },
                {
                    "course_id": 2,
                    "course_code": "CSC102",
                    "level": 100,
                    "semester": 1,
                    "expected_students": 20,
                    "program_ids": [1],
                },
            ],
        },
    )
    assert clash.status_code == 422
    assert clash.json()["detail"]["course_ids"] == [2]


def test_auth_disabled_allows_anonymous_access(tmp_path) -> None:
    app = _build_test_app(tmp_path)
    client = TestClient(app)

    assert client.get("/timetables").status_code == 200
    login = client.post("/login", json={"token": "anything"})
    assert login.status_code == 401


def test_placement_edit_endpoints(tmp_path) -> None:
    app = _build_test_app(tmp_path)
    client = TestClient(app)

    generated = client.post("/timetables/generate", json=GENERATE_PAYLOAD)
    assert generated.status_code == 201, generated.text
    timetable = generated.json()["timetable"]
    timetable_id = timetable["timetable_id"]
    by_course = {item["course_id"]: item for item in timetable["placements"]}
    friday = {"exam_date": "2026-05-08", "start_time": "09:00:00", "end_time": "12:00:00"}

    moved = client.patch(
        f"/timetables/{timetable_id}/placements/{by_course[104]['placement_id']}",
        json={"slot": friday, "room_ids": [3], "expected_revision": 1},
    )
    assert moved.status_code == 200, moved.text
    moved_body = moved.json()["timetable"]
    assert moved_body["revision"] == 2
    physics = next(item for item in moved_body["placements"] if item["course_id"] == 104)
    assert physics["exam_date"] == "2026-05-08"
    assert [room["room_id"] for room in physics["rooms"]] == [3]

    clash = client.patch(
        f"/timetables/{timetable_id}/placements/{by_course[102]['placement_id']}",
        json={
            "slot": {
                "exam_date": by_course[101]["exam_date"],
                "start_time": by_course[101]["start"][11:19],
                "end_time": by_course[101]["end"][11:19],
            },
            "expected_revision": 2,
        },
    )
    assert clash.status_code == 422
    assert any(
        conflict["kind"] == "STUDENT_DOUBLE_BOOKING" for conflict in clash.json()["detail"]["conflicts"]
    )

    empty_move = client.patch(
        f"/timetables/{timetable_id}/placements/{by_course[102]['placement_id']}",
        json={"expected_revision": 2},
    )
    assert empty_move.status_code == 422

    removed = client.delete(
        f"/timetables/{timetable_id}/placements/{by_course[104]['placement_id']}",
        params={"expected_revision": 2},
    )
    assert removed.status_code == 200, removed.text
    assert removed.json()["timetable"]["total_exams"] == 5

    added = client.post(
        f"/timetables/{timetable_id}/placements",
        json={"course_id": 104, "slot": friday, "room_ids": [3], "expected_revision": 3},
    )
    assert added.status_code == 201, added.text
    assert added.json()["timetable"]["total_exams"] == 6

    duplicate = client.post(
        f"/timetables/{timetable_id}/placements",
        json={"course_id": 104, "slot": friday, "room_ids": [2], "expected_revision": 4},
    )
    assert duplicate.status_code == 400
