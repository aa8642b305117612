"""
Lessons API: contract tests against the in-memory backend.

Focus:
    - CRUD status codes and JSON shapes, including PATCH tri-state semantics.
    - The gate: unknown ids, foreign lessons and insufficient levels are
      indistinguishable (404, same body) for the caller.
    - Per-date listing and per-lesson permission management.
"""
from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport

from web import main
from web.auth_utils import SESSION_COOKIE_NAME
from web.routes import lessons as lesson_routes

pytestmark = pytest.mark.anyio("asyncio")

UNKNOWN_ID = "00000000-0000-0000-0000-000000000001"

WEEKLY_LESSON = {
    "title": "Chemistry",
    "description": "Acids and bases",
    "start_time": "10:00",
    "end_time": "10:45",
    "repeats": [{"id": "r1", "start": "2026-01-05", "unit": "weekly"}],
    "singles": [
        {"date": "2026-01-12", "kind": "cancellation", "repeat_id": "r1"},
        {"date": "2026-01-19", "kind": "override", "repeat_id": "r1", "start_time": "12:00", "end_time": "12:45"},
    ],
}


def _client(account_id: str | None = None) -> httpx.AsyncClient:
    client = httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")
    if account_id:
        sess = main.SESSION_STORE.create(sub=account_id, name=account_id)
        client.cookies.set(SESSION_COOKIE_NAME, sess.session_id)
    return client


async def _create(client: httpx.AsyncClient, payload: dict | None = None) -> dict:
    resp = await client.put("/lesson", json=payload or WEEKLY_LESSON)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.anyio
async def test_requests_without_session_are_rejected():
    async with _client() as client:
        resp = await client.get("/lessons", params={"date": "2026-01-05"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "unauthenticated"}


@pytest.mark.anyio
async def test_create_then_get_round_trips_lesson():
    async with _client("alice") as client:
        created = await _create(client)
        assert created["owner_id"] == "alice"
        assert created["permission"] == "read-write"
        assert created["start_time"] == "10:00:00"
        resp = await client.get(f"/lesson/{created['id']}")
    assert resp.status_code == 200
    body = resp.json()
    assert resp.headers.get("Cache-Control") == "private, no-store"
    assert body["title"] == "Chemistry"
    assert body["repeats"] == [{"id": "r1", "start": "2026-01-05", "end": None, "unit": "weekly", "step": 1}]
    assert [s["kind"] for s in body["singles"]] == ["cancellation", "override"]


@pytest.mark.anyio
async def test_create_rejects_invalid_rule_with_field_and_detail():
    payload = {"title": "Bad", "repeats": [{"start": "2026-01-05", "unit": "weekly", "step": 0}]}
    async with _client("alice") as client:
        resp = await client.put("/lesson", json=payload)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "bad_request"
    assert body["detail"] == "invalid_step"
    assert body["field"] == "repeats[0].step"


@pytest.mark.anyio
async def test_duplicate_single_date_names_the_date():
    payload = {"title": "Dup", "singles": [{"date": "2026-05-04"}, {"date": "2026-05-04"}]}
    async with _client("alice") as client:
        resp = await client.put("/lesson", json=payload)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "duplicate_single_date"
    assert resp.json()["date"] == "2026-05-04"


@pytest.mark.anyio
async def test_malformed_body_is_a_bad_request_not_422():
    async with _client("alice") as client:
        resp = await client.put("/lesson", json={"title": "X", "repeats": [{"start": "2026-01-05", "unit": "daily", "step": "many"}]})
    assert resp.status_code == 400
    assert resp.json() == {"error": "bad_request", "detail": "invalid_payload"}


@pytest.mark.anyio
async def test_lessons_for_date_resolves_cancellation_and_override():
    async with _client("alice") as client:
        created = await _create(client)
        regular = await client.get("/lessons", params={"date": "2026-01-05"})
        cancelled = await client.get("/lessons", params={"date": "2026-01-12"})
        moved = await client.get("/lessons", params={"date": "2026-01-19"})
    assert regular.status_code == 200
    assert [(v["lesson_id"], v["source"], v["permission"]) for v in regular.json()] == [(created["id"], "repeat", "read-write")]
    assert cancelled.json() == []
    assert moved.json()[0]["start_time"] == "12:00:00"
    assert moved.json()[0]["title"] == "Chemistry"


@pytest.mark.anyio
@pytest.mark.parametrize("raw", ["2026-13-01", "yesterday", ""])
async def test_lessons_for_date_rejects_malformed_dates(raw):
    async with _client("alice") as client:
        resp = await client.get("/lessons", params={"date": raw})
    assert resp.status_code == 400
    assert resp.json() == {"error": "bad_request", "detail": "invalid_date"}


@pytest.mark.anyio
async def test_patch_distinguishes_omitted_from_null():
    async with _client("alice") as client:
        created = await _create(client)
        lesson_id = created["id"]
        resp = await client.patch(f"/lesson/{lesson_id}", json={"description": None})
        assert resp.status_code == 200
        body = resp.json()
        assert body["description"] is None
        assert body["title"] == "Chemistry"
        assert len(body["repeats"]) == 1

        resp = await client.patch(f"/lesson/{lesson_id}", json={"title": "Organic Chemistry"})
        assert resp.json()["description"] is None

        empty = await client.patch(f"/lesson/{lesson_id}", json={})
        null_title = await client.patch(f"/lesson/{lesson_id}", json={"title": None})
    assert empty.status_code == 400 and empty.json()["detail"] == "empty_payload"
    assert null_title.status_code == 400 and null_title.json()["detail"] == "invalid_title"


@pytest.mark.anyio
async def test_patch_with_empty_repeats_removes_rule_occurrences():
    async with _client("alice") as client:
        created = await _create(client)
        resp = await client.patch(f"/lesson/{created['id']}", json={"repeats": []})
        assert resp.status_code == 200
        assert resp.json()["repeats"] == []
        assert resp.json()["singles"] == []
        listing = await client.get("/lessons", params={"date": "2026-01-26"})
    assert listing.json() == []


@pytest.mark.anyio
async def test_patch_with_null_collections_keeps_rules_and_singles():
    async with _client("alice") as client:
        created = await _create(client)
        lesson_id = created["id"]
        resp = await client.patch(f"/lesson/{lesson_id}", json={"title": "Lab", "repeats": None, "singles": None})
        only_null = await client.patch(f"/lesson/{lesson_id}", json={"repeats": None})
        stored = await client.get(f"/lesson/{lesson_id}")
        listing = await client.get("/lessons", params={"date": "2026-01-26"})
    assert resp.status_code == 200
    assert resp.json()["title"] == "Lab"
    assert only_null.status_code == 400 and only_null.json()["detail"] == "empty_payload"
    assert stored.json()["repeats"] == created["repeats"]
    assert stored.json()["singles"] == created["singles"]
    assert [v["source"] for v in listing.json()] == ["repeat"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload, field",
    [
        ({"title": "Zoned", "start_time": "10:00+01:00", "end_time": "10:45"}, "start_time"),
        (
            {
                "title": "Zoned",
                "start_time": "10:00",
                "end_time": "10:45",
                "repeats": [{"id": "r1", "start": "2026-01-05", "unit": "weekly"}],
                "singles": [{"date": "2026-01-19", "kind": "override", "repeat_id": "r1", "start_time": "12:00", "end_time": "12:45+02:00"}],
            },
            "singles[0].end_time",
        ),
    ],
)
async def test_times_with_an_offset_are_a_bad_request(payload, field):
    async with _client("alice") as client:
        created = await client.put("/lesson", json=payload)
        lesson = await _create(client)
        patched = await client.patch(f"/lesson/{lesson['id']}", json={"end_time": "10:45Z"})
    assert created.status_code == 400
    assert created.json() == {"error": "bad_request", "detail": "invalid_time", "field": field}
    assert patched.status_code == 400
    assert patched.json()["field"] == "end_time"
    assert lesson_routes._get_repo().get_lesson(lesson["id"]).end_time.isoformat() == "10:45:00"


@pytest.mark.anyio
async def test_delete_then_get_is_not_found():
    async with _client("alice") as client:
        created = await _create(client)
        resp = await client.delete(f"/lesson/{created['id']}")
        assert resp.status_code == 204
        again = await client.get(f"/lesson/{created['id']}")
    assert again.status_code == 404


@pytest.mark.anyio
async def test_gate_hides_existence_from_unauthorised_callers():
    async with _client("alice") as owner:
        created = await _create(owner)
    async with _client("mallory") as stranger:
        foreign = await stranger.get(f"/lesson/{created['id']}")
        unknown = await stranger.get(f"/lesson/{UNKNOWN_ID}")
        malformed = await stranger.get("/lesson/not-a-uuid")
        listing = await stranger.get("/lessons", params={"date": "2026-01-05"})
    assert foreign.status_code == unknown.status_code == malformed.status_code == 404
    assert foreign.json() == unknown.json() == malformed.json() == {"error": "not_found"}
    assert listing.json() == []


@pytest.mark.anyio
async def test_read_grant_allows_reads_and_hides_writes():
    async with _client("alice") as owner:
        created = await _create(owner)
        lesson_id = created["id"]
        grant = await owner.put(f"/lesson/{lesson_id}/permissions/bob", json={"level": "read"})
        assert grant.status_code == 200
        assert grant.json() == {"account_id": "bob", "level": "read"}
    async with _client("bob") as reader:
        read = await reader.get(f"/lesson/{lesson_id}")
        listing = await reader.get("/lessons", params={"date": "2026-01-05"})
        patch = await reader.patch(f"/lesson/{lesson_id}", json={"title": "Hijack"})
        delete = await reader.delete(f"/lesson/{lesson_id}")
        unknown_patch = await reader.patch(f"/lesson/{UNKNOWN_ID}", json={"title": "Hijack"})
    assert read.status_code == 200 and read.json()["permission"] == "read"
    assert listing.json()[0]["permission"] == "read"
    # Insufficient level looks exactly like a missing lesson.
    assert patch.status_code == delete.status_code == unknown_patch.status_code == 404
    assert patch.json() == unknown_patch.json()
    assert lesson_routes._get_repo().get_lesson(lesson_id).title == "Chemistry"


@pytest.mark.anyio
async def test_read_write_grant_allows_patch_but_not_owner_change():
    async with _client("alice") as owner:
        created = await _create(owner)
        lesson_id = created["id"]
        await owner.put(f"/lesson/{lesson_id}/permissions/carol", json={"level": "read-write"})
    async with _client("carol") as editor:
        patched = await editor.patch(f"/lesson/{lesson_id}", json={"title": "Shared"})
        owner_change = await editor.put(f"/lesson/{lesson_id}/permissions/alice", json={"level": "read"})
        listing = await editor.get(f"/lesson/{lesson_id}/permissions")
    assert patched.status_code == 200 and patched.json()["title"] == "Shared"
    assert owner_change.status_code == 400
    assert owner_change.json()["detail"] == "owner_permission_immutable"
    assert {"account_id": "alice", "level": "read-write"} in listing.json()
    assert {"account_id": "carol", "level": "read-write"} in listing.json()


@pytest.mark.anyio
async def test_revoking_a_grant_with_none_hides_the_lesson_again():
    async with _client("alice") as owner:
        created = await _create(owner)
        lesson_id = created["id"]
        await owner.put(f"/lesson/{lesson_id}/permissions/bob", json={"level": "read"})
        revoke = await owner.put(f"/lesson/{lesson_id}/permissions/bob", json={"level": "none"})
        bad_level = await owner.put(f"/lesson/{lesson_id}/permissions/bob", json={"level": "admin"})
    assert revoke.status_code == 200
    assert bad_level.status_code == 400
    async with _client("bob") as reader:
        resp = await reader.get(f"/lesson/{lesson_id}")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_cross_origin_write_is_rejected():
    async with _client("alice") as client:
        resp = await client.put("/lesson", json=WEEKLY_LESSON, headers={"Origin": "https://evil.example"})
    assert resp.status_code == 403
    assert resp.json() == {"error": "forbidden", "detail": "csrf_violation"}


@pytest.mark.anyio
async def test_strict_csrf_requires_origin_on_writes(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STRICT_CSRF", "true")
    async with _client("alice") as client:
        missing = await client.put("/lesson", json=WEEKLY_LESSON)
        same_origin = await client.put("/lesson", json=WEEKLY_LESSON, headers={"Origin": "http://test"})
    assert missing.status_code == 403
    assert same_origin.status_code == 201


@pytest.mark.anyio
async def test_storage_failure_maps_to_500_without_partial_lesson():
    repo = lesson_routes._get_repo()
    repo.fail_at = "after_lesson_insert"
    async with _client("alice") as client:
        resp = await client.put("/lesson", json=WEEKLY_LESSON)
    assert resp.status_code == 500
    assert resp.json() == {"error": "internal_error"}
    assert repo.lessons == {}
