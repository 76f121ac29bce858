from datetime import date, timedelta

from sqlalchemy.exc import SQLAlchemyError

from services.materialize_service import MaterializationError


def _future_start():
    # Early February leaves almost a full year before the Jan 15 cutoff.
    return date(date.today().year + 1, 2, 2)


def _create(client, headers, **body):
    payload = {"title": "Algorithms lecture", "date": _future_start().isoformat(), "time": "09:00"}
    payload.update(body)
    return client.post("/api/events", json=payload, headers=headers)


def test_requires_user(client):
    assert client.get("/api/events").status_code == 401


def test_create_standalone_event(client, auth_headers):
    resp = _create(client, auth_headers, duration_minutes=75, description="  Room 101  ")
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["occurrences"] == []
    event = body["event"]
    assert event["recurrence_group_id"] is None
    assert event["occurrence_index"] is None
    assert event["text"] == "Room 101"
    assert event["start_at"].endswith("09:00:00")
    assert event["end_at"].endswith("10:15:00")


def test_repeat_option_without_materialize_creates_single_event(client, auth_headers):
    body = _create(client, auth_headers, repeat_option="weekly").get_json()
    assert body["occurrences"] == []
    assert body["event"]["recurrence_group_id"] is None


def test_create_with_materialize_returns_group(client, auth_headers):
    resp = _create(
        client,
        auth_headers,
        repeatOption="weekly",
        materialize=True,
        materializeCount=6,
        subtasks=[{"id": "a", "text": "Read slides", "done": False}],
        description="Bring notes",
    )
    assert resp.status_code == 201
    body = resp.get_json()
    occurrences = body["occurrences"]
    assert [o["occurrence_index"] for o in occurrences] == list(range(6))
    assert body["event"]["id"] == occurrences[0]["id"]
    assert len({o["recurrence_group_id"] for o in occurrences}) == 1
    assert occurrences[3]["subtasks"] == [{"id": "a", "text": "Read slides", "done": False}]
    assert occurrences[3]["text"] == "Bring notes"


def test_unknown_repeat_option_is_rejected(client, auth_headers):
    resp = _create(client, auth_headers, repeat_option="hourly", materialize=True)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["code"] == "INVALID_REPEAT_OPTION"
    assert body["repeat_option"] == "hourly"
    assert client.get("/api/events", headers=auth_headers).get_json()["events"] == []


def test_past_date_is_rejected(client, auth_headers):
    resp = _create(client, auth_headers, date="2001-01-01")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "PAST_DATE"


def test_missing_title_is_rejected(client, auth_headers):
    resp = _create(client, auth_headers, title="   ")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "TITLE_REQUIRED"


def test_scoped_following_delete(client, auth_headers):
    occurrences = _create(client, auth_headers, repeat_option="weekly", materialize_count=6).get_json()["occurrences"]
    resp = client.delete(f"/api/events/{occurrences[2]['id']}?scope=following", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.get_json()["removed_ids"] == [o["id"] for o in occurrences[2:]]

    remaining = client.get("/api/events", headers=auth_headers).get_json()["events"]
    assert [e["occurrence_index"] for e in remaining] == [0, 1]


def test_invalid_scope_is_rejected_without_changes(client, auth_headers):
    occurrences = _create(client, auth_headers, repeat_option="weekly", materialize_count=3).get_json()["occurrences"]
    target = occurrences[0]["id"]

    resp = client.delete(f"/api/events/{target}?scope=everything", headers=auth_headers)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["code"] == "INVALID_SCOPE"
    assert body["id"] == target

    resp = client.patch(f"/api/events/{target}?scope=sometimes", json={"title": "X"}, headers=auth_headers)
    assert resp.status_code == 400
    events = client.get("/api/events", headers=auth_headers).get_json()["events"]
    assert len(events) == 3
    assert all(e["title"] == "Algorithms lecture" for e in events)


def test_scoped_patch_all_reports_ignored_fields(client, auth_headers):
    occurrences = _create(client, auth_headers, repeat_option="weekly", materialize_count=4).get_json()["occurrences"]
    resp = client.patch(
        f"/api/events/{occurrences[1]['id']}?scope=all",
        json={"title": "Algorithms (room change)", "date": "2099-01-01"},
        headers=auth_headers,
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert sorted(body["affected_ids"]) == sorted(o["id"] for o in occurrences)
    assert body["ignored_fields"] == ["date"]
    events = client.get("/api/events", headers=auth_headers).get_json()["events"]
    assert [e["date"] for e in events] == [o["date"] for o in occurrences]
    assert all(e["title"] == "Algorithms (room change)" for e in events)


def test_patch_unknown_event_is_not_found(client, auth_headers):
    resp = client.patch("/api/events/4040?scope=this", json={"title": "X"}, headers=auth_headers)
    assert resp.status_code == 404
    assert resp.get_json()["id"] == 4040


def test_archive_hides_event_from_default_listing(client, auth_headers):
    event = _create(client, auth_headers).get_json()["event"]
    client.patch(f"/api/events/{event['id']}", json={"archived": True}, headers=auth_headers)
    assert client.get("/api/events", headers=auth_headers).get_json()["events"] == []
    archived = client.get("/api/events?include_archived=1", headers=auth_headers).get_json()["events"]
    assert [e["id"] for e in archived] == [event["id"]]


def test_toggle_subtask(client, auth_headers):
    event = _create(client, auth_headers, subtasks=[{"id": "a", "text": "Outline"}]).get_json()["event"]
    resp = client.post(f"/api/events/{event['id']}/subtasks/a/toggle", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.get_json()["subtasks"] == [{"id": "a", "text": "Outline", "done": True}]

    missing = client.post(f"/api/events/{event['id']}/subtasks/nope/toggle", headers=auth_headers)
    assert missing.status_code == 404


def test_resume_materialization_after_partial_failure(client, auth_headers, monkeypatch):
    from backend.event_store import EventStore

    original_create = EventStore.create
    calls = {"n": 0}

    def flaky_create(self, fields):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("connection reset")
        return original_create(self, fields)

    monkeypatch.setattr(EventStore, "create", flaky_create)
    resp = _create(client, auth_headers, repeat_option="weekly", materialize_count=5)
    assert resp.status_code == 503
    failure = resp.get_json()
    assert failure["retryable"] is True
    assert failure["failed_index"] == 2
    assert len(failure["created_ids"]) == 2

    monkeypatch.setattr(EventStore, "create", original_create)
    retry_body = {
        "title": "Algorithms lecture",
        "date": _future_start().isoformat(),
        "time": "09:00",
        "repeat_option": "weekly",
        "materialize_count": 5,
    }
    resp = client.post(
        f"/api/recurrence-groups/{failure['recurrence_group_id']}/materialize",
        json=retry_body,
        headers=auth_headers,
    )
    assert resp.status_code == 200
    occurrences = resp.get_json()["occurrences"]
    assert [o["occurrence_index"] for o in occurrences] == list(range(5))
    assert [o["id"] for o in occurrences[:2]] == failure["created_ids"]


def test_recurrence_options(client):
    options = client.get("/api/recurrence-options").get_json()["options"]
    assert {"value": "everyTwoWeeks", "label": "Every two weeks"} in options


def test_materialization_error_carries_created_records():
    err = MaterializationError("boom", recurrence_group_id="g", occurrence_index=1, created=[{"id": 1}])
    assert err.created == [{"id": 1}]


def test_materialize_without_repeat_option_builds_weekly_series(client, auth_headers):
    occurrences = _create(client, auth_headers, materialize=True, materialize_count=3).get_json()["occurrences"]
    days = [date.fromisoformat(o["date"]) for o in occurrences]
    assert [(b - a).days for a, b in zip(days, days[1:])] == [7, 7]


def test_resume_with_different_series_is_refused(client, auth_headers, monkeypatch):
    from backend.event_store import EventStore

    original_create = EventStore.create
    calls = {"n": 0}

    def flaky_create(self, fields):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("connection reset")
        return original_create(self, fields)

    monkeypatch.setattr(EventStore, "create", flaky_create)
    failure = _create(client, auth_headers, repeat_option="weekly", materialize_count=5).get_json()
    monkeypatch.setattr(EventStore, "create", original_create)

    other_start = _future_start() - timedelta(days=60)
    resp = client.post(
        f"/api/recurrence-groups/{failure['recurrence_group_id']}/materialize",
        json={"title": "Totally different", "date": other_start.isoformat(), "repeat_option": "weekly",
              "materialize_count": 5},
        headers=auth_headers,
    )
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["code"] == "SERIES_MISMATCH"
    assert body["field"] == "date"

    resp = client.post(
        f"/api/recurrence-groups/{failure['recurrence_group_id']}/materialize",
        json={"title": "Totally different", "date": _future_start().isoformat(), "time": "09:00",
              "repeat_option": "weekly", "materialize_count": 5},
        headers=auth_headers,
    )
    assert resp.status_code == 409
    assert resp.get_json()["field"] == "title"

    events = client.get("/api/events", headers=auth_headers).get_json()["events"]
    assert [e["id"] for e in events] == failure["created_ids"]


def test_failed_bulk_patch_rolls_back_every_occurrence(client, auth_headers, monkeypatch):
    from backend.event_store import EventStore

    occurrences = _create(client, auth_headers, repeat_option="weekly", materialize_count=4).get_json()["occurrences"]
    original_update = EventStore.update
    calls = {"n": 0}

    def failing_update(self, event_id, patch):
        calls["n"] += 1
        if calls["n"] == 2:
            raise SQLAlchemyError("deadlock detected")
        return original_update(self, event_id, patch)

    monkeypatch.setattr(EventStore, "update", failing_update)
    resp = client.patch(f"/api/events/{occurrences[0]['id']}?scope=all", json={"title": "Renamed"}, headers=auth_headers)
    assert resp.status_code == 503
    assert resp.get_json()["code"] == "STORAGE_ERROR"
    monkeypatch.setattr(EventStore, "update", original_update)

    events = client.get("/api/events", headers=auth_headers).get_json()["events"]
    assert len(events) == 4
    assert all(e["title"] == "Algorithms lecture" for e in events)


def _template_body():
    start = _future_start()
    return {
        "is_template": True,
        "title": "Semester timetable",
        "course_id": "CS201",
        "date": start.isoformat(),
        "template_modules": [
            {"title": "Lecture", "time": "09:00", "duration_minutes": 60, "repeat_option": "weekly"},
            {"title": "Lab", "date": (start + timedelta(days=2)).isoformat(), "time": "14:00"},
        ],
    }


def test_create_template_stores_modules_without_events(client, auth_headers):
    resp = client.post("/api/events", json=_template_body(), headers=auth_headers)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["template"]["id"] == body["template_id"]
    assert [m["title"] for m in body["template"]["modules"]] == ["Lecture", "Lab"]
    assert client.get("/api/events", headers=auth_headers).get_json()["events"] == []


def test_template_with_malformed_modules_is_rejected(client, auth_headers):
    body = _template_body()
    body["template_modules"] = ["Lecture"]
    resp = client.post("/api/events", json=body, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_TEMPLATE"


def test_materialize_template_creates_one_group_per_module(client, auth_headers):
    template_id = client.post("/api/events", json=_template_body(), headers=auth_headers).get_json()["template_id"]
    resp = client.post(f"/api/event-templates/{template_id}/materialize", json={"materialize_count": 3},
                       headers=auth_headers)
    assert resp.status_code == 201
    body = resp.get_json()
    assert [(g["module_index"], g["occurrence_count"]) for g in body["groups"]] == [(0, 3), (1, 1)]
    lectures = [e for e in body["events"] if e["title"] == "Lecture"]
    assert lectures[0]["date"] == _future_start().isoformat()
    assert all(e["course_id"] == "CS201" for e in body["events"])
    lab = [e for e in body["events"] if e["title"] == "Lab"][0]
    assert lab["date"] == (_future_start() + timedelta(days=2)).isoformat()
    assert lab["recurrence_group_id"] != lectures[0]["recurrence_group_id"]

    again = client.post(f"/api/event-templates/{template_id}/materialize", json={"materialize_count": 3},
                        headers=auth_headers).get_json()
    assert sorted(e["id"] for e in again["events"]) == sorted(e["id"] for e in body["events"])
    assert len(client.get("/api/events", headers=auth_headers).get_json()["events"]) == 4


def test_materialize_template_errors(client, auth_headers):
    assert client.post("/api/event-templates/999/materialize", headers=auth_headers).status_code == 404

    empty = client.post("/api/events", json={"is_template": True, "title": "Blank"}, headers=auth_headers).get_json()
    resp = client.post(f"/api/event-templates/{empty['template_id']}/materialize", headers=auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_TEMPLATE"
