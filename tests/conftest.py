import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("API_SHARED_KEY", "test-key")
os.environ.setdefault("DEFAULT_TIMEZONE", "UTC")

import pytest


class FakeEventStore:
    """In-memory stand-in for the event storage collaborator."""

    def __init__(self, fail_on_create=None):
        self.events = {}
        self.next_id = 1
        self.writes = []
        # 1-based create call number that should raise, for partial-failure tests
        self.fail_on_create = fail_on_create
        self.create_calls = 0

    def get(self, event_id):
        event = self.events.get(event_id)
        return dict(event) if event else None

    def create(self, fields):
        self.create_calls += 1
        if self.fail_on_create is not None and self.create_calls == self.fail_on_create:
            raise RuntimeError("database is locked")
        record = dict(fields)
        record["id"] = self.next_id
        self.next_id += 1
        self.events[record["id"]] = record
        self.writes.append(("create", record["id"]))
        return dict(record)

    def update(self, event_id, patch):
        if event_id not in self.events:
            raise LookupError(event_id)
        self.events[event_id].update(patch)
        self.writes.append(("update", event_id))
        return dict(self.events[event_id])

    def delete(self, event_id):
        self.events.pop(event_id, None)
        self.writes.append(("delete", event_id))

    def find_by_group(self, recurrence_group_id):
        members = [dict(ev) for ev in self.events.values() if ev.get("recurrence_group_id") == recurrence_group_id]
        return sorted(members, key=lambda ev: ev["occurrence_index"])


@pytest.fixture
def store():
    return FakeEventStore()


@pytest.fixture
def flask_app():
    import app as app_module
    from models import db, User

    flask_app = app_module.app
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        user = User(username="student")
        db.session.add(user)
        db.session.commit()
        flask_app.config["TEST_USER_ID"] = user.id
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def auth_headers(flask_app):
    return {"X-API-Key": "test-key", "X-User-Id": str(flask_app.config["TEST_USER_ID"])}
