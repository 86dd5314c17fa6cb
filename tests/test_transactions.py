"""
Transaction wiring with MONGO_TRANSACTIONS enabled.

The in-memory Motor double has no sessions, so the database is wrapped: a
fake client hands out recording sessions, and every collection call made
while a transaction is open is logged with whether it carried that session.
"""

import pytest

from app.core import config
from app.core.database import transaction
from app.payments import enrollment, manual
from app.payments.intents import create_pending, find_by_external_id
from app.payments.models import (
    GatewayEvent,
    GatewayEventKind,
    GatewayMethod,
    ManualPaymentMethod,
    OutcomeStatus,
)
from app.payments.webhooks import dispatch_event


class Recorder:
    def __init__(self):
        self.events = []
        self.calls = []
        self.active = None


class FakeTransaction:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        recorder = self.session.recorder
        recorder.active = self.session
        recorder.events.append("start_transaction")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        recorder = self.session.recorder
        recorder.events.append("abort" if exc_type else "commit")
        recorder.active = None
        return False


class FakeSession:
    def __init__(self, recorder):
        self.recorder = recorder

    def start_transaction(self):
        return FakeTransaction(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.recorder.events.append("end_session")
        return False


class FakeClient:
    def __init__(self, recorder):
        self.recorder = recorder

    async def start_session(self):
        self.recorder.events.append("start_session")
        return FakeSession(self.recorder)


class SessionRecordingCollection:
    def __init__(self, name, collection, recorder):
        self._name = name
        self._collection = collection
        self._recorder = recorder

    def __getattr__(self, attr):
        target = getattr(self._collection, attr)
        if not callable(target):
            return target

        def call(*args, **kwargs):
            session = kwargs.pop("session", None)
            if self._recorder.active is not None:
                self._recorder.calls.append((self._name, attr, session is self._recorder.active))
            return target(*args, **kwargs)
        return call


class SessionRecordingDatabase:
    def __init__(self, db, recorder):
        self._db = db
        self._recorder = recorder
        self.client = FakeClient(recorder)

    def __getattr__(self, name):
        return SessionRecordingCollection(name, getattr(self._db, name), self._recorder)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def recording_db(db, recorder):
    return SessionRecordingDatabase(db, recorder)


@pytest.fixture
def with_transactions(monkeypatch):
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", True)


def unbound(calls):
    return [(collection, method) for collection, method, bound in calls if not bound]


def succeeded(external_id="pi_123"):
    return GatewayEvent(
        method=GatewayMethod.STRIPE,
        kind=GatewayEventKind.SUCCEEDED,
        external_id=external_id,
        raw_type="payment_intent.succeeded",
        course_id="C1",
        user_id="U1",
        amount_minor=2000,
        currency="usd",
    )


async def test_transaction_commits_on_clean_exit(recording_db, recorder, with_transactions):
    async with transaction(recording_db) as session:
        assert session is recorder.active

    assert recorder.events == ["start_session", "start_transaction", "commit", "end_session"]


async def test_transaction_aborts_and_reraises(recording_db, recorder, with_transactions):
    with pytest.raises(RuntimeError):
        async with transaction(recording_db):
            raise RuntimeError("write conflict")

    assert recorder.events == ["start_session", "start_transaction", "abort", "end_session"]


async def test_transaction_disabled_yields_no_session(recording_db, recorder):
    async with transaction(recording_db) as session:
        assert session is None

    assert recorder.events == []


async def test_create_pending_runs_in_one_session(db, recording_db, recorder, seed_course, with_transactions):
    await seed_course()

    await create_pending(recording_db, "C1", "U1", GatewayMethod.STRIPE, "pi_123", 20.0, "usd")

    assert recorder.events[-2:] == ["commit", "end_session"]
    assert ("pending_enrollments", "insert_one", True) in recorder.calls
    assert ("courses", "find_one", True) in recorder.calls
    assert unbound(recorder.calls) == []
    assert await find_by_external_id(db, GatewayMethod.STRIPE, "pi_123") is not None


async def test_dispatch_binds_every_write_to_the_session(
    db, recording_db, recorder, seed_course, seed_user, monkeypatch
):
    await seed_course()
    await seed_user()
    await create_pending(db, "C1", "U1", GatewayMethod.STRIPE, "pi_123", 20.0, "usd")
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", True)

    outcome = await dispatch_event(recording_db, succeeded())

    assert outcome.status == OutcomeStatus.ENROLLED
    assert recorder.events == ["start_session", "start_transaction", "commit", "end_session"]
    writes = {(collection, method) for collection, method, _ in recorder.calls}
    assert {
        ("payments", "insert_one"),
        ("user_progress", "insert_one"),
        ("courses", "update_one"),
        ("pending_enrollments", "update_one"),
    } <= writes
    assert unbound(recorder.calls) == []


async def test_dispatch_aborts_when_a_step_fails(
    db, recording_db, recorder, seed_course, seed_user, monkeypatch
):
    await seed_course()
    await seed_user()
    await create_pending(db, "C1", "U1", GatewayMethod.STRIPE, "pi_123", 20.0, "usd")
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", True)

    async def broken_progress(*args, **kwargs):
        raise RuntimeError("progress store unavailable")

    monkeypatch.setattr(enrollment, "initialize_progress", broken_progress)

    with pytest.raises(RuntimeError):
        await dispatch_event(recording_db, succeeded())

    assert recorder.events == ["start_session", "start_transaction", "abort", "end_session"]
    assert "commit" not in recorder.events
    assert ("payments", "insert_one", True) in recorder.calls
    assert not any(collection == "courses" and method == "update_one"
                   for collection, method, _ in recorder.calls)


async def test_approve_binds_every_write_to_the_session(
    db, recording_db, recorder, seed_course, seed_user, monkeypatch
):
    await seed_course()
    await seed_user()
    request_doc = await manual.submit_payment_request(db, "U1", "C1", ManualPaymentMethod.CASH)
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", True)

    request, outcome = await manual.approve(recording_db, request_doc["request_id"], "ADMIN1")

    assert request["status"] == "approved"
    assert outcome.status == OutcomeStatus.ENROLLED
    assert recorder.events == ["start_session", "start_transaction", "commit", "end_session"]
    assert ("payment_requests", "update_one", True) in recorder.calls
    assert ("courses", "update_one", True) in recorder.calls
    assert ("user_progress", "insert_one", True) in recorder.calls
    assert unbound(recorder.calls) == []
