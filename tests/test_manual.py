import pytest

from app.payments import manual
from app.payments.enrollment import enroll_free
from app.payments.exceptions import (
    AlreadyEnrolled,
    CourseNotPayable,
    DuplicatePendingRequest,
    InvalidStateTransition,
    NotFound,
)
from app.payments.models import ManualPaymentMethod, OutcomeStatus, PaymentProof, RequestStatus


@pytest.fixture
async def request_doc(db, seed_course, seed_user):
    await seed_course()
    await seed_user()
    return await manual.submit_payment_request(
        db, "U1", "C1", ManualPaymentMethod.BANK_TRANSFER,
        transaction_id="BANK-778",
        proof=PaymentProof(url="https://files.example.com/receipt.png", file_name="receipt.png")
    )


async def test_submit_prices_request_at_course_price(request_doc):
    assert request_doc["request_id"].startswith("PREQ_")
    assert request_doc["status"] == "pending"
    assert request_doc["amount"] == 20.0
    assert request_doc["currency"] == "usd"
    assert request_doc["payment_proof"]["file_name"] == "receipt.png"


async def test_submit_duplicate_pending_rejected(db, request_doc):
    with pytest.raises(DuplicatePendingRequest):
        await manual.submit_payment_request(db, "U1", "C1", ManualPaymentMethod.CASH)


async def test_submit_free_course_rejected(db, seed_course):
    await seed_course(price=0, is_free=True)

    with pytest.raises(CourseNotPayable):
        await manual.submit_payment_request(db, "U1", "C1", ManualPaymentMethod.CASH)


async def test_approve_enrolls_with_manual_payment(db, request_doc):
    request, outcome = await manual.approve(db, request_doc["request_id"], "ADMIN1", "Receipt checked")

    assert request["status"] == "approved"
    assert request["approved_by"] == "ADMIN1"
    assert request["approved_at"] is not None
    assert outcome.status == OutcomeStatus.ENROLLED

    course = await db.courses.find_one({"course_id": "C1"})
    entry = course["students"][0]
    assert entry["enrolled_through"] == "manual_payment"
    assert entry["payment_method"] == "bank_transfer"
    assert entry["payment_request_id"] == request_doc["request_id"]
    assert course["total_students"] == 1
    assert await db.user_progress.count_documents({"course_id": "C1", "user_id": "U1"}) == 1
    assert await db.payments.count_documents({}) == 0


async def test_approve_rechecks_enrollment(db, request_doc):
    # Course goes free while the request waits; the student enrolls on the free path
    await db.courses.update_one({"course_id": "C1"}, {"$set": {"is_free": True, "price": 0}})
    await enroll_free(db, "C1", "U1")

    with pytest.raises(AlreadyEnrolled):
        await manual.approve(db, request_doc["request_id"], "ADMIN1")

    course = await db.courses.find_one({"course_id": "C1"})
    assert len(course["students"]) == 1
    assert course["students"][0]["enrolled_through"] == "free"
    assert course["total_students"] == 1
    assert (await manual.get_request(db, request_doc["request_id"]))["status"] == "pending"


async def test_approve_with_stale_course_read_adds_no_second_entry(db, request_doc, monkeypatch):
    await manual.grant_access(db, "ADMIN1", "U1", "C1")

    # The course was read before the concurrent grant landed
    monkeypatch.setattr(manual, "is_enrolled", lambda course, user_id: False)
    with pytest.raises(AlreadyEnrolled):
        await manual.approve(db, request_doc["request_id"], "ADMIN1")

    course = await db.courses.find_one({"course_id": "C1"})
    assert len(course["students"]) == 1
    assert course["students"][0]["enrolled_through"] == "manual_grant"
    assert course["total_students"] == 1
    assert (await manual.get_request(db, request_doc["request_id"]))["status"] == "pending"


async def test_terminal_requests_cannot_be_reviewed_again(db, request_doc):
    await manual.reject(db, request_doc["request_id"], "ADMIN1", "Blurry receipt")

    with pytest.raises(InvalidStateTransition):
        await manual.approve(db, request_doc["request_id"], "ADMIN1")
    with pytest.raises(InvalidStateTransition):
        await manual.cancel(db, request_doc["request_id"], user_id="U1")

    course = await db.courses.find_one({"course_id": "C1"})
    assert course["students"] == []


async def test_reject_records_reviewer(db, request_doc):
    request = await manual.reject(db, request_doc["request_id"], "ADMIN1", "Blurry receipt")

    assert request["status"] == "rejected"
    assert request["reviewed_by"] == "ADMIN1"
    assert request["admin_notes"] == "Blurry receipt"


async def test_owner_cancels_request(db, request_doc):
    request = await manual.cancel(db, request_doc["request_id"], user_id="U1")

    assert request["status"] == "cancelled"
    # A new request may be opened once the old one is closed
    await manual.submit_payment_request(db, "U1", "C1", ManualPaymentMethod.DIGITAL_WALLET)


async def test_other_user_cannot_cancel(db, request_doc):
    with pytest.raises(NotFound):
        await manual.cancel(db, request_doc["request_id"], user_id="U2")

    assert (await manual.get_request(db, request_doc["request_id"]))["status"] == "pending"


async def test_approve_unknown_request(db):
    with pytest.raises(NotFound):
        await manual.approve(db, "PREQ_MISSING", "ADMIN1")


async def test_list_requests_paginates_and_counts(db, seed_course, seed_user):
    for course_id in ("C1", "C2", "C3"):
        await seed_course(course_id)
    await seed_user()
    first = await manual.submit_payment_request(db, "U1", "C1", ManualPaymentMethod.CASH)
    await manual.submit_payment_request(db, "U1", "C2", ManualPaymentMethod.CASH)
    await manual.submit_payment_request(db, "U1", "C3", ManualPaymentMethod.CASH)
    await manual.reject(db, first["request_id"], "ADMIN1")

    result = await manual.list_requests(db, status=RequestStatus.PENDING, page=1, limit=1)

    assert result["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert len(result["requests"]) == 1
    assert result["requests"][0]["user_email"] == "u1@example.com"
    assert result["requests"][0]["course_title"].startswith("Draping Fundamentals")
    assert result["status_counts"] == {"pending": 2, "approved": 0, "rejected": 1, "cancelled": 0}


async def test_grant_access(db, seed_course, seed_user):
    await seed_course()
    await seed_user()

    outcome = await manual.grant_access(db, "ADMIN1", "U1", "C1", reason="Scholarship")

    assert outcome.status == OutcomeStatus.ENROLLED
    course = await db.courses.find_one({"course_id": "C1"})
    assert course["students"][0]["enrolled_through"] == "manual_grant"
    assert course["students"][0]["granted_by"] == "ADMIN1"
    grant = await db.manual_access.find_one({"user_id": "U1", "course_id": "C1"})
    assert grant["reason"] == "Scholarship"
    assert grant["is_active"] is True

    with pytest.raises(AlreadyEnrolled):
        await manual.grant_access(db, "ADMIN1", "U1", "C1")


async def test_grant_access_unknown_user(db, seed_course):
    await seed_course()

    with pytest.raises(NotFound):
        await manual.grant_access(db, "ADMIN1", "GHOST", "C1")


async def test_grant_with_stale_course_read_adds_no_second_entry(db, seed_course, seed_user, monkeypatch):
    await seed_course()
    await seed_user()
    await manual.grant_access(db, "ADMIN1", "U1", "C1")

    monkeypatch.setattr(manual, "is_enrolled", lambda course, user_id: False)
    with pytest.raises(AlreadyEnrolled):
        await manual.grant_access(db, "ADMIN2", "U1", "C1")

    course = await db.courses.find_one({"course_id": "C1"})
    assert len(course["students"]) == 1
    assert course["students"][0]["granted_by"] == "ADMIN1"
    assert course["total_students"] == 1
    assert await db.manual_access.count_documents({"user_id": "U1", "course_id": "C1"}) == 1
