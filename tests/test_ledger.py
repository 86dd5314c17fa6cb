import pytest

from app.payments.exceptions import BusinessValidationError, NotFound
from app.payments.ledger import append_refund, get_payment, record_payment


@pytest.fixture
def pending():
    return {
        "pending_id": "PEND_1",
        "user_id": "U1",
        "course_id": "C1",
        "amount": 20.0,
        "amount_in_local_currency": None,
        "currency": "usd",
        "payment_method": "stripe",
    }


@pytest.fixture
def course():
    return {"course_id": "C1", "title": "Pattern Cutting", "instructor_id": "I1"}


async def test_record_payment_is_idempotent(db, pending, course):
    first = await record_payment(db, pending, course, "pi_1")
    second = await record_payment(db, pending, course, "pi_1")

    assert second["payment_id"] == first["payment_id"]
    assert await db.payments.count_documents({"transaction_id": "pi_1"}) == 1
    assert first["metadata"]["course_title"] == "Pattern Cutting"
    assert first["pidx"] is None


async def test_refunds_are_appended(db, pending, course):
    await record_payment(db, pending, course, "pi_1")

    await append_refund(db, "pi_1", 5.0, reason="partial", refunded_by="ADMIN1")
    payment = await append_refund(db, "pi_1", 15.0)

    assert [r["amount"] for r in payment["refunds"]] == [5.0, 15.0]
    assert payment["status"] == "completed"
    assert payment["amount"] == 20.0


async def test_refund_cannot_exceed_charge(db, pending, course):
    await record_payment(db, pending, course, "pi_1")
    await append_refund(db, "pi_1", 15.0)

    with pytest.raises(BusinessValidationError) as exc:
        await append_refund(db, "pi_1", 10.0)

    assert exc.value.details == {"refundable": 5.0}
    assert len((await get_payment(db, "pi_1"))["refunds"]) == 1


async def test_refund_unknown_payment(db):
    with pytest.raises(NotFound):
        await append_refund(db, "pi_missing", 1.0)
