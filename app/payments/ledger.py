"""
Payment ledger: one immutable row per settled gateway transaction.
Rows are only ever extended with refund entries.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.payments.exceptions import BusinessValidationError, NotFound
from app.payments.models import GatewayMethod, LedgerStatus

logger = logging.getLogger(__name__)


async def get_payment(
    db: AsyncIOMotorDatabase,
    transaction_id: str,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Optional[dict]:
    return await db.payments.find_one({"transaction_id": transaction_id}, session=session)


async def record_payment(
    db: AsyncIOMotorDatabase,
    pending: dict,
    course: dict,
    transaction_id: str,
    buyer: Optional[dict] = None,
    session: Optional[AsyncIOMotorClientSession] = None
) -> dict:
    """
    Append the ledger row for a settled checkout.

    ``transaction_id`` is unique: a row already written for it is returned
    instead of inserting a second one.
    """
    existing = await get_payment(db, transaction_id, session=session)
    if existing:
        return existing

    buyer = buyer or {}
    method = pending["payment_method"]
    payment_doc = {
        "payment_id": f"PAY_{uuid.uuid4().hex[:12].upper()}",
        "user_id": pending["user_id"],
        "course_id": pending["course_id"],
        "amount": pending["amount"],
        "amount_in_local_currency": pending.get("amount_in_local_currency"),
        "currency": pending["currency"],
        "payment_method": method,
        "status": LedgerStatus.COMPLETED.value,
        "transaction_id": transaction_id,
        "payment_intent_id": transaction_id if method == GatewayMethod.STRIPE.value else None,
        "pidx": transaction_id if method == GatewayMethod.KHALTI.value else None,
        "metadata": {
            "course_title": buyer.get("course_title") or course.get("title") or "Unknown Course",
            "instructor_id": course.get("instructor_id"),
            "user_email": buyer.get("user_email") or "",
            "user_name": buyer.get("user_name") or "Unknown User",
        },
        "refunds": [],
        "created_at": datetime.utcnow(),
    }

    try:
        await db.payments.insert_one(payment_doc, session=session)
    except DuplicateKeyError:
        if session is not None:
            raise
        logger.info("Ledger row for %s written concurrently", transaction_id)
        return await get_payment(db, transaction_id)

    return payment_doc


async def append_refund(
    db: AsyncIOMotorDatabase,
    transaction_id: str,
    amount: float,
    reason: Optional[str] = None,
    refunded_by: Optional[str] = None
) -> dict:
    """Record a refund against a ledger row; refunds can never exceed the charge"""
    payment = await get_payment(db, transaction_id)
    if not payment:
        raise NotFound("Payment not found")

    already_refunded = sum(refund["amount"] for refund in payment.get("refunds", []))
    if already_refunded + amount > payment["amount"]:
        raise BusinessValidationError(
            "Refund exceeds the captured amount",
            details={"refundable": payment["amount"] - already_refunded}
        )

    refund = {
        "amount": amount,
        "reason": reason,
        "refunded_by": refunded_by,
        "created_at": datetime.utcnow(),
    }

    # Only matches while no refund was appended since the read above
    updated = await db.payments.find_one_and_update(
        {"transaction_id": transaction_id, "refunds": {"$size": len(payment.get("refunds", []))}},
        {"$push": {"refunds": refund}},
        return_document=ReturnDocument.AFTER
    )
    if updated is None:
        raise BusinessValidationError(
            "Payment was refunded concurrently, retry",
            status_code=409
        )

    logger.info("Refund of %s recorded against %s", amount, transaction_id)
    return updated
