"""
Payment Intent Tracker

Records a pending checkout (Stripe payment intent or Khalti pidx) against a
(user, course) pair before the user leaves for the gateway, and resolves
inbound gateway identifiers back to that record.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase

from app.core import config
from app.core.database import transaction
from app.payments.exceptions import (
    AlreadyEnrolled,
    CourseNotPayable,
    DuplicatePendingRequest,
    NotFound,
)
from app.payments.models import GatewayMethod, PendingStatus
from app.payments.roster import get_course, is_enrolled, is_payable

logger = logging.getLogger(__name__)

EXTERNAL_ID_FIELDS = {
    GatewayMethod.STRIPE: "payment_intent_id",
    GatewayMethod.KHALTI: "pidx",
}


def calculate_expiry() -> datetime:
    return datetime.utcnow() + timedelta(minutes=config.PAYMENT_TIMEOUT_MINUTES)


def is_expired(pending: dict, now: Optional[datetime] = None) -> bool:
    expires_at = pending.get("expires_at")
    if not expires_at:
        return False
    return (now or datetime.utcnow()) > expires_at


async def _open_checkout(
    db: AsyncIOMotorDatabase,
    user_id: str,
    course_id: str,
    method: GatewayMethod,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Optional[dict]:
    """
    The live pending checkout for this (user, course, method), if any.
    A pending record that already ran out of time is expired on the spot.
    """
    existing = await db.pending_enrollments.find_one(
        {
            "user_id": user_id,
            "course_id": course_id,
            "payment_method": method.value,
            "status": PendingStatus.PENDING.value,
        },
        session=session
    )
    if existing and is_expired(existing):
        await mark_status(db, existing["pending_id"], PendingStatus.EXPIRED, session=session)
        return None
    return existing


async def ensure_can_checkout(
    db: AsyncIOMotorDatabase,
    course: Optional[dict],
    user_id: str,
    method: GatewayMethod,
    session: Optional[AsyncIOMotorClientSession] = None
) -> dict:
    """Validate a paid checkout before any gateway call is made"""
    if not course:
        raise NotFound("Course not found")

    if not course.get("is_published", False):
        raise CourseNotPayable("Course is not available", status_code=403)

    if is_enrolled(course, user_id):
        raise AlreadyEnrolled("Already enrolled in this course")

    if not is_payable(course):
        raise CourseNotPayable(
            "Course is free - use free enrollment instead",
            details={"free_course": True}
        )

    existing = await _open_checkout(db, user_id, course["course_id"], method, session=session)
    if existing:
        raise DuplicatePendingRequest(
            "A checkout for this course is already in progress",
            details={
                "pending_id": existing["pending_id"],
                "expires_at": existing["expires_at"].isoformat(),
            }
        )

    return course


async def create_pending(
    db: AsyncIOMotorDatabase,
    course_id: str,
    user_id: str,
    method: GatewayMethod,
    external_id: str,
    amount: float,
    currency: str,
    amount_in_local_currency: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> dict:
    """
    Create a pending enrollment for a paid checkout.

    Re-checks the checkout preconditions and inserts in the same transaction,
    so two concurrent initiations cannot both leave a pending record behind.
    """
    now = datetime.utcnow()
    pending_doc = {
        "pending_id": f"PEND_{uuid.uuid4().hex[:12].upper()}",
        "payment_intent_id": None,
        "pidx": None,
        "course_id": course_id,
        "user_id": user_id,
        "amount": amount,
        "amount_in_local_currency": amount_in_local_currency,
        "currency": currency,
        "payment_method": method.value,
        "status": PendingStatus.PENDING.value,
        "expires_at": expires_at or calculate_expiry(),
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
    }
    pending_doc[EXTERNAL_ID_FIELDS[method]] = external_id

    async with transaction(db) as session:
        course = await get_course(db, course_id, session=session)
        await ensure_can_checkout(db, course, user_id, method, session=session)
        await db.pending_enrollments.insert_one(pending_doc, session=session)

    logger.info(
        "Pending %s checkout %s created for user %s in %s",
        method.value, external_id, user_id, course_id
    )
    return pending_doc


async def find_by_external_id(
    db: AsyncIOMotorDatabase,
    method: GatewayMethod,
    external_id: str,
    status: Optional[PendingStatus] = None,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Optional[dict]:
    query = {EXTERNAL_ID_FIELDS[method]: external_id}
    if status is not None:
        query["status"] = status.value
    return await db.pending_enrollments.find_one(query, session=session)


async def mark_status(
    db: AsyncIOMotorDatabase,
    pending_id: str,
    status: PendingStatus,
    session: Optional[AsyncIOMotorClientSession] = None,
    **extra
) -> bool:
    now = datetime.utcnow()
    update = {"status": status.value, "updated_at": now, **extra}
    if status == PendingStatus.COMPLETED and "completed_at" not in extra:
        update["completed_at"] = now

    result = await db.pending_enrollments.update_one(
        {"pending_id": pending_id},
        {"$set": update},
        session=session
    )
    return result.modified_count == 1


async def mark_failed_by_external_id(
    db: AsyncIOMotorDatabase,
    method: GatewayMethod,
    external_id: str,
    reason: Optional[str] = None,
    session: Optional[AsyncIOMotorClientSession] = None
) -> bool:
    """Failed and canceled payments both land here; only pending records move"""
    result = await db.pending_enrollments.update_one(
        {EXTERNAL_ID_FIELDS[method]: external_id, "status": PendingStatus.PENDING.value},
        {"$set": {
            "status": PendingStatus.FAILED.value,
            "failure_reason": reason,
            "updated_at": datetime.utcnow(),
        }},
        session=session
    )
    return result.modified_count == 1


async def expire_stale(db: AsyncIOMotorDatabase, now: Optional[datetime] = None) -> int:
    """Move every pending record past its deadline to expired"""
    now = now or datetime.utcnow()
    result = await db.pending_enrollments.update_many(
        {"status": PendingStatus.PENDING.value, "expires_at": {"$lt": now}},
        {"$set": {"status": PendingStatus.EXPIRED.value, "updated_at": now}}
    )
    if result.modified_count:
        logger.info("Expired %d stale pending enrollments", result.modified_count)
    return result.modified_count
