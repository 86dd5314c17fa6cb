"""
Manual payment requests and admin grants

Students who pay outside the gateways (bank transfer, wallet, cash) submit a
payment request with proof; an admin approves or rejects it. Approval goes
through the same roster primitive as gateway payments, so a user enrolled by
any other path in the meantime is never added twice.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core import config
from app.core.database import transaction
from app.payments.enrollment import enroll_user, get_user
from app.payments.exceptions import (
    AlreadyEnrolled,
    CourseNotPayable,
    DataIntegrityError,
    DuplicatePendingRequest,
    InvalidStateTransition,
    NotFound,
)
from app.payments.models import (
    EnrolledThrough,
    EnrollmentOutcome,
    ManualPaymentMethod,
    OutcomeStatus,
    PaymentProof,
    RequestStatus,
)
from app.payments.roster import build_roster_entry, get_course, is_enrolled, is_payable

logger = logging.getLogger(__name__)


async def get_request(db: AsyncIOMotorDatabase, request_id: str, session=None) -> Optional[dict]:
    return await db.payment_requests.find_one({"request_id": request_id}, session=session)


async def _require_pending(db: AsyncIOMotorDatabase, request_id: str, session=None) -> dict:
    request = await get_request(db, request_id, session=session)
    if not request:
        raise NotFound("Payment request not found")
    if request["status"] != RequestStatus.PENDING.value:
        raise InvalidStateTransition(
            f"Payment request is already {request['status']}",
            details={"status": request["status"]}
        )
    return request


async def submit_payment_request(
    db: AsyncIOMotorDatabase,
    user_id: str,
    course_id: str,
    method: ManualPaymentMethod,
    transaction_id: Optional[str] = None,
    proof: Optional[PaymentProof] = None
) -> dict:
    now = datetime.utcnow()

    async with transaction(db) as session:
        course = await get_course(db, course_id, session=session)
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

        existing = await db.payment_requests.find_one(
            {"user_id": user_id, "course_id": course_id, "status": RequestStatus.PENDING.value},
            session=session
        )
        if existing:
            raise DuplicatePendingRequest(
                "You already have a pending payment request for this course",
                details={"request_id": existing["request_id"]}
            )

        request_doc = {
            "request_id": f"PREQ_{uuid.uuid4().hex[:12].upper()}",
            "user_id": user_id,
            "course_id": course_id,
            "amount": course["price"],
            "currency": course.get("currency") or config.DEFAULT_CURRENCY,
            "status": RequestStatus.PENDING.value,
            "payment_method": method.value,
            "transaction_id": transaction_id,
            "payment_proof": proof.model_dump() if proof else None,
            "admin_notes": None,
            "approved_by": None,
            "approved_at": None,
            "reviewed_by": None,
            "reviewed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        await db.payment_requests.insert_one(request_doc, session=session)

    logger.info("Payment request %s submitted by %s for %s", request_doc["request_id"], user_id, course_id)
    return request_doc


async def approve(
    db: AsyncIOMotorDatabase,
    request_id: str,
    admin_id: str,
    notes: Optional[str] = None
) -> Tuple[dict, EnrollmentOutcome]:
    """
    Approve a pending request and enroll its user.

    Enrollment is re-checked at approval time: a user who got in through
    another path since submitting gets AlreadyEnrolled and the request stays
    pending for the admin to reject or cancel.
    """
    async with transaction(db) as session:
        request = await _require_pending(db, request_id, session=session)
        course_id = request["course_id"]
        user_id = request["user_id"]

        course = await get_course(db, course_id, session=session)
        if not course:
            raise DataIntegrityError("Course not found", details={"course_id": course_id})

        if is_enrolled(course, user_id):
            logger.warning("Approval of %s refused: user %s already enrolled in %s",
                           request_id, user_id, course_id)
            raise AlreadyEnrolled("User is already enrolled in this course",
                                  details={"request_id": request_id})

        entry = build_roster_entry(
            user_id,
            EnrolledThrough.MANUAL_PAYMENT,
            payment_method=request["payment_method"],
            payment_amount=request["amount"],
            payment_request_id=request_id,
        )
        added, progress = await enroll_user(db, course, user_id, entry, session=session)
        if not added:
            raise AlreadyEnrolled("User is already enrolled in this course",
                                  details={"request_id": request_id})

        now = datetime.utcnow()
        result = await db.payment_requests.update_one(
            {"request_id": request_id, "status": RequestStatus.PENDING.value},
            {"$set": {
                "status": RequestStatus.APPROVED.value,
                "admin_notes": notes,
                "approved_by": admin_id,
                "approved_at": now,
                "reviewed_by": admin_id,
                "reviewed_at": now,
                "updated_at": now,
            }},
            session=session
        )
        if result.modified_count != 1:
            raise InvalidStateTransition("Payment request was reviewed concurrently")

    logger.info("Payment request %s approved by %s", request_id, admin_id)
    request = await get_request(db, request_id)
    outcome = EnrollmentOutcome(
        OutcomeStatus.ENROLLED,
        course_id=course_id,
        user_id=user_id,
        enrolled_through=EnrolledThrough.MANUAL_PAYMENT,
        course_title=course.get("title"),
        instructor_id=course.get("instructor_id"),
        progress=progress,
        message="Payment request approved",
    )
    return request, outcome


async def _close(
    db: AsyncIOMotorDatabase,
    request_id: str,
    status: RequestStatus,
    query: dict,
    fields: dict
) -> dict:
    now = datetime.utcnow()
    result = await db.payment_requests.update_one(
        {"request_id": request_id, "status": RequestStatus.PENDING.value, **query},
        {"$set": {"status": status.value, "updated_at": now, **fields}}
    )
    if result.modified_count != 1:
        request = await get_request(db, request_id)
        if not request or any(request.get(k) != v for k, v in query.items()):
            raise NotFound("Payment request not found")
        raise InvalidStateTransition(
            f"Payment request is already {request['status']}",
            details={"status": request["status"]}
        )
    return await get_request(db, request_id)


async def reject(
    db: AsyncIOMotorDatabase,
    request_id: str,
    admin_id: str,
    notes: Optional[str] = None
) -> dict:
    request = await _close(
        db, request_id, RequestStatus.REJECTED, {},
        {"admin_notes": notes, "reviewed_by": admin_id, "reviewed_at": datetime.utcnow()}
    )
    logger.info("Payment request %s rejected by %s", request_id, admin_id)
    return request


async def cancel(
    db: AsyncIOMotorDatabase,
    request_id: str,
    user_id: Optional[str] = None,
    admin_id: Optional[str] = None,
    notes: Optional[str] = None
) -> dict:
    """Owner (or an admin, when user_id is omitted) withdraws a pending request"""
    query = {"user_id": user_id} if user_id else {}
    fields = {}
    if admin_id:
        fields = {"admin_notes": notes, "reviewed_by": admin_id, "reviewed_at": datetime.utcnow()}
    request = await _close(db, request_id, RequestStatus.CANCELLED, query, fields)
    logger.info("Payment request %s cancelled", request_id)
    return request


async def list_requests(
    db: AsyncIOMotorDatabase,
    status: Optional[RequestStatus] = None,
    page: int = 1,
    limit: int = 20
) -> dict:
    query = {"status": status.value} if status else {}
    total = await db.payment_requests.count_documents(query)

    cursor = db.payment_requests.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    requests = await cursor.to_list(length=limit)

    course_ids = list({r["course_id"] for r in requests})
    user_ids = list({r["user_id"] for r in requests})
    courses = {
        c["course_id"]: c
        async for c in db.courses.find({"course_id": {"$in": course_ids}}, {"course_id": 1, "title": 1, "slug": 1})
    }
    users = {
        u["user_id"]: u
        async for u in db.users.find(
            {"user_id": {"$in": user_ids}}, {"user_id": 1, "email": 1, "first_name": 1, "last_name": 1}
        )
    }

    for request in requests:
        course = courses.get(request["course_id"], {})
        user = users.get(request["user_id"], {})
        request["course_title"] = course.get("title")
        request["course_slug"] = course.get("slug")
        request["user_email"] = user.get("email")
        request["user_name"] = f"{user.get('first_name', '')} {user.get('last_name', '')}".strip() or None

    counts = {s.value: 0 for s in RequestStatus}
    async for row in db.payment_requests.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        counts[row["_id"]] = row["count"]

    return {
        "requests": requests,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
        "status_counts": counts,
    }


async def grant_access(
    db: AsyncIOMotorDatabase,
    admin_id: str,
    user_id: str,
    course_id: str,
    reason: Optional[str] = None,
    expires_at: Optional[datetime] = None
) -> EnrollmentOutcome:
    """Enroll a user directly, without any payment"""
    async with transaction(db) as session:
        course = await get_course(db, course_id, session=session)
        if not course:
            raise NotFound("Course not found")

        if not await get_user(db, user_id, session=session):
            raise NotFound("User not found")

        if is_enrolled(course, user_id):
            raise AlreadyEnrolled("User is already enrolled in this course")

        entry = build_roster_entry(user_id, EnrolledThrough.MANUAL_GRANT, granted_by=admin_id)
        added, progress = await enroll_user(db, course, user_id, entry, session=session)
        if not added:
            raise AlreadyEnrolled("User is already enrolled in this course")

        await db.manual_access.insert_one({
            "access_id": f"ACCESS_{uuid.uuid4().hex[:12].upper()}",
            "user_id": user_id,
            "course_id": course_id,
            "granted_by": admin_id,
            "reason": reason,
            "expires_at": expires_at,
            "is_active": True,
            "created_at": datetime.utcnow(),
        }, session=session)

    logger.info("Admin %s granted %s access to %s", admin_id, user_id, course_id)
    return EnrollmentOutcome(
        OutcomeStatus.ENROLLED,
        course_id=course_id,
        user_id=user_id,
        enrolled_through=EnrolledThrough.MANUAL_GRANT,
        course_title=course.get("title"),
        instructor_id=course.get("instructor_id"),
        progress=progress,
        message="Access granted",
    )
