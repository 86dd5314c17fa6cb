"""
Enrollment Committer

Turns a confirmed payment into exactly one course enrollment, no matter how
many times the gateway delivers the same event or how many payment paths
race for the same (course, user).

Every write goes through the caller's transaction session. The writes are
ordered ledger -> progress -> roster -> pending: on a server running without
transactions a failure part-way never leaves a roster entry without its
progress record, and a redelivery picks up where the failure stopped.
"""

import logging
from typing import Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase

from app.core.database import transaction
from app.payments.exceptions import CourseNotPayable, DataIntegrityError, NotFound
from app.payments.intents import find_by_external_id, is_expired, mark_status
from app.payments.ledger import record_payment
from app.payments.models import (
    EnrolledThrough,
    EnrollmentOutcome,
    GatewayEvent,
    GatewayMethod,
    OutcomeStatus,
    PendingStatus,
)
from app.payments.progress import get_progress, initialize_progress
from app.payments.roster import add_student, build_roster_entry, get_course, is_enrolled, is_payable

logger = logging.getLogger(__name__)


def expected_amount_minor(pending: dict) -> Optional[int]:
    """What the gateway should report, in its smallest currency unit"""
    if pending["payment_method"] == GatewayMethod.KHALTI.value:
        local = pending.get("amount_in_local_currency")
        return int(round(local * 100)) if local is not None else None
    return int(round(pending["amount"] * 100))


async def get_user(
    db: AsyncIOMotorDatabase,
    user_id: str,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Optional[dict]:
    return await db.users.find_one({"user_id": user_id}, session=session)


def _buyer_details(user: dict, course: dict, metadata: dict) -> dict:
    full_name = f"{user.get('first_name', '')} {user.get('last_name', '')}".strip()
    return {
        "course_title": metadata.get("course_title") or course.get("title"),
        "user_email": metadata.get("user_email") or user.get("email"),
        "user_name": metadata.get("user_name") or full_name or None,
    }


async def enroll_user(
    db: AsyncIOMotorDatabase,
    course: dict,
    user_id: str,
    entry: dict,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Tuple[bool, dict]:
    """
    Seed progress, then append the roster entry if the user is not on it yet.
    Returns (added, progress).
    """
    progress = await initialize_progress(db, course, user_id, session=session)
    added = await add_student(db, course["course_id"], entry, session=session)
    return added, progress


async def commit_paid_enrollment(
    db: AsyncIOMotorDatabase,
    event: GatewayEvent,
    session: Optional[AsyncIOMotorClientSession] = None
) -> EnrollmentOutcome:
    """
    Commit the enrollment for a succeeded gateway payment.

    Must run inside the caller's transaction. Unknown or already-processed
    external ids are a successful no-op; a missing course or user raises
    DataIntegrityError so the transaction aborts and the gateway redelivers.
    """
    pending = await find_by_external_id(
        db, event.method, event.external_id, status=PendingStatus.PENDING, session=session
    )
    if not pending:
        logger.info("No pending enrollment for %s %s, already processed or unknown",
                    event.method.value, event.external_id)
        return EnrollmentOutcome(OutcomeStatus.NOOP, message="Nothing to reconcile")

    course_id = event.course_id or pending["course_id"]
    user_id = event.user_id or pending["user_id"]
    if course_id != pending["course_id"] or user_id != pending["user_id"]:
        logger.error(
            "Event %s names course %s / user %s but pending %s belongs to %s / %s",
            event.external_id, course_id, user_id,
            pending["pending_id"], pending["course_id"], pending["user_id"]
        )
        raise DataIntegrityError(
            "Gateway metadata does not match the pending enrollment",
            details={"external_id": event.external_id}
        )

    if is_expired(pending):
        logger.warning("Late settlement for expired checkout %s discarded", event.external_id)
        await mark_status(db, pending["pending_id"], PendingStatus.EXPIRED, session=session)
        return EnrollmentOutcome(
            OutcomeStatus.STALE, course_id=course_id, user_id=user_id,
            message="Checkout expired before the payment settled"
        )

    expected = expected_amount_minor(pending)
    if event.amount_minor is not None and expected is not None and event.amount_minor != expected:
        logger.error("Amount mismatch for %s: expected %s, got %s",
                     event.external_id, expected, event.amount_minor)
        await mark_status(db, pending["pending_id"], PendingStatus.FAILED,
                          session=session, failure_reason="amount_mismatch")
        return EnrollmentOutcome(
            OutcomeStatus.MARKED_FAILED, course_id=course_id, user_id=user_id,
            message="Paid amount does not match the checkout"
        )

    course = await get_course(db, course_id, session=session)
    if not course:
        logger.error("Course %s missing while committing %s", course_id, event.external_id)
        raise DataIntegrityError("Course not found", details={"course_id": course_id})

    user = await get_user(db, user_id, session=session)
    if not user:
        logger.error("User %s missing while committing %s", user_id, event.external_id)
        raise DataIntegrityError("User not found", details={"user_id": user_id})

    outcome_fields = {
        "course_id": course_id,
        "user_id": user_id,
        "enrolled_through": EnrolledThrough.PAYMENT,
        "course_title": course.get("title"),
        "instructor_id": course.get("instructor_id"),
    }

    if is_enrolled(course, user_id):
        logger.warning("User %s already enrolled in %s, skipping enrollment", user_id, course_id)
        await mark_status(db, pending["pending_id"], PendingStatus.COMPLETED, session=session)
        return EnrollmentOutcome(OutcomeStatus.ALREADY_ENROLLED,
                                 message="Already enrolled in this course", **outcome_fields)

    await record_payment(
        db, pending, course, event.external_id,
        buyer=_buyer_details(user, course, event.metadata),
        session=session
    )

    entry = build_roster_entry(
        user_id,
        EnrolledThrough.PAYMENT,
        payment_method=pending["payment_method"],
        payment_amount=pending["amount"],
    )
    added, progress = await enroll_user(db, course, user_id, entry, session=session)
    await mark_status(db, pending["pending_id"], PendingStatus.COMPLETED, session=session)

    if not added:
        logger.warning("User %s enrolled in %s by a concurrent commit", user_id, course_id)
        return EnrollmentOutcome(OutcomeStatus.ALREADY_ENROLLED, progress=progress,
                                 message="Already enrolled in this course", **outcome_fields)

    logger.info("Enrolled user %s in %s via %s %s",
                user_id, course_id, event.method.value, event.external_id)
    return EnrollmentOutcome(OutcomeStatus.ENROLLED, progress=progress,
                             message="Successfully enrolled in course", **outcome_fields)


async def enroll_free(db: AsyncIOMotorDatabase, course_id: str, user_id: str) -> EnrollmentOutcome:
    """Enroll a user in a free course; re-enrolling returns the existing progress"""
    async with transaction(db) as session:
        course = await get_course(db, course_id, session=session)
        if not course:
            raise NotFound("Course not found")

        if not course.get("is_published", False):
            raise CourseNotPayable("Course is not available", status_code=403)

        if is_payable(course):
            raise CourseNotPayable("Course requires payment", status_code=402)

        outcome_fields = {
            "course_id": course_id,
            "user_id": user_id,
            "enrolled_through": EnrolledThrough.FREE,
            "course_title": course.get("title"),
            "instructor_id": course.get("instructor_id"),
        }

        if is_enrolled(course, user_id):
            progress = await get_progress(db, course_id, user_id, session=session)
            return EnrollmentOutcome(OutcomeStatus.ALREADY_ENROLLED, progress=progress,
                                     message="Already enrolled in this course", **outcome_fields)

        entry = build_roster_entry(user_id, EnrolledThrough.FREE)
        added, progress = await enroll_user(db, course, user_id, entry, session=session)

    if not added:
        return EnrollmentOutcome(OutcomeStatus.ALREADY_ENROLLED, progress=progress,
                                 message="Already enrolled in this course", **outcome_fields)

    logger.info("Enrolled user %s in free course %s", user_id, course_id)
    return EnrollmentOutcome(OutcomeStatus.ENROLLED, progress=progress,
                             message="Successfully enrolled in course", **outcome_fields)
