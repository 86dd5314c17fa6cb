"""
Enrollment notifications

Runs after the enrollment transaction has committed, from FastAPI
BackgroundTasks. A failure here is logged and dropped: the enrollment it
reports on is already durable.
"""

import logging
import uuid
from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.payments.models import EnrolledThrough, EnrollmentOutcome

logger = logging.getLogger(__name__)

STUDENT_MESSAGES = {
    EnrolledThrough.FREE: "You have enrolled in {title}",
    EnrolledThrough.PAYMENT: "Payment received. You are now enrolled in {title}",
    EnrolledThrough.MANUAL_PAYMENT: "Your payment was approved. You are now enrolled in {title}",
    EnrolledThrough.MANUAL_GRANT: "You have been given access to {title}",
}


def _notification(user_id: str, kind: str, course_id: str, message: str, action_url: str) -> dict:
    return {
        "notification_id": f"NOTIF_{uuid.uuid4().hex[:12].upper()}",
        "user_id": user_id,
        "type": kind,
        "course_id": course_id,
        "message": message,
        "action_url": action_url,
        "read": False,
        "created_at": datetime.utcnow(),
    }


async def notify_enrollment(db: AsyncIOMotorDatabase, outcome: EnrollmentOutcome) -> None:
    if not outcome.enrolled:
        return

    title = outcome.course_title or "your course"
    through = outcome.enrolled_through or EnrolledThrough.PAYMENT
    action_url = f"/courses/{outcome.course_id}/learn"

    try:
        docs = [
            _notification(
                outcome.user_id, "enrollment", outcome.course_id,
                STUDENT_MESSAGES[through].format(title=title), action_url
            )
        ]
        if outcome.instructor_id and outcome.instructor_id != outcome.user_id:
            docs.append(_notification(
                outcome.instructor_id, "new_student", outcome.course_id,
                f"A new student enrolled in {title}", f"/courses/{outcome.course_id}/students"
            ))
        await db.notifications.insert_many(docs)

        await db.activities.insert_one({
            "activity_id": f"ACT_{uuid.uuid4().hex[:12].upper()}",
            "user_id": outcome.user_id,
            "type": "course_enrolled",
            "course_id": outcome.course_id,
            "enrolled_through": through.value,
            "message": f"Enrolled in {title}",
            "created_at": datetime.utcnow(),
        })
    except Exception:
        logger.exception("Failed to send enrollment notifications for %s in %s",
                         outcome.user_id, outcome.course_id)
