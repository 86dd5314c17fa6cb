"""
Course roster access

The course document's ``students`` array and ``total_students`` counter are
the one shared mutable resource every enrollment path contends for. All
writes go through ``add_student`` so the counter can never drift from the
roster length.
"""

from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase

from app.payments.models import EnrolledThrough


async def get_course(
    db: AsyncIOMotorDatabase,
    course_id: str,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Optional[dict]:
    """Get course by ID"""
    return await db.courses.find_one({"course_id": course_id}, session=session)


def is_enrolled(course: dict, user_id: str) -> bool:
    return any(student.get("user_id") == user_id for student in course.get("students") or [])


def is_payable(course: dict) -> bool:
    return not course.get("is_free", False) and (course.get("price") or 0) > 0


def build_roster_entry(
    user_id: str,
    enrolled_through: EnrolledThrough,
    payment_method: Optional[str] = None,
    payment_amount: Optional[float] = None,
    granted_by: Optional[str] = None,
    payment_request_id: Optional[str] = None,
) -> dict:
    entry = {
        "user_id": user_id,
        "enrolled_at": datetime.utcnow(),
        "progress": 0,
        "completed": False,
        "enrolled_through": enrolled_through.value,
    }
    if payment_method is not None:
        entry["payment_method"] = payment_method
    if payment_amount is not None:
        entry["payment_amount"] = payment_amount
    if granted_by is not None:
        entry["granted_by"] = granted_by
    if payment_request_id is not None:
        entry["payment_request_id"] = payment_request_id
    return entry


async def add_student(
    db: AsyncIOMotorDatabase,
    course_id: str,
    entry: dict,
    session: Optional[AsyncIOMotorClientSession] = None
) -> bool:
    """
    Append-if-absent and increment, as one single-document update.

    The filter only matches while the user is missing from the roster, so two
    racing writers cannot both push: the loser matches nothing. Returns True
    when this call added the student.
    """
    result = await db.courses.update_one(
        {"course_id": course_id, "students.user_id": {"$ne": entry["user_id"]}},
        {
            "$push": {"students": entry},
            "$inc": {"total_students": 1},
            "$set": {"updated_at": datetime.utcnow()},
        },
        session=session
    )
    return result.modified_count == 1
