import logging
import uuid
from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


def first_lesson_id(course: dict) -> Optional[str]:
    """First lesson of the first chapter of the first module, if any"""
    modules = course.get("modules") or []
    if not modules:
        return None

    first_module = modules[0]
    chapters = first_module.get("chapters") or []
    if chapters:
        lessons = chapters[0].get("lessons") or []
    else:
        # Legacy courses keep lessons directly on the module
        lessons = first_module.get("lessons") or []
    if lessons:
        return lessons[0].get("lesson_id")
    return None


async def get_progress(
    db: AsyncIOMotorDatabase,
    course_id: str,
    user_id: str,
    session: Optional[AsyncIOMotorClientSession] = None
) -> Optional[dict]:
    return await db.user_progress.find_one(
        {"course_id": course_id, "user_id": user_id}, session=session
    )


async def initialize_progress(
    db: AsyncIOMotorDatabase,
    course: dict,
    user_id: str,
    session: Optional[AsyncIOMotorClientSession] = None
) -> dict:
    """
    Create the single progress record for a newly enrolled student.

    Safe to call when the record already exists (re-enrollment, legacy
    data): the existing record is returned untouched. Inside a transaction
    the existence check is what prevents the duplicate, since a duplicate-key
    failure would abort the whole transaction; outside one, a concurrent
    insert losing the unique-index race is read back as already initialised.
    """
    course_id = course["course_id"]

    existing = await get_progress(db, course_id, user_id, session=session)
    if existing:
        logger.info("Progress already initialised for user %s in %s", user_id, course_id)
        return existing

    now = datetime.utcnow()
    progress_doc = {
        "progress_id": f"PROG_{uuid.uuid4().hex[:12].upper()}",
        "course_id": course_id,
        "user_id": user_id,
        "completed_lessons": [],
        "current_lesson": first_lesson_id(course),
        "progress": 0.0,
        "time_spent": 0,
        "completed": False,
        "completed_at": None,
        "notes": [],
        "last_accessed": now,
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.user_progress.insert_one(progress_doc, session=session)
    except DuplicateKeyError:
        if session is not None:
            raise
        logger.info("Progress for user %s in %s created concurrently", user_id, course_id)
        return await get_progress(db, course_id, user_id)

    return progress_doc
