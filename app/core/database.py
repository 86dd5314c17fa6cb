"""
MongoDB client, transactions and indexes
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING

from app.core import config

logger = logging.getLogger(__name__)

client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.MONGO_DB_NAME]


async def get_db() -> AsyncIOMotorDatabase:
    """Database dependency"""
    return db


def serialize_mongo(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def serialize_many(docs: list[dict]) -> list[dict]:
    return [serialize_mongo(doc) for doc in docs]


@asynccontextmanager
async def transaction(database: AsyncIOMotorDatabase) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
    """
    Run a block inside one MongoDB transaction.

    Yields the session to pass as ``session=`` to every read and write in the
    block. Leaving the block normally commits; an exception aborts every
    write made through the session and is re-raised.

    With MONGO_TRANSACTIONS disabled (standalone servers, in-memory test
    databases) the block runs without a session.
    """
    if not config.MONGO_TRANSACTIONS:
        yield None
        return

    async with await database.client.start_session() as session:
        async with session.start_transaction():
            yield session


# ==================== INDEXES ====================

async def create_indexes(database: AsyncIOMotorDatabase = None):
    """Create MongoDB indexes backing the reconciliation invariants"""
    database = database if database is not None else db
    retention_seconds = config.PENDING_RETENTION_DAYS * 24 * 3600

    try:
        # Courses
        await database.courses.create_index("course_id", unique=True)
        await database.courses.create_index("students.user_id")
        await database.courses.create_index([("is_published", ASCENDING), ("is_free", ASCENDING)])

        # Pending enrollments: one external id per record, one pending checkout
        # per (user, course, method); records are purged after the retention window
        await database.pending_enrollments.create_index("pending_id", unique=True)
        await database.pending_enrollments.create_index(
            "payment_intent_id",
            unique=True,
            partialFilterExpression={"payment_intent_id": {"$type": "string"}},
        )
        await database.pending_enrollments.create_index(
            "pidx",
            unique=True,
            partialFilterExpression={"pidx": {"$type": "string"}},
        )
        await database.pending_enrollments.create_index(
            [("user_id", ASCENDING), ("course_id", ASCENDING), ("payment_method", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "pending"},
            name="one_pending_checkout",
        )
        await database.pending_enrollments.create_index("status")
        await database.pending_enrollments.create_index(
            "expires_at", expireAfterSeconds=retention_seconds
        )

        # Manual payment requests
        await database.payment_requests.create_index("request_id", unique=True)
        await database.payment_requests.create_index(
            [("user_id", ASCENDING), ("course_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": "pending"},
            name="one_pending_request",
        )
        await database.payment_requests.create_index([("course_id", ASCENDING), ("status", ASCENDING)])
        await database.payment_requests.create_index([("created_at", DESCENDING)])

        # Payment ledger
        await database.payments.create_index("transaction_id", unique=True)
        await database.payments.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await database.payments.create_index("course_id")

        # Progress
        await database.user_progress.create_index(
            [("course_id", ASCENDING), ("user_id", ASCENDING)], unique=True
        )
        await database.user_progress.create_index("user_id")

        # Notifications, activity feed, manual grants
        await database.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await database.activities.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await database.manual_access.create_index([("user_id", ASCENDING), ("course_id", ASCENDING)])

        logger.info("Payment indexes created")
    except Exception as e:
        logger.warning("Index creation warning: %s", e)
