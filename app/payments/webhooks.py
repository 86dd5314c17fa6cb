"""
Webhook Verifier & Dispatcher

Authenticates gateway notifications, then routes each one through a single
transaction. Signature checks happen before the database is touched, so a
forged request never writes anything.
"""

import logging
from typing import Awaitable, Callable, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase

from app.core.database import transaction
from app.payments import gateways
from app.payments.enrollment import commit_paid_enrollment
from app.payments.intents import find_by_external_id, mark_failed_by_external_id
from app.payments.models import (
    EnrollmentOutcome,
    GatewayEvent,
    GatewayEventKind,
    GatewayMethod,
    OutcomeStatus,
)

logger = logging.getLogger(__name__)

Handler = Callable[
    [AsyncIOMotorDatabase, GatewayEvent, Optional[AsyncIOMotorClientSession]],
    Awaitable[EnrollmentOutcome]
]


async def _handle_succeeded(db, event, session) -> EnrollmentOutcome:
    if not event.course_id or not event.user_id:
        logger.warning("Payment %s missing required metadata, ignoring", event.external_id)
        return EnrollmentOutcome(OutcomeStatus.NOOP, message="Missing course or user metadata")
    return await commit_paid_enrollment(db, event, session=session)


async def _handle_failed(db, event, session) -> EnrollmentOutcome:
    # Canceled and failed payments end the checkout the same way
    marked = await mark_failed_by_external_id(
        db, event.method, event.external_id,
        reason=event.failure_reason or event.raw_type,
        session=session
    )
    if not marked:
        logger.info("No pending checkout to fail for %s %s", event.method.value, event.external_id)
        return EnrollmentOutcome(OutcomeStatus.NOOP, course_id=event.course_id, user_id=event.user_id)

    logger.info("Checkout %s marked failed (%s)", event.external_id, event.raw_type)
    return EnrollmentOutcome(
        OutcomeStatus.MARKED_FAILED, course_id=event.course_id, user_id=event.user_id,
        message="Payment failed"
    )


async def _handle_ignored(db, event, session) -> EnrollmentOutcome:
    logger.info("Ignoring %s event %s", event.method.value, event.raw_type)
    return EnrollmentOutcome(OutcomeStatus.NOOP, message=f"Unhandled event {event.raw_type}")


EVENT_HANDLERS: Dict[GatewayEventKind, Handler] = {
    GatewayEventKind.SUCCEEDED: _handle_succeeded,
    GatewayEventKind.FAILED: _handle_failed,
    GatewayEventKind.CANCELED: _handle_failed,
    GatewayEventKind.IGNORED: _handle_ignored,
}

_unhandled = set(GatewayEventKind) - set(EVENT_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No webhook handler for event kinds: {sorted(k.value for k in _unhandled)}")


async def dispatch_event(db: AsyncIOMotorDatabase, event: GatewayEvent) -> EnrollmentOutcome:
    """
    Run the handler for a verified event inside one transaction.
    Any exception aborts every write of the event and propagates.
    """
    handler = EVENT_HANDLERS[event.kind]
    async with transaction(db) as session:
        outcome = await handler(db, event, session)
    return outcome


async def handle_stripe_webhook(
    db: AsyncIOMotorDatabase,
    payload: bytes,
    signature_header: Optional[str]
) -> EnrollmentOutcome:
    event = gateways.verify_stripe_event(payload, signature_header)
    gateway_event = gateways.parse_stripe_event(event)
    logger.info("Stripe event %s (%s) for %s", event.get("id"), gateway_event.raw_type,
                gateway_event.external_id)
    return await dispatch_event(db, gateway_event)


async def handle_khalti_callback(db: AsyncIOMotorDatabase, pidx: str) -> EnrollmentOutcome:
    """Khalti return URL: the lookup against Khalti is the authentication step"""
    lookup = await gateways.lookup_khalti(pidx)
    if lookup.get("pidx") and lookup["pidx"] != pidx:
        logger.error("Khalti lookup for %s answered for %s", pidx, lookup["pidx"])
        return EnrollmentOutcome(OutcomeStatus.NOOP, message="Lookup mismatch")

    lookup.setdefault("pidx", pidx)
    pending = await find_by_external_id(db, GatewayMethod.KHALTI, pidx)
    gateway_event = gateways.parse_khalti_lookup(
        lookup,
        course_id=pending["course_id"] if pending else None,
        user_id=pending["user_id"] if pending else None,
    )
    logger.info("Khalti payment %s reported %s", pidx, gateway_event.raw_type)
    return await dispatch_event(db, gateway_event)
