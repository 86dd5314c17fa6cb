"""
Course enrollment & payment routes

Free enrollment, Stripe / Khalti checkout, client-side verification, the
Khalti return URL, the signed Stripe webhook and manual payment requests.

Add to main.py:
from app.payments.router import router as payments_router
app.include_router(payments_router)
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core import config
from app.core.auth import get_current_user
from app.core.database import get_db, serialize_mongo
from app.core.rate_limit import rate_limit
from app.payments import gateways, manual
from app.payments.enrollment import enroll_free
from app.payments.exceptions import (
    BusinessValidationError,
    NotFound,
    PaymentError,
    SignatureVerificationFailed,
)
from app.payments.intents import create_pending, ensure_can_checkout, find_by_external_id
from app.payments.models import (
    GatewayMethod,
    OutcomeStatus,
    PaymentInitiateRequest,
    PaymentRequestCreate,
    PaymentVerifyRequest,
)
from app.payments.notifications import notify_enrollment
from app.payments.roster import get_course, is_enrolled
from app.payments.webhooks import dispatch_event, handle_khalti_callback, handle_stripe_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Payments & Enrollment"])


def http_error(e: PaymentError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


def _display_name(user: dict) -> str:
    return user.get("name") or user.get("email") or user["sub"]


# ==================== FREE ENROLLMENT ====================

@router.post("/courses/{course_id}/enroll")
async def enroll_in_course(
    course_id: str,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    try:
        outcome = await enroll_free(db, course_id, user["sub"])
    except PaymentError as e:
        raise http_error(e)
    except Exception:
        logger.exception("Free enrollment failed for %s in %s", user["sub"], course_id)
        raise HTTPException(status_code=500, detail="Failed to enroll in course")

    if outcome.enrolled:
        background_tasks.add_task(notify_enrollment, db, outcome)

    return {
        "success": True,
        "message": outcome.message,
        "enrollment": outcome.to_dict(),
        "progress": serialize_mongo(outcome.progress),
    }


@router.get("/courses/{course_id}/enrollment-status")
async def get_enrollment_status(
    course_id: str,
    user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Whether the caller is on the course roster; course_id may also be a slug"""
    course = await db.courses.find_one(
        {"$or": [{"course_id": course_id}, {"slug": course_id}]},
        {"course_id": 1, "students.user_id": 1}
    )
    if not course:
        return {"is_enrolled": False, "course_id": course_id}

    return {"is_enrolled": is_enrolled(course, user["sub"]), "course_id": course["course_id"]}


# ==================== CHECKOUT ====================

async def _initiate_stripe(db, course: dict, user: dict) -> dict:
    metadata = {
        "course_id": course["course_id"],
        "user_id": user["sub"],
        "course_title": course.get("title", ""),
        "user_email": user.get("email", ""),
        "user_name": _display_name(user),
    }
    currency = course.get("currency") or config.DEFAULT_CURRENCY
    intent = await gateways.create_stripe_payment_intent(
        course["price"], currency, metadata, customer_email=user.get("email")
    )

    pending = await create_pending(
        db, course["course_id"], user["sub"], GatewayMethod.STRIPE,
        intent["payment_intent_id"], course["price"], currency
    )
    return {
        "payment_method": GatewayMethod.STRIPE.value,
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["payment_intent_id"],
        "amount": course["price"],
        "currency": currency,
        "expires_at": pending["expires_at"],
    }


async def _initiate_khalti(db, course: dict, user: dict) -> dict:
    amount_npr = int(round(course["price"] * config.KHALTI_EXCHANGE_RATE))
    if amount_npr < config.KHALTI_MIN_AMOUNT_NPR:
        raise BusinessValidationError(f"Amount must be at least {config.KHALTI_MIN_AMOUNT_NPR} NPR")

    payload = {
        "return_url": f"{config.API_BASE_URL}/payments/khalti/callback",
        "website_url": config.BASE_URL,
        "amount": amount_npr * 100,  # paisa
        "purchase_order_id": f"{course['course_id']}_{user['sub']}_{int(time.time())}",
        "purchase_order_name": course.get("title") or course["course_id"],
        "customer_info": {
            "name": _display_name(user),
            "email": user.get("email", ""),
        },
    }
    data = await gateways.initiate_khalti_payment(payload)

    pending = await create_pending(
        db, course["course_id"], user["sub"], GatewayMethod.KHALTI,
        data["pidx"], course["price"], course.get("currency") or config.DEFAULT_CURRENCY,
        amount_in_local_currency=amount_npr,
        expires_at=gateways.parse_khalti_expiry(data.get("expires_at")),
    )
    return {
        "payment_method": GatewayMethod.KHALTI.value,
        "pidx": data["pidx"],
        "payment_url": data["payment_url"],
        "amount": amount_npr,
        "currency": config.LOCAL_CURRENCY,
        "expires_at": pending["expires_at"],
    }


@router.post("/courses/{course_id}/payment/initiate")
async def initiate_payment(
    course_id: str,
    data: PaymentInitiateRequest,
    user: dict = Depends(get_current_user),
    _limit: bool = Depends(rate_limit("payment_initiate", config.INITIATE_RATE_LIMIT, config.RATE_LIMIT_WINDOW)),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """
    Open a gateway checkout and record it as a pending enrollment.
    Validation runs before the gateway is contacted.
    """
    try:
        course = await get_course(db, course_id)
        await ensure_can_checkout(db, course, user["sub"], data.payment_method)

        if data.payment_method == GatewayMethod.STRIPE:
            checkout = await _initiate_stripe(db, course, user)
        else:
            checkout = await _initiate_khalti(db, course, user)

        logger.info("%s checkout opened for %s in %s", data.payment_method.value, user["sub"], course_id)
        return {"success": True, **checkout}

    except PaymentError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Payment initiation failed for %s in %s", user["sub"], course_id)
        raise HTTPException(status_code=500, detail="Failed to initiate payment")


@router.post("/courses/{course_id}/payment/verify")
async def verify_payment(
    course_id: str,
    data: PaymentVerifyRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    _limit: bool = Depends(rate_limit("payment_verify", config.VERIFY_RATE_LIMIT, config.RATE_LIMIT_WINDOW)),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """
    Client-side confirmation after returning from the gateway.
    The gateway is asked for the payment status; the client's word is never trusted.
    """
    external_id = data.payment_intent_id if data.payment_method == GatewayMethod.STRIPE else data.pidx

    try:
        if not external_id:
            raise BusinessValidationError("Payment identifier is required")

        pending = await find_by_external_id(db, data.payment_method, external_id)
        if not pending or pending["course_id"] != course_id or pending["user_id"] != user["sub"]:
            raise NotFound("Payment not found")

        if data.payment_method == GatewayMethod.STRIPE:
            intent = await gateways.retrieve_stripe_payment_intent(external_id)
            event = gateways.parse_stripe_intent(intent, course_id, user["sub"])
        else:
            lookup = await gateways.lookup_khalti(external_id)
            lookup.setdefault("pidx", external_id)
            event = gateways.parse_khalti_lookup(lookup, course_id, user["sub"])

        outcome = await dispatch_event(db, event)

    except PaymentError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Payment verification failed for %s", external_id)
        raise HTTPException(status_code=500, detail="Failed to verify payment")

    if outcome.enrolled:
        background_tasks.add_task(notify_enrollment, db, outcome)

    # A webhook may have committed the enrollment before this request arrived
    course = await get_course(db, course_id)
    enrolled = bool(course) and is_enrolled(course, user["sub"])

    return {
        "success": enrolled,
        "status": outcome.status.value,
        "message": outcome.message or ("Enrolled" if enrolled else "Payment not completed"),
        "enrollment": outcome.to_dict(),
    }


@router.get("/payments/khalti/callback")
async def khalti_callback(
    background_tasks: BackgroundTasks,
    pidx: Optional[str] = None,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Khalti return URL: verify by lookup, then send the browser back to the site"""
    if not pidx:
        return RedirectResponse(f"{config.BASE_URL}/payment/failed?reason=missing_pidx")

    try:
        outcome = await handle_khalti_callback(db, pidx)
    except Exception:
        logger.exception("Khalti callback failed for %s", pidx)
        return RedirectResponse(f"{config.BASE_URL}/payment/failed?reason=verification_error")

    if outcome.enrolled:
        background_tasks.add_task(notify_enrollment, db, outcome)

    if outcome.status in (OutcomeStatus.ENROLLED, OutcomeStatus.ALREADY_ENROLLED):
        return RedirectResponse(f"{config.BASE_URL}/courses/{outcome.course_id}/learn?payment=success")
    return RedirectResponse(f"{config.BASE_URL}/payment/failed?reason={outcome.status.value}")


# ==================== STRIPE WEBHOOK ====================

@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """
    Stripe webhook handler - NO AUTH (Stripe signature verification)

    4xx tells Stripe to stop, 5xx makes it redeliver.
    """
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")

    try:
        outcome = await handle_stripe_webhook(db, payload, signature)
    except SignatureVerificationFailed as e:
        raise HTTPException(status_code=400, detail=e.message)
    except PaymentError as e:
        logger.error("Webhook processing failed: %s", e.message)
        raise http_error(e)
    except Exception:
        logger.exception("Webhook handler error")
        raise HTTPException(status_code=500, detail="Webhook handler failed")

    if outcome.enrolled:
        background_tasks.add_task(notify_enrollment, db, outcome)

    return {"received": True, "status": outcome.status.value}


# ==================== MANUAL PAYMENT REQUESTS ====================

@router.post("/courses/{course_id}/payment-requests", status_code=201)
async def submit_payment_request(
    course_id: str,
    data: PaymentRequestCreate,
    user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    try:
        request = await manual.submit_payment_request(
            db, user["sub"], course_id, data.payment_method,
            transaction_id=data.transaction_id, proof=data.payment_proof
        )
    except PaymentError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": "Payment request submitted. An admin will review it shortly.",
        "request": serialize_mongo(request),
    }


@router.post("/payment-requests/{request_id}/cancel")
async def cancel_payment_request(
    request_id: str,
    user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    try:
        request = await manual.cancel(db, request_id, user_id=user["sub"])
    except PaymentError as e:
        raise http_error(e)

    return {"success": True, "request": serialize_mongo(request)}
