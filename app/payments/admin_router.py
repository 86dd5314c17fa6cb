"""
Admin payment console: manual payment review, direct grants and refunds
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.auth import require_admin
from app.core.database import get_db, serialize_many, serialize_mongo
from app.payments import manual
from app.payments.exceptions import InvalidStateTransition, PaymentError
from app.payments.ledger import append_refund
from app.payments.models import ManualAccessGrant, PaymentRequestReview, RefundCreate, RequestStatus
from app.payments.notifications import notify_enrollment
from app.payments.router import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin Payments"])


@router.get("/payment-requests")
async def list_payment_requests(
    status: Optional[RequestStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    result = await manual.list_requests(db, status=status, page=page, limit=limit)
    result["requests"] = serialize_many(result["requests"])
    return result


@router.get("/payment-requests/{request_id}")
async def get_payment_request(
    request_id: str,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    request = await manual.get_request(db, request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Payment request not found")
    return serialize_mongo(request)


@router.patch("/payment-requests/{request_id}")
async def review_payment_request(
    request_id: str,
    data: PaymentRequestReview,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Approve, reject or cancel a pending payment request"""
    try:
        if data.status == RequestStatus.APPROVED:
            request, outcome = await manual.approve(db, request_id, admin["sub"], data.admin_notes)
            background_tasks.add_task(notify_enrollment, db, outcome)
        elif data.status == RequestStatus.REJECTED:
            request = await manual.reject(db, request_id, admin["sub"], data.admin_notes)
        elif data.status == RequestStatus.CANCELLED:
            request = await manual.cancel(db, request_id, admin_id=admin["sub"], notes=data.admin_notes)
        else:
            raise InvalidStateTransition("A request cannot be moved back to pending")

    except PaymentError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Review of payment request %s failed", request_id)
        raise HTTPException(status_code=500, detail="Failed to update payment request")

    return {
        "success": True,
        "message": f"Payment request {data.status.value}",
        "request": serialize_mongo(request),
    }


@router.post("/manual-access", status_code=201)
async def grant_manual_access(
    data: ManualAccessGrant,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    try:
        outcome = await manual.grant_access(
            db, admin["sub"], data.user_id, data.course_id,
            reason=data.reason, expires_at=data.expires_at
        )
    except PaymentError as e:
        raise http_error(e)

    background_tasks.add_task(notify_enrollment, db, outcome)
    return {"success": True, "message": outcome.message, "enrollment": outcome.to_dict()}


@router.post("/payments/{transaction_id}/refunds")
async def record_refund(
    transaction_id: str,
    data: RefundCreate,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Record a refund issued at the gateway against its ledger row"""
    try:
        payment = await append_refund(
            db, transaction_id, data.amount, reason=data.reason, refunded_by=admin["sub"]
        )
    except PaymentError as e:
        raise http_error(e)

    return {"success": True, "payment": serialize_mongo(payment)}
