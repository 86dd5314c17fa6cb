"""
Stripe & Khalti gateway integration

Stripe: signed webhooks (Stripe-Signature header, HMAC-SHA256 over
"<timestamp>.<payload>") plus PaymentIntent create/retrieve.
Khalti: no signed webhook exists; callbacks are authenticated by looking the
pidx up server-side with the merchant secret key.

Both gateways are normalised into GatewayEvent so the dispatcher only ever
sees the closed GatewayEventKind set.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
import stripe
from starlette.concurrency import run_in_threadpool

from app.core import config
from app.payments.exceptions import (
    BusinessValidationError,
    GatewayError,
    PaymentError,
    SignatureVerificationFailed,
)
from app.payments.models import GatewayEvent, GatewayEventKind, GatewayMethod

logger = logging.getLogger(__name__)

STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": GatewayEventKind.SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventKind.FAILED,
    "payment_intent.canceled": GatewayEventKind.CANCELED,
}

STRIPE_INTENT_KINDS = {
    "succeeded": GatewayEventKind.SUCCEEDED,
    "canceled": GatewayEventKind.CANCELED,
}

KHALTI_STATUS_KINDS = {
    "Completed": GatewayEventKind.SUCCEEDED,
    "Expired": GatewayEventKind.FAILED,
    "User canceled": GatewayEventKind.CANCELED,
}


# ==================== STRIPE ====================

def verify_stripe_event(payload: bytes, signature_header: Optional[str]) -> dict:
    """
    Authenticate a raw Stripe webhook body and decode it.

    Raises SignatureVerificationFailed on a missing/invalid signature, a
    timestamp outside the tolerance window, or an undecodable body.
    """
    if not signature_header:
        raise SignatureVerificationFailed("Missing signature")

    if not config.STRIPE_WEBHOOK_SECRET:
        raise PaymentError("Stripe webhook secret is not configured", status_code=500,
                           error_code="misconfigured")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureVerificationFailed("Invalid payload")

    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature_header,
            config.STRIPE_WEBHOOK_SECRET,
            config.STRIPE_WEBHOOK_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise SignatureVerificationFailed("Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise SignatureVerificationFailed("Invalid payload")

    if not isinstance(event, dict):
        raise SignatureVerificationFailed("Invalid payload")
    return event


def parse_stripe_event(event: dict) -> GatewayEvent:
    """Map a verified Stripe event onto the internal event kinds"""
    event_type = event.get("type") or ""
    intent = (event.get("data") or {}).get("object") or {}
    metadata = intent.get("metadata") or {}
    kind = STRIPE_EVENT_KINDS.get(event_type, GatewayEventKind.IGNORED)

    external_id = intent.get("id")
    if not external_id:
        logger.warning("Stripe event %s carries no payment intent id", event.get("id"))
        kind = GatewayEventKind.IGNORED

    failure_reason = (intent.get("last_payment_error") or {}).get("message") \
        or intent.get("cancellation_reason")

    return GatewayEvent(
        method=GatewayMethod.STRIPE,
        kind=kind,
        external_id=external_id or "",
        raw_type=event_type,
        course_id=metadata.get("course_id"),
        user_id=metadata.get("user_id"),
        amount_minor=intent.get("amount_received") or intent.get("amount"),
        currency=intent.get("currency"),
        failure_reason=failure_reason,
        metadata=dict(metadata),
    )


def parse_stripe_intent(intent, course_id: str, user_id: str) -> GatewayEvent:
    """Normalise a PaymentIntent fetched during client-side verification"""
    status = getattr(intent, "status", None)
    return GatewayEvent(
        method=GatewayMethod.STRIPE,
        kind=STRIPE_INTENT_KINDS.get(status, GatewayEventKind.IGNORED),
        external_id=intent.id,
        raw_type=f"payment_intent.{status}",
        course_id=course_id,
        user_id=user_id,
        amount_minor=getattr(intent, "amount_received", None) or None,
        currency=getattr(intent, "currency", None),
    )


async def create_stripe_payment_intent(
    amount: float,
    currency: str,
    metadata: dict,
    customer_email: Optional[str] = None
) -> dict:
    if amount < config.STRIPE_MIN_AMOUNT:
        raise BusinessValidationError("Amount must be at least $0.50")

    params = {
        "amount": int(round(amount * 100)),
        "currency": currency,
        "metadata": metadata,
        "automatic_payment_methods": {"enabled": True},
        "description": f"Course enrollment: {metadata.get('course_title', '')}",
    }
    if customer_email:
        params["receipt_email"] = customer_email

    try:
        intent = await run_in_threadpool(
            stripe.PaymentIntent.create, api_key=config.STRIPE_SECRET_KEY, **params
        )
    except stripe.AuthenticationError:
        logger.error("Stripe rejected the configured secret key")
        raise GatewayError("Payment provider is misconfigured")
    except stripe.StripeError as e:
        logger.warning("Stripe payment intent creation failed: %s", e)
        raise GatewayError(f"Payment failed: {e.user_message or str(e)}", status_code=400)

    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "amount": amount,
        "currency": currency,
    }


async def retrieve_stripe_payment_intent(payment_intent_id: str):
    try:
        return await run_in_threadpool(
            stripe.PaymentIntent.retrieve, payment_intent_id, api_key=config.STRIPE_SECRET_KEY
        )
    except stripe.StripeError as e:
        logger.warning("Error retrieving Stripe payment intent %s: %s", payment_intent_id, e)
        raise GatewayError("Failed to retrieve payment intent", status_code=400)


# ==================== KHALTI ====================

async def _khalti_post(path: str, payload: dict) -> dict:
    if not config.KHALTI_SECRET_KEY:
        raise GatewayError("Khalti is not properly configured")

    headers = {
        "Authorization": f"Key {config.KHALTI_SECRET_KEY}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=config.KHALTI_TIMEOUT_SECONDS) as client:
            resp = await client.post(f"{config.KHALTI_BASE_URL}{path}", json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.warning("Khalti request to %s failed: %s", path, e)
        raise GatewayError("Network error: Unable to reach Khalti API")

    try:
        data = resp.json()
    except ValueError:
        raise GatewayError(f"Invalid response format from Khalti: {resp.text[:100]}")

    if resp.status_code >= 400:
        if isinstance(data, dict):
            detail = data.get("detail") or data.get("error_key") or json.dumps(data)
        else:
            detail = str(data)
        raise GatewayError(f"Khalti API Error ({resp.status_code}): {detail}", status_code=400)

    if not isinstance(data, dict):
        raise GatewayError("Invalid response format from Khalti")
    return data


async def initiate_khalti_payment(payload: dict) -> dict:
    data = await _khalti_post("/epayment/initiate/", payload)
    if not data.get("pidx") or not data.get("payment_url"):
        raise GatewayError("Invalid response from Khalti API")
    return data


async def lookup_khalti(pidx: str) -> dict:
    """Authoritative payment status for a pidx"""
    if not pidx or not pidx.strip():
        raise BusinessValidationError("PIDX is required for verification")
    return await _khalti_post("/epayment/lookup/", {"pidx": pidx})


def parse_khalti_lookup(lookup: dict, course_id: Optional[str] = None,
                        user_id: Optional[str] = None) -> GatewayEvent:
    status = lookup.get("status") or ""
    return GatewayEvent(
        method=GatewayMethod.KHALTI,
        kind=KHALTI_STATUS_KINDS.get(status, GatewayEventKind.IGNORED),
        external_id=lookup.get("pidx") or "",
        raw_type=status,
        course_id=course_id,
        user_id=user_id,
        amount_minor=lookup.get("total_amount"),
        currency=config.LOCAL_CURRENCY,
        failure_reason=status if status in ("Expired", "User canceled") else None,
    )


def parse_khalti_expiry(expires_at: Optional[str]) -> Optional[datetime]:
    """Khalti answers with an offset-aware ISO timestamp; stored as naive UTC"""
    if not expires_at:
        return None
    try:
        parsed = datetime.fromisoformat(expires_at)
    except ValueError:
        logger.warning("Unparseable Khalti expiry %r", expires_at)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
