from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# ==================== ENUMS ====================

class GatewayMethod(str, Enum):
    STRIPE = "stripe"
    KHALTI = "khalti"


class PendingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ManualPaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"
    CASH = "cash"
    OTHER = "other"


class EnrolledThrough(str, Enum):
    FREE = "free"
    PAYMENT = "payment"
    MANUAL_PAYMENT = "manual_payment"
    MANUAL_GRANT = "manual_grant"


class LedgerStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class GatewayEventKind(str, Enum):
    """Closed set of gateway outcomes the dispatcher knows how to handle"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    IGNORED = "ignored"


class OutcomeStatus(str, Enum):
    ENROLLED = "enrolled"
    ALREADY_ENROLLED = "already_enrolled"
    NOOP = "noop"
    STALE = "stale"
    MARKED_FAILED = "marked_failed"


# ==================== RECONCILIATION TYPES ====================

@dataclass
class GatewayEvent:
    """A verified gateway notification, normalised across Stripe and Khalti"""
    method: GatewayMethod
    kind: GatewayEventKind
    external_id: str
    raw_type: str
    course_id: Optional[str] = None
    user_id: Optional[str] = None
    amount_minor: Optional[int] = None  # smallest currency unit, as reported by the gateway
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EnrollmentOutcome:
    status: OutcomeStatus
    course_id: Optional[str] = None
    user_id: Optional[str] = None
    enrolled_through: Optional[EnrolledThrough] = None
    course_title: Optional[str] = None
    instructor_id: Optional[str] = None
    progress: Optional[dict] = None
    message: str = ""

    @property
    def enrolled(self) -> bool:
        return self.status == OutcomeStatus.ENROLLED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "course_id": self.course_id,
            "user_id": self.user_id,
            "enrolled_through": self.enrolled_through.value if self.enrolled_through else None,
            "message": self.message,
        }


# ==================== REQUEST MODELS ====================

class PaymentInitiateRequest(BaseModel):
    payment_method: GatewayMethod


class PaymentVerifyRequest(BaseModel):
    payment_method: GatewayMethod
    payment_intent_id: Optional[str] = None
    pidx: Optional[str] = None


class PaymentProof(BaseModel):
    url: str
    file_name: str
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)


class PaymentRequestCreate(BaseModel):
    payment_method: ManualPaymentMethod
    transaction_id: Optional[str] = Field(None, max_length=200)
    payment_proof: Optional[PaymentProof] = None


class PaymentRequestReview(BaseModel):
    status: RequestStatus
    admin_notes: Optional[str] = Field(None, max_length=2000)


class ManualAccessGrant(BaseModel):
    user_id: str
    course_id: str
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


class RefundCreate(BaseModel):
    amount: float = Field(..., gt=0)
    reason: Optional[str] = None
