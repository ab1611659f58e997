"""
Payment models
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.transaction import TransactionStatus, TransactionType
from utils.money import Money


class PaymentStatus(str, Enum):
    """Payment status enumeration"""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FeeType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class ProcessPaymentRequest(BaseModel):
    """Request model for starting a payment on a transaction"""

    transaction_id: str = Field(..., alias="transactionId")
    method: str = Field(..., min_length=1)
    amount: Money = Field(..., gt=0)
    user_id: Optional[str] = Field(None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class UpdatePaymentStatusRequest(BaseModel):
    status: PaymentStatus
    note: Optional[str] = Field(None, max_length=1000)
    actor_id: Optional[str] = None


class StatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: PaymentStatus
    note: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    amount: Money
    service_fee: Money
    method: str
    status: PaymentStatus
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    status_history: List[StatusHistoryRead] = []


class PaymentReceipt(BaseModel):
    """Returned when a payment is created or re-pointed"""

    transaction_id: str
    payment_id: str
    method: str
    amount: Money
    service_fee: Money
    total_amount: Money
    status: PaymentStatus
    payment_expires_at: Optional[datetime] = None
    transaction_expires_at: Optional[datetime] = None
    transaction_type: TransactionType
    item_name: str
    instructions: Dict[str, Any] = {}


class ActivationOutcome(BaseModel):
    attempted: bool = False
    success: bool = False
    action: Optional[str] = None
    error: Optional[str] = None


class PaymentUpdateResult(BaseModel):
    payment: PaymentRead
    transaction_status: TransactionStatus
    activation: ActivationOutcome = ActivationOutcome()


class PaymentWebhookEvent(BaseModel):
    """Payment status event pushed by a payment provider"""

    event_id: str
    payment_id: str
    status: PaymentStatus
    occurred_at: Optional[datetime] = None
    note: Optional[str] = None
