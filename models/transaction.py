"""
Checkout and transaction models

Status enumerations shared by the ORM layer and the services, plus the
request/response schemas of the checkout endpoints.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.money import Money


class Currency(str, Enum):
    IDR = "idr"
    USD = "usd"


class ItemType(str, Enum):
    PRODUCT = "product"
    ADDON = "addon"
    WHATSAPP = "whatsapp"


class Duration(str, Enum):
    MONTH = "month"
    YEAR = "year"


class TransactionType(str, Enum):
    PRODUCT = "product"
    WHATSAPP_SERVICE = "whatsapp_service"
    MIXED_CHECKOUT = "mixed_checkout"


class TransactionStatus(str, Enum):
    """Transaction status enumeration"""

    CREATED = "created"
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubTransactionStatus(str, Enum):
    """Status of a product, addon or WhatsApp row inside a transaction"""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class EntitlementStatus(str, Enum):
    ACTIVE = "active"


class CartItem(BaseModel):
    """One line of a cart as sent by the client"""

    type: ItemType = Field(..., description="product, addon or whatsapp")
    id: str = Field(..., min_length=1, description="Catalog id of the item")
    quantity: int = Field(default=1, ge=1)
    duration: Optional[Duration] = Field(
        None, description="Billing period, WhatsApp packages only"
    )

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        if value == "addons":
            return ItemType.ADDON.value
        return value


class PricedItem(BaseModel):
    type: ItemType
    id: str
    name: str
    unit_price: Money
    quantity: int
    line_total: Money
    duration: Optional[Duration] = None


class PricedCart(BaseModel):
    currency: Currency
    items: List[PricedItem]
    subtotal: Money


class CheckoutRequest(BaseModel):
    """Request model for creating a transaction"""

    user_id: str = Field(..., description="Authenticated customer id")
    items: List[CartItem] = Field(..., min_length=1)
    currency: Currency = Currency.IDR
    voucher_code: Optional[str] = None
    notes: Optional[str] = None


class CancelTransactionRequest(BaseModel):
    user_id: Optional[str] = None
    reason: str = Field(default="Cancelled by customer", max_length=500)


class SubTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: SubTransactionStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProductLineRead(SubTransactionRead):
    package_id: str
    quantity: int
    unit_price: Money


class AddonLineRead(SubTransactionRead):
    addon_id: str
    quantity: int
    unit_price: Money


class WhatsappLineRead(SubTransactionRead):
    whatsapp_package_id: str
    duration: Duration


class TransactionRead(BaseModel):
    """Snapshot of a transaction and its line items"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: TransactionType
    status: TransactionStatus
    currency: Currency
    original_amount: Money
    discount_amount: Money
    final_amount: Money
    voucher_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    product_transactions: List[ProductLineRead] = []
    addon_transactions: List[AddonLineRead] = []
    whatsapp_transaction: Optional[WhatsappLineRead] = None


class TransactionResponse(BaseModel):
    """Response model for transaction query"""

    success: bool
    transaction: Optional[TransactionRead] = None
    message: Optional[str] = None


class ActivationResult(BaseModel):
    """What the activation engine did for one transaction

    ``action`` is created, extended or renewed for WhatsApp entitlements,
    activated for product-only orders and already_active on replays.
    """

    transaction_id: str
    transaction_status: TransactionStatus
    action: str
    whatsapp_package_id: Optional[str] = None
    expired_at: Optional[datetime] = None


class SweepItemResult(BaseModel):
    transaction_id: str
    user_id: str
    package_id: Optional[str] = None
    package_name: Optional[str] = None
    outcome: str
    action: Optional[str] = None
    expired_at: Optional[datetime] = None
    error: Optional[str] = None


class SweepReport(BaseModel):
    """Summary of one activation sweep"""

    total_transactions: int = 0
    activated: int = 0
    skipped: int = 0
    errors: int = 0
    duration: str = "0ms"
    results: List[SweepItemResult] = []

    def to_response(self) -> dict:
        return {
            "success": True,
            "summary": {
                "totalTransactions": self.total_transactions,
                "activated": self.activated,
                "skipped": self.skipped,
                "errors": self.errors,
                "duration": self.duration,
            },
            "results": [result.model_dump(mode="json") for result in self.results],
        }
