"""
Voucher models
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.transaction import CartItem, Currency, PricedItem
from utils.money import Money


class CalculationKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class VoucherScope(str, Enum):
    TOTAL = "total"
    PRODUCTS = "products"
    ADDONS = "addons"
    WHATSAPP = "whatsapp"


class VoucherSemantics(BaseModel):
    calculation_kind: CalculationKind
    scope: VoucherScope


class DiscountBreakdown(BaseModel):
    applicable_amount: Money
    discount_amount: Money


class VoucherRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    name: str
    description: Optional[str] = None
    type: str
    discount_type: str
    value: Money
    min_amount: Optional[Money] = None
    max_discount: Optional[Money] = None
    max_uses: Optional[int] = None
    allow_multiple_use_per_user: bool
    is_active: bool
    start_date: datetime
    end_date: Optional[datetime] = None


class VoucherCheckResult(BaseModel):
    """Outcome of a voucher validation

    When ``valid`` is false, ``reason`` names the first failing rule
    (e.g. ``VoucherExpired``) and ``error`` carries its code.
    """

    valid: bool
    reason: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    voucher: Optional[VoucherRead] = None
    applicable_amount: Money = Decimal("0")
    discount_amount: Money = Decimal("0")


class VoucherCheckRequest(BaseModel):
    """Request model for the public voucher check"""

    code: str = Field(..., min_length=1)
    currency: Currency = Currency.IDR
    items: List[CartItem] = Field(..., min_length=1)
    user_id: Optional[str] = Field(
        None, description="Set for authenticated checks, omitted for public ones"
    )


class VoucherCalculation(BaseModel):
    original_amount: Money
    applicable_amount: Money
    discount_amount: Money
    final_amount: Money
    savings: Money
    currency: Currency
    items: List[PricedItem]


class VoucherCheckResponse(BaseModel):
    success: bool
    is_valid: bool
    voucher: Optional[VoucherRead] = None
    calculation: Optional[VoucherCalculation] = None


class VoucherCreate(BaseModel):
    """Admin payload for a new voucher"""

    code: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    calculation_kind: CalculationKind
    scope: VoucherScope = VoucherScope.TOTAL
    value: Decimal = Field(..., gt=0)
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_discount: Optional[Decimal] = Field(None, gt=0)
    max_uses: Optional[int] = Field(None, ge=1)
    allow_multiple_use_per_user: bool = False
    is_active: bool = True
    start_date: datetime
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.calculation_kind == CalculationKind.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage vouchers cannot exceed 100")
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class VoucherUsageSummary(BaseModel):
    voucher_id: str
    code: str
    usage_count: int
    total_discount: Money
    max_uses: Optional[int] = None
    remaining_uses: Optional[int] = None
