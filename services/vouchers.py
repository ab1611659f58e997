"""
Voucher validation and discount calculation

Legacy voucher rows may hold the calculation kind and the scope in either of
the ``type`` / ``discount_type`` columns. ``resolve_voucher_semantics`` is the
only place that reads those two columns; everything else works on the
resolved ``VoucherSemantics``.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.orm import sessionmaker

from database.models import Voucher
from database.operations import Repositories, unit_of_work
from models.transaction import CartItem, Currency, ItemType, PricedCart, PricedItem
from models.voucher import (
    CalculationKind,
    DiscountBreakdown,
    VoucherCalculation,
    VoucherCheckResponse,
    VoucherCheckResult,
    VoucherCreate,
    VoucherRead,
    VoucherScope,
    VoucherSemantics,
    VoucherUsageSummary,
)
from services.errors import (
    AlreadyUsed,
    BelowMinimum,
    InvalidVoucherDefinition,
    UsageLimitReached,
    VoucherError,
    VoucherExpired,
    VoucherInactive,
    VoucherNotFound,
    VoucherNotYetValid,
)
from services.pricing import PricingResolver
from utils.dates import utcnow
from utils.money import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)

_KIND_TOKENS = {kind.value for kind in CalculationKind}
_SCOPE_ALIASES = {
    "total": VoucherScope.TOTAL,
    "products": VoucherScope.PRODUCTS,
    "product": VoucherScope.PRODUCTS,
    "addons": VoucherScope.ADDONS,
    "addon": VoucherScope.ADDONS,
    "whatsapp": VoucherScope.WHATSAPP,
}
_SCOPE_ITEM_TYPES = {
    VoucherScope.PRODUCTS: ItemType.PRODUCT,
    VoucherScope.ADDONS: ItemType.ADDON,
    VoucherScope.WHATSAPP: ItemType.WHATSAPP,
}


def resolve_voucher_semantics(voucher) -> VoucherSemantics:
    """
    Work out calculation kind and scope from the two legacy columns

    Args:
        voucher: anything with ``type`` and ``discount_type`` attributes

    Returns:
        VoucherSemantics; kind defaults to fixed_amount, scope to total
    """
    type_value = (voucher.type or "").strip().lower()
    discount_type_value = (voucher.discount_type or "").strip().lower()

    kind = CalculationKind.FIXED_AMOUNT
    for candidate in (type_value, discount_type_value):
        if candidate in _KIND_TOKENS:
            kind = CalculationKind(candidate)
            break

    scope = VoucherScope.TOTAL
    for candidate in (discount_type_value, type_value):
        if candidate in _SCOPE_ALIASES:
            scope = _SCOPE_ALIASES[candidate]
            break

    return VoucherSemantics(calculation_kind=kind, scope=scope)


def calculate_discount(
    semantics: VoucherSemantics,
    value,
    subtotal,
    items: Sequence[PricedItem],
    max_discount=None,
) -> DiscountBreakdown:
    """Applicable amount and clamped discount for a priced cart."""
    subtotal = to_decimal(subtotal)
    value = to_decimal(value)

    if semantics.scope == VoucherScope.TOTAL:
        applicable = subtotal
    else:
        item_type = _SCOPE_ITEM_TYPES[semantics.scope]
        applicable = sum(
            (to_decimal(item.line_total) for item in items if item.type == item_type),
            ZERO,
        )

    if semantics.calculation_kind == CalculationKind.PERCENTAGE:
        raw = applicable * value / Decimal(100)
    else:
        raw = min(value, applicable)

    discount = min(raw, applicable)
    if max_discount is not None:
        discount = min(discount, to_decimal(max_discount))
    discount = max(discount, ZERO)

    return DiscountBreakdown(
        applicable_amount=quantize(applicable),
        discount_amount=quantize(discount),
    )


def evaluate_voucher(
    voucher: Optional[Voucher],
    subtotal,
    items: Sequence[PricedItem],
    usage_count: int,
    user_usage_count: int,
    user_id: Optional[str],
    now: datetime,
) -> DiscountBreakdown:
    """Run every voucher rule in order; the first failure is raised."""
    if voucher is None:
        raise VoucherNotFound()
    if not voucher.is_active:
        raise VoucherInactive()
    if voucher.start_date and now < voucher.start_date:
        raise VoucherNotYetValid()
    if voucher.end_date and now > voucher.end_date:
        raise VoucherExpired()
    if voucher.max_uses is not None and usage_count >= voucher.max_uses:
        raise UsageLimitReached()
    if user_id and not voucher.allow_multiple_use_per_user and user_usage_count > 0:
        raise AlreadyUsed()
    if voucher.min_amount is not None and to_decimal(subtotal) < to_decimal(voucher.min_amount):
        raise BelowMinimum(
            f"Minimum order amount is {quantize(voucher.min_amount)}",
            min_amount=str(voucher.min_amount),
        )

    return calculate_discount(
        resolve_voucher_semantics(voucher),
        voucher.value,
        subtotal,
        items,
        voucher.max_discount,
    )


class VoucherValidator:
    """Read-only voucher checks; usage is recorded on activation only"""

    def __init__(self, session_factory: sessionmaker, pricing: Optional[PricingResolver] = None):
        self.session_factory = session_factory
        self.pricing = pricing or PricingResolver(session_factory)

    def apply(
        self,
        repos: Repositories,
        code: str,
        cart: PricedCart,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        """Evaluate ``code`` against ``cart`` inside an open unit of work

        Returns:
            (voucher row, DiscountBreakdown); raises a VoucherError subclass
        """
        now = now or utcnow()
        voucher = repos.vouchers.find_by_code(code)
        usage_count = user_usage_count = 0
        if voucher is not None:
            usage_count = repos.vouchers.usage_count(voucher.id)
            if user_id:
                user_usage_count = repos.vouchers.user_usage_count(voucher.id, user_id)

        breakdown = evaluate_voucher(
            voucher, cart.subtotal, cart.items, usage_count, user_usage_count, user_id, now
        )
        return voucher, breakdown

    def validate(
        self,
        code: str,
        subtotal,
        items: Sequence[PricedItem],
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VoucherCheckResult:
        cart = PricedCart(currency=Currency.IDR, items=list(items), subtotal=to_decimal(subtotal))
        with unit_of_work(self.session_factory) as repos:
            try:
                voucher, breakdown = self.apply(repos, code, cart, user_id, now)
            except VoucherError as e:
                logger.info(f"Voucher {code} rejected: {e.code}")
                return VoucherCheckResult(
                    valid=False,
                    reason=type(e).__name__,
                    error=e.code,
                    message=e.message,
                )
            return VoucherCheckResult(
                valid=True,
                voucher=VoucherRead.model_validate(voucher),
                applicable_amount=breakdown.applicable_amount,
                discount_amount=breakdown.discount_amount,
            )

    def check(
        self,
        code: str,
        items: Sequence[CartItem],
        currency: Currency = Currency.IDR,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VoucherCheckResponse:
        """Price a cart and apply a voucher to it for the public check endpoint

        Anonymous checks (no ``user_id``) skip the per-user usage rule.
        """
        with unit_of_work(self.session_factory) as repos:
            cart = self.pricing.resolve_with(repos, items, currency)
            voucher, breakdown = self.apply(repos, code, cart, user_id, now)
            final_amount = max(cart.subtotal - breakdown.discount_amount, ZERO)
            return VoucherCheckResponse(
                success=True,
                is_valid=True,
                voucher=VoucherRead.model_validate(voucher),
                calculation=VoucherCalculation(
                    original_amount=cart.subtotal,
                    applicable_amount=breakdown.applicable_amount,
                    discount_amount=breakdown.discount_amount,
                    final_amount=quantize(final_amount),
                    savings=breakdown.discount_amount,
                    currency=cart.currency,
                    items=cart.items,
                ),
            )


def create_voucher(session_factory: sessionmaker, payload: VoucherCreate) -> VoucherRead:
    """Store a new voucher with canonical kind/scope columns."""
    if payload.calculation_kind == CalculationKind.PERCENTAGE and payload.value > 100:
        raise InvalidVoucherDefinition("Percentage vouchers cannot exceed 100")
    if payload.end_date is not None and payload.end_date <= payload.start_date:
        raise InvalidVoucherDefinition("End date must be after start date")

    with unit_of_work(session_factory) as repos:
        if repos.vouchers.find_by_code(payload.code) is not None:
            raise InvalidVoucherDefinition(f"Voucher code {payload.code} already exists")

        voucher = repos.vouchers.add(
            Voucher(
                code=payload.code,
                name=payload.name,
                description=payload.description,
                type=payload.calculation_kind.value,
                discount_type=payload.scope.value,
                value=payload.value,
                min_amount=payload.min_amount,
                max_discount=payload.max_discount,
                max_uses=payload.max_uses,
                allow_multiple_use_per_user=payload.allow_multiple_use_per_user,
                is_active=payload.is_active,
                start_date=payload.start_date,
                end_date=payload.end_date,
            )
        )
        logger.info(f"Created voucher {voucher.code} ({voucher.id})")
        return VoucherRead.model_validate(voucher)


def usage_summary(session_factory: sessionmaker, voucher_id: str) -> VoucherUsageSummary:
    with unit_of_work(session_factory) as repos:
        voucher = repos.vouchers.get(voucher_id)
        if voucher is None:
            raise VoucherNotFound("Voucher not found")

        count = repos.vouchers.usage_count(voucher_id)
        remaining = None
        if voucher.max_uses is not None:
            remaining = max(voucher.max_uses - count, 0)

        return VoucherUsageSummary(
            voucher_id=voucher.id,
            code=voucher.code,
            usage_count=count,
            total_discount=repos.vouchers.total_discount(voucher_id),
            max_uses=voucher.max_uses,
            remaining_uses=remaining,
        )
