from datetime import timedelta
from decimal import Decimal

from conftest import NOW
from database.models import Voucher
from database.operations import unit_of_work
from migrations.checkout_billing import apply_migration, backfill_voucher_semantics


def test_backfill_rewrites_swapped_vouchers(session_factory):
    with unit_of_work(session_factory) as repos:
        for code, type_, discount_type in [
            ("SWAPPED", "products", "percentage"),
            ("CANONICAL", "fixed_amount", "total"),
            ("LEGACY", "fixed", "addon"),
        ]:
            repos.vouchers.add(
                Voucher(
                    code=code,
                    name=code,
                    type=type_,
                    discount_type=discount_type,
                    value=Decimal("10"),
                    start_date=NOW - timedelta(days=1),
                )
            )

    assert backfill_voucher_semantics(session_factory) == 2

    with unit_of_work(session_factory) as repos:
        rows = {v.code: (v.type, v.discount_type) for v in repos.vouchers.list_all()}
    assert rows == {
        "SWAPPED": ("percentage", "products"),
        "CANONICAL": ("fixed_amount", "total"),
        "LEGACY": ("fixed_amount", "addons"),
    }

    # Second run finds nothing left to fix
    assert backfill_voucher_semantics(session_factory) == 0


def test_apply_migration(engine, session_factory):
    assert apply_migration(engine, session_factory) == 0
