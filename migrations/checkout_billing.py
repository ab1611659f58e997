"""
Database Migration Script for checkout billing

Creates the checkout, payment, voucher and entitlement tables and rewrites
legacy voucher rows whose ``type`` / ``discount_type`` values are swapped.
For production, you should use a proper migration tool like Alembic.
"""

from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from database.models import Base, Voucher
from database.operations import unit_of_work
from services.vouchers import resolve_voucher_semantics

# Migration version tracking
MIGRATION_VERSION = "1.0.0"
MIGRATION_NAME = "checkout_billing"


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def backfill_voucher_semantics(session_factory: sessionmaker) -> int:
    """
    Store calculation kind in ``type`` and scope in ``discount_type``

    Returns:
        Number of vouchers rewritten
    """
    changed = 0
    with unit_of_work(session_factory) as repos:
        for voucher in repos.vouchers.list_all():
            semantics = resolve_voucher_semantics(voucher)
            kind = semantics.calculation_kind.value
            scope = semantics.scope.value
            if voucher.type != kind or voucher.discount_type != scope:
                voucher.type = kind
                voucher.discount_type = scope
                changed += 1
    return changed


def apply_migration(engine: Engine, session_factory: Optional[sessionmaker] = None) -> int:
    print(f"Applying migration: {MIGRATION_NAME} v{MIGRATION_VERSION}")

    create_tables(engine)
    print("✓ Created/verified checkout tables")

    session_factory = session_factory or sessionmaker(bind=engine, expire_on_commit=False)
    changed = backfill_voucher_semantics(session_factory)
    print(f"✓ Normalized {changed} voucher(s)")

    print(f"✓ Migration {MIGRATION_NAME} v{MIGRATION_VERSION} applied successfully")
    return changed


if __name__ == "__main__":
    from database.session import get_engine

    apply_migration(get_engine())
