"""
Cart pricing

Resolves catalog prices for a cart in the requested currency. Products and
addons carry per-currency prices; WhatsApp packages are priced in IDR only
and converted for USD carts.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.operations import Repositories, unit_of_work
from models.transaction import CartItem, Currency, Duration, ItemType, PricedCart, PricedItem
from services.errors import ItemNotFound, MissingDuration
from utils.money import quantize

logger = logging.getLogger(__name__)


class PricingResolver:
    """Turns cart lines into priced lines and a subtotal"""

    def __init__(self, session_factory: sessionmaker, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    def resolve(self, items: Sequence[CartItem], currency: Currency = Currency.IDR) -> PricedCart:
        with unit_of_work(self.session_factory) as repos:
            return self.resolve_with(repos, items, currency)

    def resolve_with(
        self, repos: Repositories, items: Sequence[CartItem], currency: Currency
    ) -> PricedCart:
        """Price ``items`` inside an already open unit of work."""
        currency = Currency(currency)
        priced: List[PricedItem] = []

        for item in items:
            if item.type == ItemType.PRODUCT:
                priced.append(self._price_catalog_item(repos.catalog.get_package(item.id), item, currency))
            elif item.type == ItemType.ADDON:
                priced.append(self._price_catalog_item(repos.catalog.get_addon(item.id), item, currency))
            else:
                priced.append(self._price_whatsapp(repos, item, currency))

        subtotal = quantize(sum((line.line_total for line in priced), Decimal("0")))
        logger.debug(f"Priced {len(priced)} item(s) in {currency.value}: subtotal={subtotal}")
        return PricedCart(currency=currency, items=priced, subtotal=subtotal)

    def _price_catalog_item(self, row, item: CartItem, currency: Currency) -> PricedItem:
        if row is None:
            logger.info(f"{item.type.value} {item.id} not found")
            raise ItemNotFound(f"{item.type.value.capitalize()} {item.id} not found", item_id=item.id)

        if currency == Currency.IDR:
            unit_price, name = row.price_idr, row.name_id
        else:
            unit_price, name = row.price_usd, row.name_en

        unit_price = quantize(unit_price)
        return PricedItem(
            type=item.type,
            id=item.id,
            name=name,
            unit_price=unit_price,
            quantity=item.quantity,
            line_total=quantize(unit_price * item.quantity),
        )

    def _price_whatsapp(self, repos: Repositories, item: CartItem, currency: Currency) -> PricedItem:
        if item.duration is None:
            raise MissingDuration(item_id=item.id)

        package = repos.catalog.get_whatsapp_package(item.id)
        if package is None:
            logger.info(f"WhatsApp package {item.id} not found")
            raise ItemNotFound(f"WhatsApp package {item.id} not found", item_id=item.id)

        price = package.price_year if item.duration == Duration.YEAR else package.price_month
        price = Decimal(str(price))
        if currency == Currency.USD:
            price = price / Decimal(self.settings.IDR_PER_USD)

        unit_price = quantize(price)
        return PricedItem(
            type=ItemType.WHATSAPP,
            id=item.id,
            name=package.name,
            unit_price=unit_price,
            quantity=item.quantity,
            line_total=quantize(unit_price * item.quantity),
            duration=item.duration,
        )
