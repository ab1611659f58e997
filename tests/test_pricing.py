from decimal import Decimal

import pytest

from models.transaction import CartItem, Currency, ItemType
from services.errors import ItemNotFound, MissingDuration


class TestPricingResolver:
    def test_idr_uses_local_names_and_prices(self, catalog, pricing):
        cart = pricing.resolve(
            [
                CartItem(type="product", id="pkg-pro", quantity=2),
                CartItem(type="addon", id="addon-seo"),
            ],
            Currency.IDR,
        )

        assert cart.currency == Currency.IDR
        assert [item.name for item in cart.items] == ["Website Pro", "Optimasi SEO"]
        assert cart.items[0].line_total == Decimal("600000.00")
        assert cart.subtotal == Decimal("700000.00")

    def test_usd_uses_english_names(self, catalog, pricing):
        cart = pricing.resolve([CartItem(type="product", id="pkg-pro")], Currency.USD)

        assert cart.items[0].name == "Pro Website"
        assert cart.subtotal == Decimal("20.00")

    def test_whatsapp_price_by_duration(self, catalog, pricing):
        monthly = pricing.resolve([CartItem(type="whatsapp", id="wa-starter", duration="month")])
        yearly = pricing.resolve([CartItem(type="whatsapp", id="wa-starter", duration="year")])

        assert monthly.subtotal == Decimal("150000.00")
        assert yearly.subtotal == Decimal("1500000.00")
        assert monthly.items[0].name == "WhatsApp Starter"

    def test_whatsapp_usd_is_converted(self, catalog, pricing):
        """150000 IDR at 15000 IDR/USD"""
        cart = pricing.resolve(
            [CartItem(type="whatsapp", id="wa-starter", duration="month")], Currency.USD
        )

        assert cart.items[0].unit_price == Decimal("10.00")

    def test_whatsapp_without_duration(self, catalog, pricing):
        with pytest.raises(MissingDuration):
            pricing.resolve([CartItem(type="whatsapp", id="wa-starter")])

    def test_unknown_item(self, catalog, pricing):
        with pytest.raises(ItemNotFound) as exc_info:
            pricing.resolve([CartItem(type="addon", id="addon-missing")])

        assert exc_info.value.status_code == 404
        assert exc_info.value.details["item_id"] == "addon-missing"

    def test_addons_alias_is_accepted(self, catalog, pricing):
        item = CartItem(type="addons", id="addon-seo")
        assert item.type == ItemType.ADDON

        cart = pricing.resolve([item])
        assert cart.items[0].type == ItemType.ADDON
        assert cart.subtotal == Decimal("100000.00")
