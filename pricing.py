"""Server-side order pricing.

Prices always come from the menu catalog; whatever the client sent is never
consulted. Tax and delivery fee are pluggable policies so a rate-based tax
or a free-delivery threshold can be configured without touching callers.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from database import db, money, MenuItem, OrderType, ZERO
from errors import InvalidQuantity, ItemNotFound, ItemUnavailable
from schemas import MAX_QUANTITY


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    menu_item_id: int
    name: str
    price: Decimal
    is_available: bool


class MenuCatalog:
    """Read-only lookup of menu items by id, backed by the ``menu_items`` table."""

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def lookup(self, menu_item_id) -> Optional[CatalogEntry]:
        row = self.session.get(MenuItem, menu_item_id)
        if row is None:
            return None
        return CatalogEntry(
            menu_item_id=row.id,
            name=row.name,
            price=money(row.price),
            is_available=bool(row.is_available)
        )


class TaxPolicy:
    def tax_for(self, subtotal: Decimal, order_type: OrderType) -> Decimal:
        raise NotImplementedError


class NoTax(TaxPolicy):
    def tax_for(self, subtotal, order_type):
        return ZERO


class RateTax(TaxPolicy):
    def __init__(self, rate):
        self.rate = Decimal(str(rate))
        if self.rate < 0:
            raise ValueError("tax rate must not be negative")

    def tax_for(self, subtotal, order_type):
        return money(subtotal * self.rate)


class DeliveryFeePolicy:
    def fee_for(self, subtotal: Decimal, order_type: OrderType) -> Decimal:
        raise NotImplementedError


class FlatDeliveryFee(DeliveryFeePolicy):
    def __init__(self, fee="5.00"):
        self.fee = money(fee)

    def fee_for(self, subtotal, order_type):
        if order_type == OrderType.DELIVERY:
            return self.fee
        return ZERO


class ThresholdDeliveryFee(FlatDeliveryFee):
    """Flat delivery fee, waived once the subtotal reaches ``threshold``."""

    def __init__(self, fee="5.00", threshold="50.00"):
        super().__init__(fee)
        self.threshold = money(threshold)

    def fee_for(self, subtotal, order_type):
        if subtotal >= self.threshold:
            return ZERO
        return super().fee_for(subtotal, order_type)


@dataclass(frozen=True)
class PricedLine:
    menu_item_id: int
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class PriceQuote:
    lines: Tuple[PricedLine, ...]
    subtotal: Decimal
    tax_amount: Decimal
    delivery_fee: Decimal
    total: Decimal


class PricingEngine:
    def __init__(self, catalog=None, tax_policy=None, delivery_fee_policy=None):
        self.catalog = catalog or MenuCatalog()
        self.tax_policy = tax_policy or NoTax()
        self.delivery_fee_policy = delivery_fee_policy or FlatDeliveryFee()

    def compute_order(self, requested_lines: Iterable[Tuple[int, int]], order_type) -> PriceQuote:
        order_type = OrderType(order_type)
        priced = []
        subtotal = ZERO

        for menu_item_id, quantity in requested_lines:
            if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_QUANTITY:
                raise InvalidQuantity(f"Quantity for menu item {menu_item_id} must be between 1 and {MAX_QUANTITY}")

            entry = self.catalog.lookup(menu_item_id)
            if entry is None:
                raise ItemNotFound(f"Menu item {menu_item_id} not found")
            if not entry.is_available:
                raise ItemUnavailable(f"Menu item {menu_item_id} is not available")

            line_total = money(entry.price * quantity)
            subtotal += line_total
            priced.append(PricedLine(
                menu_item_id=entry.menu_item_id,
                name=entry.name,
                quantity=quantity,
                unit_price=entry.price,
                line_total=line_total
            ))

        subtotal = money(subtotal)
        tax_amount = money(self.tax_policy.tax_for(subtotal, order_type))
        delivery_fee = money(self.delivery_fee_policy.fee_for(subtotal, order_type))
        total = subtotal + tax_amount + delivery_fee

        logger.debug(
            "Priced %d lines (%s): subtotal=%s tax=%s fee=%s total=%s",
            len(priced), order_type.value, subtotal, tax_amount, delivery_fee, total
        )

        return PriceQuote(
            lines=tuple(priced),
            subtotal=subtotal,
            tax_amount=tax_amount,
            delivery_fee=delivery_fee,
            total=total
        )


def pricing_engine_from_config(config, catalog=None) -> PricingEngine:
    rate = Decimal(str(config.get("TAX_RATE") or "0"))
    tax_policy = RateTax(rate) if rate > 0 else NoTax()

    fee = config.get("DELIVERY_FEE", "5.00")
    threshold = config.get("FREE_DELIVERY_THRESHOLD")
    if threshold not in (None, ""):
        fee_policy = ThresholdDeliveryFee(fee, threshold)
    else:
        fee_policy = FlatDeliveryFee(fee)

    return PricingEngine(catalog=catalog, tax_policy=tax_policy, delivery_fee_policy=fee_policy)
