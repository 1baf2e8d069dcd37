"""Input structs for the ordering API and the pure functions that check them.

``*_from_payload`` turn a decoded JSON body into a struct, collecting
field-level errors instead of raising. ``validate_order_request`` holds the
business rules and is also run by the service for callers that build an
``OrderRequest`` directly.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

from database import OrderType, money


MAX_ADDRESS_LEN = 500
MAX_PAYMENT_METHOD_LEN = 100
MAX_NOTES_LEN = 500
MAX_INSTRUCTIONS_LEN = 500
MAX_QUANTITY = 999


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self):
        return {"field": self.field, "message": self.message}


@dataclass(frozen=True)
class LineRequest:
    menu_item_id: int
    quantity: int
    customizations: Any = None
    special_instructions: Optional[str] = None


@dataclass(frozen=True)
class OrderRequest:
    items: Tuple[LineRequest, ...]
    order_type: OrderType
    delivery_address: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    def requested_lines(self):
        return [(line.menu_item_id, line.quantity) for line in self.items]


@dataclass(frozen=True)
class PaymentRequest:
    order_id: int
    gateway: str
    transaction_id: str
    amount: Decimal
    status: str
    method: str
    paid_at: Optional[datetime] = None
    details: Optional[dict] = field(default=None)


def _as_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _clean_str(value):
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    return value.strip() or None


def _check_len(errors, name, value, limit):
    if value is None:
        return
    if not isinstance(value, str):
        errors.append(FieldError(name, "Must be a string"))
    elif len(value) > limit:
        errors.append(FieldError(name, f"Must be at most {limit} characters"))


def validate_order_request(req: OrderRequest) -> List[FieldError]:
    errors = []

    if not req.items:
        errors.append(FieldError("items", "At least one item is required"))

    for i, line in enumerate(req.items or ()):
        q = line.quantity
        if isinstance(q, bool) or not isinstance(q, int) or q < 1:
            errors.append(FieldError(f"items.{i}.quantity", "Quantity must be an integer of at least 1"))
        elif q > MAX_QUANTITY:
            errors.append(FieldError(f"items.{i}.quantity", f"Quantity must be at most {MAX_QUANTITY}"))
        _check_len(errors, f"items.{i}.special_instructions", line.special_instructions, MAX_INSTRUCTIONS_LEN)

    if not isinstance(req.order_type, OrderType):
        errors.append(FieldError("order_type", "Must be one of dine_in, takeaway, delivery"))
    elif req.order_type == OrderType.DELIVERY:
        if not req.delivery_address:
            errors.append(FieldError("delivery_address", "Delivery address is required for delivery orders"))
    elif req.delivery_address:
        errors.append(FieldError("delivery_address", "Delivery address is only accepted for delivery orders"))

    _check_len(errors, "delivery_address", req.delivery_address, MAX_ADDRESS_LEN)
    _check_len(errors, "payment_method", req.payment_method, MAX_PAYMENT_METHOD_LEN)
    _check_len(errors, "notes", req.notes, MAX_NOTES_LEN)

    return errors


def order_request_from_payload(payload) -> Tuple[Optional[OrderRequest], List[FieldError]]:
    if not isinstance(payload, dict):
        return None, [FieldError("body", "Expected a JSON object")]

    errors = []
    raw_items = payload.get("items")
    lines = []

    if not isinstance(raw_items, list) or not raw_items:
        errors.append(FieldError("items", "At least one item is required"))
        raw_items = []

    for i, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            errors.append(FieldError(f"items.{i}", "Each item must be an object"))
            continue

        item_id = _as_int(raw.get("menu_item_id", raw.get("menuItemId")))
        if item_id is None:
            errors.append(FieldError(f"items.{i}.menu_item_id", "A menu item id is required"))

        qty = _as_int(raw.get("quantity"))
        if qty is None:
            errors.append(FieldError(f"items.{i}.quantity", "Quantity must be an integer of at least 1"))

        if item_id is not None and qty is not None:
            # client-side prices are dropped here; the pricing engine reads the catalog
            lines.append(LineRequest(
                menu_item_id=item_id,
                quantity=qty,
                customizations=raw.get("customizations"),
                special_instructions=_clean_str(raw.get("special_instructions", raw.get("specialInstructions")))
            ))

    raw_type = payload.get("order_type", payload.get("orderType"))
    try:
        order_type = OrderType((raw_type or "").strip().lower()) if isinstance(raw_type, str) else OrderType(raw_type)
    except (ValueError, TypeError):
        errors.append(FieldError("order_type", "Must be one of dine_in, takeaway, delivery"))
        order_type = None

    if errors:
        return None, errors

    req = OrderRequest(
        items=tuple(lines),
        order_type=order_type,
        delivery_address=_clean_str(payload.get("delivery_address", payload.get("deliveryAddress"))),
        payment_method=_clean_str(payload.get("payment_method", payload.get("paymentMethod"))),
        notes=_clean_str(payload.get("notes"))
    )
    errors = validate_order_request(req)
    if errors:
        return None, errors
    return req, []


def parse_timestamp(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        ts = datetime.fromisoformat(raw)
    else:
        raise ValueError("not a timestamp")
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _parse_amount(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return money(amount)


def payment_request_from_payload(payload) -> Tuple[Optional[PaymentRequest], List[FieldError]]:
    if not isinstance(payload, dict):
        return None, [FieldError("body", "Expected a JSON object")]

    errors = []

    order_id = _as_int(payload.get("order_id"))
    if order_id is None:
        errors.append(FieldError("order_id", "An order id is required"))

    def required_str(name, limit, *aliases):
        raw = payload.get(name)
        for alias in aliases:
            if raw is None:
                raw = payload.get(alias)
        value = _clean_str(raw)
        if not value:
            errors.append(FieldError(name, "This field is required"))
            return None
        _check_len(errors, name, value, limit)
        return value

    gateway = required_str("gateway", 60, "payment_gateway")
    transaction_id = required_str("transaction_id", 120)
    status = required_str("status", 40)
    method = required_str("method", 60, "payment_method")

    amount = _parse_amount(payload.get("amount"))
    if amount is None:
        errors.append(FieldError("amount", "Amount must be a number"))
    elif amount < 0:
        errors.append(FieldError("amount", "Amount must be at least 0"))

    try:
        paid_at = parse_timestamp(payload.get("paid_at"))
    except ValueError:
        errors.append(FieldError("paid_at", "Must be an ISO 8601 timestamp"))
        paid_at = None

    details = payload.get("details")
    if isinstance(details, str):
        try:
            details = json.loads(details)
        except ValueError:
            errors.append(FieldError("details", "Must be a JSON object"))
            details = None
    if details is not None and not isinstance(details, dict):
        errors.append(FieldError("details", "Must be a JSON object"))

    if errors:
        return None, errors

    return PaymentRequest(
        order_id=order_id,
        gateway=gateway,
        transaction_id=transaction_id,
        amount=amount,
        status=status,
        method=method,
        paid_at=paid_at,
        details=details
    ), []
