import enum
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        return ZERO


def iso(ts):
    return ts.isoformat() if ts else None


class OrderType(str, enum.Enum):
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"
    DELIVERY = "delivery"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(40))
    email = db.Column(db.String(160), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(40), nullable=False, default="Customer")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)

    def set_password(self, pw):
        self.password_hash = generate_password_hash(pw)

    def check_password(self, pw):
        return check_password_hash(self.password_hash, pw)

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": iso(self.created_at)
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    action = db.Column(db.String(80), nullable=False)
    entity = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    ip = db.Column(db.String(80))
    details_json = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=now_utc)


class Settings(db.Model):
    __tablename__ = "settings"

    key = db.Column(db.String(120), primary_key=True)
    value = db.Column(db.String(1000), nullable=False)


def setting_get(key, default=None):
    row = db.session.get(Settings, str(key))
    if not row:
        return default
    return row.value


def setting_set(key, value):
    k = str(key)
    v = "" if value is None else str(value)
    row = db.session.get(Settings, k)
    if not row:
        row = Settings(key=k, value=v)
        db.session.add(row)
    else:
        row.value = v
    db.session.commit()
    return v


class MenuItem(db.Model):
    """Catalog entry. The ordering core only ever reads these rows."""

    __tablename__ = "menu_items"
    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_menu_items_price_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(180), nullable=False)
    description = db.Column(db.String(500))
    category = db.Column(db.String(80))
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    is_available = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=now_utc)


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), unique=True, index=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    order_type = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(30), nullable=False, default=OrderStatus.PENDING.value)
    delivery_address = db.Column(db.String(500))

    payment_method = db.Column(db.String(100))
    payment_status = db.Column(db.String(30), nullable=False, default=PaymentStatus.PENDING.value)
    payment_reference = db.Column(db.String(120))

    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    delivery_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    notes = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=now_utc, nullable=False)
    updated_at = db.Column(db.DateTime, default=now_utc)

    lines = db.relationship(
        "OrderLine",
        order_by="OrderLine.id",
        cascade="all, delete-orphan",
        back_populates="order",
    )
    user = db.relationship("User")

    def to_dict(self, include_lines=True):
        out = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "order_type": self.order_type,
            "status": self.status,
            "delivery_address": self.delivery_address,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "subtotal": str(money(self.subtotal)),
            "tax_amount": str(money(self.tax_amount)),
            "delivery_fee": str(money(self.delivery_fee)),
            "total_amount": str(money(self.total_amount)),
            "notes": self.notes,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at)
        }
        if include_lines:
            out["items"] = [line.to_dict() for line in self.lines]
        return out


class OrderLine(db.Model):
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_lines_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=False)

    name_snapshot = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    line_total = db.Column(db.Numeric(10, 2), nullable=False)
    customizations = db.Column(db.JSON)
    special_instructions = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=now_utc)

    order = db.relationship("Order", back_populates="lines")

    def to_dict(self):
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name_snapshot": self.name_snapshot,
            "quantity": self.quantity,
            "unit_price": str(money(self.unit_price)),
            "line_total": str(money(self.line_total)),
            "customizations": self.customizations,
            "special_instructions": self.special_instructions
        }


class Payment(db.Model):
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    gateway = db.Column(db.String(60), nullable=False)
    transaction_id = db.Column(db.String(120), unique=True, nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(40), nullable=False)
    method = db.Column(db.String(60), nullable=False)
    paid_at = db.Column(db.DateTime)
    details = db.Column(db.JSON)
    reconciled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "gateway": self.gateway,
            "transaction_id": self.transaction_id,
            "amount": str(money(self.amount)),
            "status": self.status,
            "method": self.method,
            "paid_at": iso(self.paid_at),
            "details": self.details,
            "reconciled_at": iso(self.reconciled_at),
            "created_at": iso(self.created_at)
        }
