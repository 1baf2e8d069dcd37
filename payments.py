"""Payment recording.

Payments are append-only facts about an order. Recording one never changes
the order's ``payment_status``; that only happens through ``reconcile``.
"""
import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from database import money, Payment, PaymentStatus
from errors import Forbidden, PaymentNotFound, ValidationError
from fulfillment import check_read
from orders import OrderRepository


logger = logging.getLogger(__name__)


# gateway status -> order payment status
RECONCILE_STATUS = {
    "completed": PaymentStatus.PAID,
    "complete": PaymentStatus.PAID,
    "succeeded": PaymentStatus.PAID,
    "success": PaymentStatus.PAID,
    "paid": PaymentStatus.PAID,
    "captured": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
}


def parse_amount(value) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Amount must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number")
    if amount < 0:
        raise ValidationError("Amount must be at least 0")
    return money(amount)


class PaymentRecorder:
    def __init__(self, repository=None):
        self.repository = repository or OrderRepository()

    @property
    def session(self):
        return self.repository.session

    def _order_for(self, order_id, actor):
        order = self.repository.get(order_id)
        if actor is not None:
            check_read(order, actor)
        return order

    def record_payment(self, order_id, gateway, transaction_id, amount, status, method,
                       paid_at=None, details=None, actor=None) -> Payment:
        self._order_for(order_id, actor)

        amount = parse_amount(amount)

        payment = self.repository.append_payment(
            order_id,
            gateway=gateway,
            transaction_id=transaction_id,
            amount=amount,
            status=status,
            method=method,
            paid_at=paid_at,
            details=details
        )
        logger.info(
            "Payment %s recorded for order %s: %s %s via %s",
            transaction_id, order_id, amount, status, gateway
        )
        return payment

    def list_payments(self, order_id, actor=None):
        self._order_for(order_id, actor)
        return self.repository.payments_for(order_id)

    def get_payment(self, transaction_id, actor=None) -> Payment:
        payment = self.session.scalar(select(Payment).where(Payment.transaction_id == transaction_id))
        if payment is None:
            raise PaymentNotFound(f"Payment {transaction_id} not found")
        if actor is not None:
            check_read(self.repository.get(payment.order_id), actor)
        return payment

    def reconcile(self, transaction_id, actor):
        """Copy a payment's outcome onto its order. Returns ``(order, changed)``."""
        if not actor.is_staff_or_admin:
            raise Forbidden("Only staff can reconcile payments")

        payment = self.get_payment(transaction_id)
        target = RECONCILE_STATUS.get((payment.status or "").strip().lower())
        if target is None:
            raise ValidationError(f"Payment status '{payment.status}' does not settle the order")

        changed = self.repository.apply_payment_status(payment, target)
        if changed:
            logger.info("Order %s payment_status -> %s from %s", payment.order_id, target.value, transaction_id)
        else:
            logger.info("Payment %s already reconciled onto order %s", transaction_id, payment.order_id)

        return self.repository.get(payment.order_id), changed
