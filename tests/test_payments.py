from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from database import db, Order, Payment, PaymentStatus, OrderType
from errors import (
    DuplicateTransaction, Forbidden, OrderNotFound, PaymentNotFound, ValidationError
)
from orders import OrderService
from payments import PaymentRecorder
from schemas import LineRequest, OrderRequest

pytestmark = pytest.mark.usefixtures("ctx")


@pytest.fixture
def order(customer, menu):
    req = OrderRequest(items=(LineRequest(menu["margherita"], 1),), order_type=OrderType.TAKEAWAY)
    return OrderService().create_order(customer, req)


@pytest.fixture
def recorder():
    return PaymentRecorder()


def record(recorder, order_id, tx="tx-1", status="completed", amount="14.99", **kw):
    return recorder.record_payment(order_id, "stripe", tx, amount, status, "card", **kw)


def payment_rows():
    return db.session.scalar(select(func.count()).select_from(Payment))


class TestRecordPayment:
    def test_records_without_touching_order(self, recorder, order):
        paid_at = datetime(2026, 3, 1, 12, 30)
        p = record(recorder, order.id, paid_at=paid_at, details={"charge": "ch_1"})

        assert p.id is not None
        assert p.amount == Decimal("14.99")
        assert p.status == "completed"
        assert p.paid_at == paid_at
        assert p.details == {"charge": "ch_1"}
        assert db.session.get(Order, order.id).payment_status == PaymentStatus.PENDING.value

    def test_duplicate_transaction_rejected(self, recorder, order):
        record(recorder, order.id)
        with pytest.raises(DuplicateTransaction):
            record(recorder, order.id, amount="1.00")

        assert payment_rows() == 1
        assert recorder.get_payment("tx-1").amount == Decimal("14.99")

    def test_unknown_order(self, recorder, order):
        with pytest.raises(OrderNotFound):
            record(recorder, order.id + 100)
        assert payment_rows() == 0

    def test_negative_amount(self, recorder, order):
        with pytest.raises(ValidationError):
            record(recorder, order.id, amount="-1")

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity", "-Infinity", "", None, True, object()])
    def test_unparseable_amount_rejected(self, recorder, order, amount):
        with pytest.raises(ValidationError):
            record(recorder, order.id, amount=amount)
        assert payment_rows() == 0

    def test_zero_amount_allowed(self, recorder, order):
        assert record(recorder, order.id, amount="0").amount == Decimal("0.00")

    def test_actor_must_see_the_order(self, recorder, order, other_customer, staff):
        with pytest.raises(Forbidden):
            record(recorder, order.id, actor=other_customer)
        assert record(recorder, order.id, actor=staff).transaction_id == "tx-1"

    def test_list_in_creation_order(self, recorder, order, customer, other_customer):
        record(recorder, order.id, tx="tx-b", status="failed")
        record(recorder, order.id, tx="tx-a")

        assert [p.transaction_id for p in recorder.list_payments(order.id, actor=customer)] == ["tx-b", "tx-a"]
        with pytest.raises(Forbidden):
            recorder.list_payments(order.id, actor=other_customer)

    def test_get_payment(self, recorder, order, other_customer):
        record(recorder, order.id)
        with pytest.raises(PaymentNotFound):
            recorder.get_payment("nope")
        with pytest.raises(Forbidden):
            recorder.get_payment("tx-1", actor=other_customer)


class TestReconcile:
    def test_sets_order_payment_status(self, recorder, order, staff):
        record(recorder, order.id, status="Succeeded")

        o, changed = recorder.reconcile("tx-1", staff)

        assert changed is True
        assert o.payment_status == PaymentStatus.PAID.value
        assert o.payment_reference == "tx-1"
        assert o.status == "pending"

    def test_idempotent(self, recorder, order, admin):
        record(recorder, order.id)
        recorder.reconcile("tx-1", admin)

        o, changed = recorder.reconcile("tx-1", admin)
        assert changed is False
        assert o.payment_status == PaymentStatus.PAID.value

    def test_later_refund_applies(self, recorder, order, admin):
        record(recorder, order.id)
        record(recorder, order.id, tx="rf-1", status="refunded")
        recorder.reconcile("tx-1", admin)

        o, changed = recorder.reconcile("rf-1", admin)
        assert changed is True
        assert o.payment_status == PaymentStatus.REFUNDED.value

    def test_replayed_payment_does_not_override_newer_one(self, recorder, order, admin):
        record(recorder, order.id)
        record(recorder, order.id, tx="rf-1", status="refunded")
        recorder.reconcile("tx-1", admin)
        recorder.reconcile("rf-1", admin)

        o, changed = recorder.reconcile("tx-1", admin)

        assert changed is False
        assert o.payment_status == PaymentStatus.REFUNDED.value
        assert o.payment_reference == "rf-1"
        assert recorder.get_payment("tx-1").reconciled_at is not None

    def test_failed_payment(self, recorder, order, staff):
        record(recorder, order.id, status="failed")
        o, _ = recorder.reconcile("tx-1", staff)
        assert o.payment_status == PaymentStatus.FAILED.value

    def test_unsettled_status_is_rejected(self, recorder, order, staff):
        record(recorder, order.id, status="authorizing")
        with pytest.raises(ValidationError):
            recorder.reconcile("tx-1", staff)
        assert db.session.get(Order, order.id).payment_status == PaymentStatus.PENDING.value

    def test_customer_cannot_reconcile(self, recorder, order, customer):
        record(recorder, order.id)
        with pytest.raises(Forbidden):
            recorder.reconcile("tx-1", customer)
