import logging

from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import db, now_utc, Order, OrderLine, OrderStatus, OrderType, Payment, PaymentStatus
from errors import (
    Conflict, DuplicateTransaction, IdentifierCollision, OrderNotFound,
    ServiceUnavailable, StorageFailure, ValidationError
)
from fulfillment import INITIAL_STATUS, TERMINAL_STATUSES, check_delete, check_read, check_transition, parse_status
from order_numbers import next_order_number
from pricing import PricingEngine
from schemas import validate_order_request


logger = logging.getLogger(__name__)


def _violates(exc, column):
    return column in str(getattr(exc, "orig", exc))


class OrderRepository:
    """Persistence for the order aggregate (header, lines, payments).

    Every write here is a single transaction: it either commits completely
    or the session is rolled back before the error leaves this class.
    """

    def __init__(self, session=None, number_source=None, max_number_attempts=3, max_transition_attempts=3):
        self.session = session if session is not None else db.session
        self.number_source = number_source or next_order_number
        self.max_number_attempts = max(1, int(max_number_attempts))
        self.max_transition_attempts = max(1, int(max_transition_attempts))

    def get(self, order_id) -> Order:
        order = self.session.get(Order, order_id, populate_existing=True)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def list_for(self, actor, status=None, order_type=None, limit=100):
        stmt = select(Order)
        if not actor.is_admin:
            stmt = stmt.where(Order.user_id == actor.user_id)
        if status:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        if order_type:
            stmt = stmt.where(Order.order_type == OrderType(order_type).value)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
        return list(self.session.scalars(stmt))

    # -------------------- create --------------------

    def create_atomically(self, owner_id, request, quote) -> Order:
        for attempt in range(1, self.max_number_attempts + 1):
            number = self.number_source()
            try:
                order = self._write_aggregate(number, owner_id, request, quote)
                self.session.commit()
            except IdentifierCollision:
                self.session.rollback()
                logger.warning(
                    "Order number collision (attempt %d/%d), retrying with a new number",
                    attempt, self.max_number_attempts
                )
                continue
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error("Order write failed, rolled back: %s", exc)
                raise StorageFailure() from exc
            except Exception:
                self.session.rollback()
                raise

            logger.info(
                "Order %s created for user %s: %d lines, total=%s",
                order.order_number, owner_id, len(quote.lines), quote.total
            )
            return order

        logger.error("Gave up allocating an order number after %d attempts", self.max_number_attempts)
        raise ServiceUnavailable("Could not allocate a unique order number, please retry")

    def _write_aggregate(self, number, owner_id, request, quote) -> Order:
        ts = now_utc()
        order = Order(
            order_number=number,
            user_id=owner_id,
            order_type=request.order_type.value,
            status=INITIAL_STATUS.value,
            delivery_address=request.delivery_address,
            payment_method=request.payment_method,
            payment_status=PaymentStatus.PENDING.value,
            subtotal=quote.subtotal,
            tax_amount=quote.tax_amount,
            delivery_fee=quote.delivery_fee,
            total_amount=quote.total,
            notes=request.notes,
            created_at=ts,
            updated_at=ts
        )
        self.session.add(order)
        try:
            self.session.flush()
        except IntegrityError as exc:
            if _violates(exc, "order_number"):
                raise IdentifierCollision() from exc
            raise

        for requested, priced in zip(request.items, quote.lines):
            self._add_line(order, priced, requested)

        return order

    def _add_line(self, order, priced, requested) -> OrderLine:
        line = OrderLine(
            order_id=order.id,
            menu_item_id=priced.menu_item_id,
            name_snapshot=priced.name,
            quantity=priced.quantity,
            unit_price=priced.unit_price,
            line_total=priced.line_total,
            customizations=requested.customizations,
            special_instructions=requested.special_instructions
        )
        self.session.add(line)
        self.session.flush()
        return line

    # -------------------- status --------------------

    def transition_status(self, order_id, target, actor) -> Order:
        target = OrderStatus(target)

        for attempt in range(1, self.max_transition_attempts + 1):
            order = self.get(order_id)
            check_transition(order, target, actor)
            source = OrderStatus(order.status)

            if self._compare_and_set(order.id, source, target):
                self.session.commit()
                logger.info("Order %s: %s -> %s by user %s", order_id, source.value, target.value, actor.user_id)
                return self.get(order_id)

            self.session.rollback()
            logger.warning(
                "Order %s changed while moving %s -> %s (attempt %d/%d)",
                order_id, source.value, target.value, attempt, self.max_transition_attempts
            )

        raise ServiceUnavailable("Order is being updated concurrently, please retry")

    def _compare_and_set(self, order_id, expected, target) -> bool:
        try:
            result = self.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus(expected).value)
                .values(status=OrderStatus(target).value, updated_at=now_utc())
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageFailure() from exc
        return result.rowcount == 1

    # -------------------- delete --------------------

    def delete(self, order_id, actor):
        order = self.get(order_id)
        check_delete(order, actor)

        has_payments = self.session.scalar(select(exists().where(Payment.order_id == order_id)))
        if has_payments:
            raise Conflict("Orders with recorded payments cannot be deleted")

        self.session.expunge(order)
        closed = [s.value for s in TERMINAL_STATUSES]
        try:
            self.session.execute(
                delete(OrderLine)
                .where(OrderLine.order_id == order_id)
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(
                delete(Order)
                .where(
                    Order.id == order_id,
                    Order.status.notin_(closed),
                    ~exists().where(Payment.order_id == Order.id)
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.rollback()
                logger.warning("Order %s changed while being deleted, delete rolled back", order_id)
                raise Conflict("Order changed while deleting and can no longer be deleted")
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageFailure() from exc

        logger.info("Order %s deleted by user %s", order_id, actor.user_id)

    # -------------------- payments --------------------

    def append_payment(self, order_id, **fields) -> Payment:
        payment = Payment(order_id=order_id, **fields)
        self.session.add(payment)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if _violates(exc, "transaction_id"):
                logger.warning("Duplicate payment transaction %s for order %s", fields.get("transaction_id"), order_id)
                raise DuplicateTransaction(
                    f"Transaction {fields.get('transaction_id')} is already recorded"
                ) from exc
            raise StorageFailure() from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageFailure() from exc
        return payment

    def payments_for(self, order_id):
        stmt = select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.asc(), Payment.id.asc())
        return list(self.session.scalars(stmt))

    def apply_payment_status(self, payment, status) -> bool:
        """Copy ``status`` onto the payment's order unless this payment was already applied."""
        ts = now_utc()
        try:
            claimed = self.session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.reconciled_at.is_(None))
                .values(reconciled_at=ts)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                self.session.rollback()
                return False

            self.session.execute(
                update(Order)
                .where(Order.id == payment.order_id)
                .values(
                    payment_status=PaymentStatus(status).value,
                    payment_reference=payment.transaction_id,
                    updated_at=ts
                )
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageFailure() from exc
        return True


class OrderService:
    def __init__(self, repository=None, pricing=None, list_limit=100):
        self.repository = repository or OrderRepository()
        self.pricing = pricing or PricingEngine()
        self.list_limit = list_limit

    def create_order(self, customer, request) -> Order:
        errors = validate_order_request(request)
        if errors:
            raise ValidationError(errors=errors)

        quote = self.pricing.compute_order(request.requested_lines(), request.order_type)
        return self.repository.create_atomically(customer.user_id, request, quote)

    def get_order(self, actor, order_id) -> Order:
        order = self.repository.get(order_id)
        check_read(order, actor)
        return order

    def list_orders(self, actor, status=None, order_type=None, limit=None):
        if status:
            status = parse_status(status)
        if order_type:
            try:
                order_type = OrderType(order_type)
            except ValueError:
                raise ValidationError("Invalid order_type; expected one of dine_in, takeaway, delivery")
        return self.repository.list_for(actor, status=status, order_type=order_type, limit=limit or self.list_limit)

    def transition(self, actor, order_id, target) -> Order:
        return self.repository.transition_status(order_id, parse_status(target), actor)

    def cancel(self, actor, order_id) -> Order:
        return self.transition(actor, order_id, OrderStatus.CANCELLED)

    def delete_order(self, actor, order_id):
        self.repository.delete(order_id, actor)
