import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional
from ..config import Config
from ..errors import ConcurrentModification, InvalidTransition, OrderNotFound
from ..models.order import Order, OrderStatus, StatusHistoryEntry
from ..models.payment import PaymentIntent, PaymentIntentStatus, PaymentStatus, RefundRecord
from ..models.return_request import ReturnRequest, ReturnStatus
from ..utils.formatters import utcnow

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.OUT_FOR_DELIVERY}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})

def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]

def _check_guards(candidate: Order, target: OrderStatus):
    current = candidate.status.value
    if target == OrderStatus.PROCESSING and candidate.payment_status != PaymentStatus.COMPLETED:
        raise InvalidTransition(current, target.value, "payment has not been completed")
    if target == OrderStatus.SHIPPED and not candidate.tracking_number:
        raise InvalidTransition(current, target.value, "a tracking number is required")
    if target == OrderStatus.SHIPPED and not candidate.carrier:
        raise InvalidTransition(current, target.value, "a carrier is required")
    if target == OrderStatus.CANCELLED and candidate.payment_status == PaymentStatus.COMPLETED:
        raise InvalidTransition(current, target.value, "the payment must be refunded first")
    if target == OrderStatus.RETURNED and not any(r.return_id for r in candidate.refunds):
        raise InvalidTransition(current, target.value, "no refund has been issued for a return")

def advance(order: Order, target: OrderStatus, now: datetime,
            note: Optional[str] = None, **changes: Any) -> Order:
    """
    New snapshot of `order` moved to `target` with one history entry appended.

    `changes` are applied first so guards see them (e.g. the tracking number
    on shipping, the refund record on cancellation). Raises InvalidTransition
    and leaves the input untouched when the move is not allowed.
    """
    target = OrderStatus(target)
    if not can_transition(order.status, target):
        raise InvalidTransition(order.status.value, target.value)

    candidate = order.model_copy(update=changes)
    _check_guards(candidate, target)

    if target == OrderStatus.DELIVERED and candidate.delivery_date is None:
        changes["delivery_date"] = now

    entry = StatusHistoryEntry(status=target, timestamp=now, note=note)
    changes["status_history"] = [*order.status_history, entry]
    return order.touched(now, status=target, **changes)

def with_payment(order: Order, status: PaymentStatus, now: datetime, **changes: Any) -> Order:
    """New snapshot with the payment status changed"""
    status = PaymentStatus(status)
    current = order.payment_status
    if status != current and status not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransition(
            f"payment {current.value}", f"payment {status.value}"
        )
    return order.touched(now, payment_status=status, **changes)

def add_refund(order: Order, refund: RefundRecord, now: datetime,
               note: Optional[str] = None) -> Order:
    """
    New snapshot with `refund` recorded once.

    Payment becomes refunded when the refunds cover the total; `note` is then
    added to the history under the unchanged order status.
    """
    refunds = list(order.refunds)
    if all(r.refund_id != refund.refund_id for r in refunds):
        refunds.append(refund)
    updated = order.touched(now, refunds=refunds)
    if updated.total_refunded < order.total_amount:
        return updated

    updated = with_payment(updated, PaymentStatus.REFUNDED, now)
    if note:
        entry = StatusHistoryEntry(status=order.status, timestamp=now, note=note)
        updated = updated.touched(now, status_history=[*updated.status_history, entry])
    return updated

def apply_intent(order: Order, intent: PaymentIntent, now: datetime) -> Order:
    """Fold an updated payment intent into the order"""
    if intent.status == PaymentIntentStatus.COMPLETED:
        paid = with_payment(order, PaymentStatus.COMPLETED, now, payment_intent=intent)
        return advance(paid, OrderStatus.PROCESSING, now,
                       note=f"Payment confirmed ({intent.method.value})")

    if intent.status == PaymentIntentStatus.FAILED:
        return with_payment(order, PaymentStatus.FAILED, now, payment_intent=intent)

    if intent.status == PaymentIntentStatus.EXPIRED:
        unpaid = with_payment(order, PaymentStatus.FAILED, now, payment_intent=intent)
        return advance(unpaid, OrderStatus.CANCELLED, now,
                       note="Payment window expired",
                       cancellation_reason="payment_expired")

    return order.touched(now, payment_intent=intent)

def close_intent(order: Order, now: datetime) -> Order:
    """Fail an open intent so late signals for it become no-ops"""
    intent = order.payment_intent
    if intent is None or intent.status.is_terminal:
        return order
    closed = intent.model_copy(update={"status": PaymentIntentStatus.FAILED, "updated_at": now})
    return order.touched(now, payment_intent=closed)

class OrderStateMachine:
    """
    Commits order snapshots produced by the pure functions above.

    Every write is conditional on the status and version that were read;
    callers that lose a race re-read and recompute through `with_retry`.
    """

    def __init__(self, repository, payments, catalog, clock: Callable = utcnow):
        self.repository = repository
        self.payments = payments
        self.catalog = catalog
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    async def load(self, order_id: str) -> Order:
        order = await self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def commit(self, previous: Order, updated: Order,
                     return_request: Optional[ReturnRequest] = None,
                     expected_return_status: Optional[ReturnStatus] = None) -> Order:
        updated = updated.model_copy(update={"version": previous.version + 1})
        return await self.repository.compare_and_set(
            updated, previous.status, previous.version,
            return_request=return_request,
            expected_return_status=expected_return_status
        )

    async def with_retry(self, order_id: str,
                         step: Callable[[Order], Awaitable[Order]]) -> Order:
        """Run `step` on a fresh read until its commit wins or attempts run out"""
        for attempt in range(1, Config.MAX_COMMIT_ATTEMPTS + 1):
            order = await self.load(order_id)
            try:
                return await step(order)
            except ConcurrentModification:
                if attempt == Config.MAX_COMMIT_ATTEMPTS:
                    self.logger.error(f"Order {order_id} kept changing; giving up after {attempt} attempts")
                    raise
                self.logger.warning(f"Order {order_id} changed during update, retrying ({attempt})")

    async def transition(self, order_id: str, target: OrderStatus,
                         note: Optional[str] = None, **changes: Any) -> Order:
        async def step(order: Order) -> Order:
            updated = advance(order, target, self.clock(), note=note, **changes)
            return await self.commit(order, updated)

        committed = await self.with_retry(order_id, step)
        self.logger.info(f"Order {committed.order_number} moved to {committed.status.value}")
        return committed

    async def cancel(self, order_id: str, actor: str, reason: str) -> Order:
        """
        Cancel a pending or processing order.

        A completed payment is refunded exactly once before the status flips;
        if the refund fails nothing is written. Stock goes back afterwards.
        """
        refund = None

        async def step(order: Order) -> Order:
            nonlocal refund
            if order.status not in CANCELLABLE:
                if refund is not None:
                    self.logger.error(
                        f"Refund {refund.refund_id} was issued for order {order.order_number} "
                        f"but it moved to {order.status.value} before cancellation"
                    )
                raise InvalidTransition(
                    order.status.value, OrderStatus.CANCELLED.value,
                    "only pending or processing orders can be cancelled"
                )

            now = self.clock()
            updated = order
            if order.payment_status == PaymentStatus.COMPLETED:
                if refund is None:
                    refund = await self.payments.refund(
                        order, order.refundable_amount, reason,
                        idempotency_key=f"cancel-{order.order_id}", issued_by=actor
                    )
                updated = with_payment(
                    order, PaymentStatus.REFUNDED, now, refunds=[*order.refunds, refund]
                )

            updated = close_intent(updated, now)
            updated = advance(updated, OrderStatus.CANCELLED, now,
                              note=f"Cancelled by {actor}: {reason}",
                              cancellation_reason=reason)
            return await self.commit(order, updated)

        committed = await self.with_retry(order_id, step)
        self.logger.info(f"Order {committed.order_number} cancelled by {actor}")
        await self.release_inventory(committed)
        return committed

    async def release_inventory(self, order: Order) -> bool:
        """Return an order's reserved stock; safe to call more than once"""
        try:
            released = await self.catalog.release_stock(order.order_id, order.items)
        except Exception as e:
            # the order change is already committed; OrderService.release_inventory retries
            self.logger.error(f"Stock release for order {order.order_number} failed: {e}")
            return False
        if released:
            self.logger.info(f"Stock released for order {order.order_number}")
        return released
