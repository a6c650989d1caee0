import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Optional
from ..config import Config
from ..errors import (
    ConcurrentModification, GatewayError, OrderValidationError
)
from ..models.order import Order
from ..models.payment import PaymentIntent, PaymentIntentStatus, PaymentSignal
from ..utils.formatters import utcnow
from .state_machine import OrderStateMachine, apply_intent

class ConfirmationTracker:
    """
    Moves payment intents forward from processor signals.

    Webhook pushes and poll results take the same path: the adapter evaluates
    the signal against the stored intent and the result is committed with a
    conditional update. Signals that change nothing write nothing, and
    terminal intents ignore further signals, so completion happens once.
    """

    def __init__(self, machine: OrderStateMachine, payments, clock: Callable = utcnow):
        self.machine = machine
        self.repository = machine.repository
        self.payments = payments
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    async def handle_signal(self, signal: PaymentSignal) -> Optional[Order]:
        """
        Apply a webhook or poll signal to the order that owns its reference.

        Returns the order as stored afterwards; an expired payment shows up as
        a cancelled order whose intent is `expired`. Returns None when no order
        carries the reference any more (an attempt that was replaced), so the
        processor's delivery can be acknowledged.
        """
        for attempt in range(1, Config.MAX_COMMIT_ATTEMPTS + 1):
            order = await self.repository.get_order_by_reference(signal.external_reference)
            if order is None:
                self.logger.warning(
                    f"Ignoring {signal.source.value} signal: no order carries payment "
                    f"reference {signal.external_reference}"
                )
                return None

            intent = order.payment_intent
            if intent.status.is_terminal:
                self.logger.info(
                    f"Ignoring {signal.source.value} signal for order {order.order_number}: "
                    f"payment already {intent.status.value}"
                )
                return order

            now = self.clock()
            adapter = self.payments.adapter_for(intent.method)
            updated = adapter.evaluate(intent, signal, now)
            if updated is intent:
                return order

            try:
                return await self._apply(order, updated, now)
            except ConcurrentModification:
                if attempt == Config.MAX_COMMIT_ATTEMPTS:
                    raise
                self.logger.warning(
                    f"Order {order.order_number} changed while applying a signal, retrying"
                )

    async def poll(self, order_id: str) -> PaymentIntentStatus:
        """Pull the processor's view of an order's payment and apply it"""
        for attempt in range(1, Config.MAX_COMMIT_ATTEMPTS + 1):
            order = await self.machine.load(order_id)
            intent = order.payment_intent
            if intent is None:
                raise OrderValidationError(
                    "No payment has been initiated for this order", {"order_id": order_id}
                )
            if intent.status.is_terminal:
                return intent.status

            # past the deadline the processor is still asked once, so funds it
            # saw inside the window are not lost to the expiry
            adapter = self.payments.adapter_for(intent.method)
            signal = await adapter.fetch_signal(intent)
            now = self.clock()
            updated = adapter.evaluate(intent, signal, now)

            if updated is intent:
                return intent.status

            try:
                committed = await self._apply(order, updated, now)
            except ConcurrentModification:
                if attempt == Config.MAX_COMMIT_ATTEMPTS:
                    raise
                self.logger.warning(f"Order {order.order_number} changed during poll, retrying")
                continue
            return committed.payment_intent.status

    async def sweep(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Poll every order still waiting on a crypto payment"""
        orders = await self.repository.list_awaiting_payment(limit or Config.POLL_BATCH_SIZE)
        summary = Counter()
        for order in orders:
            try:
                status = await self.poll(order.order_id)
                summary[status.value] += 1
            except (GatewayError, ConcurrentModification) as e:
                self.logger.warning(f"Could not poll payment for order {order.order_number}: {e}")
                summary["errors"] += 1

        if orders:
            self.logger.info(f"Payment sweep over {len(orders)} orders: {dict(summary)}")
        return dict(summary)

    async def _apply(self, order: Order, intent: PaymentIntent, now: datetime) -> Order:
        committed = await self.machine.commit(order, apply_intent(order, intent, now))

        if intent.status == PaymentIntentStatus.COMPLETED:
            self.logger.info(
                f"Payment for order {order.order_number} confirmed "
                f"({intent.confirmations}/{intent.required_confirmations} confirmations)"
            )
        elif intent.status == PaymentIntentStatus.EXPIRED:
            self.logger.info(f"Payment for order {order.order_number} expired; order cancelled")
            await self.machine.release_inventory(committed)
        elif intent.status == PaymentIntentStatus.FAILED:
            self.logger.warning(f"Payment for order {order.order_number} failed at the processor")
        else:
            if intent.is_expired(now):
                self.logger.warning(
                    f"Payment for order {order.order_number} arrived inside the window; "
                    f"still awaiting confirmations after the deadline"
                )
            self.logger.info(
                f"Payment for order {order.order_number} awaiting confirmation "
                f"({intent.confirmations}/{intent.required_confirmations})"
            )
        return committed
