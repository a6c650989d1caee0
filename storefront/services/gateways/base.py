import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, FrozenSet, Optional
from ...errors import CaptureError, OrderValidationError
from ...models.order import Order
from ...models.payment import (
    PaymentIntent, PaymentIntentStatus, PaymentMethod, PaymentResult,
    PaymentSignal, RefundResult
)
from ...utils.formatters import utcnow

class PaymentGatewayAdapter(ABC):
    """
    Uniform contract over one payment method.

    `initiate` opens a payment attempt with the processor, `capture`
    finalizes synchronous methods, `fetch_signal` reads the processor's view
    of an attempt and `evaluate` folds a signal (pushed or polled) into a new
    intent without any I/O. `query_status` combines the last two and never
    writes anything.

    An attempt past its deadline expires unless a covering payment was seen
    inside the window; such an attempt keeps collecting confirmations.
    """

    method: PaymentMethod

    # processor status codes that end an attempt
    failure_codes: FrozenSet[str] = frozenset()
    expiry_codes: FrozenSet[str] = frozenset()
    # codes that mean the processor itself considers the payment settled
    settled_codes: FrozenSet[str] = frozenset()
    # codes that hold completion back even when confirmations suffice
    blocking_codes: FrozenSet[str] = frozenset()
    # whether `capture` finalizes this method
    supports_capture = False
    # accepted shortfall against the expected amount, in percent
    amount_tolerance_percent = Decimal("1")

    def __init__(self, http=None, clock: Callable = utcnow):
        self.http = http
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__module__)

    @abstractmethod
    async def initiate(self, order: Order) -> PaymentIntent:
        pass

    async def capture(self, intent: PaymentIntent) -> PaymentResult:
        raise CaptureError(
            "Capture is not applicable to this payment method; "
            "it completes through confirmations",
            method=self.method.value, reference=intent.external_reference
        )

    @abstractmethod
    async def fetch_signal(self, intent: PaymentIntent) -> PaymentSignal:
        pass

    @abstractmethod
    async def refund(self, order: Order, amount: Decimal, reason: str,
                     idempotency_key: str) -> RefundResult:
        pass

    async def query_status(self, intent: PaymentIntent,
                           now: Optional[datetime] = None) -> PaymentIntentStatus:
        now = now or self.clock()
        if intent.status.is_terminal:
            return intent.status
        signal = await self.fetch_signal(intent)
        return self.evaluate(intent, signal, now).status

    def evaluate(self, intent: PaymentIntent, signal: PaymentSignal,
                 now: datetime) -> PaymentIntent:
        """Apply a signal to an intent; returns the same object when nothing changes"""
        if intent.status.is_terminal:
            return intent

        # the deadline is checked before anything the signal reports, unless
        # the funds were already seen inside the window
        if intent.is_expired(now) and not self.paid_in_time(intent, signal):
            return intent.model_copy(update={
                "status": PaymentIntentStatus.EXPIRED, "updated_at": now
            })

        code = (signal.status_code or "").lower()
        if code in self.failure_codes:
            return intent.model_copy(update={
                "status": PaymentIntentStatus.FAILED, "updated_at": now
            })
        if code in self.expiry_codes:
            return intent.model_copy(update={
                "status": PaymentIntentStatus.EXPIRED, "updated_at": now
            })

        confirmations = intent.confirmations
        if signal.confirmations is not None:
            # late webhooks must not roll the count back
            confirmations = max(confirmations, signal.confirmations)
        elif code in self.settled_codes:
            confirmations = max(confirmations, intent.required_confirmations)

        amount_received = signal.amount_received
        if amount_received is None:
            amount_received = intent.amount_received
        transaction_hash = signal.transaction_hash or intent.transaction_hash

        observed = (confirmations > 0 or bool(amount_received)
                    or bool(transaction_hash) or bool(code))
        sufficient = amount_received is None or self.is_sufficient(
            amount_received, intent.expected_amount
        )

        status = intent.status
        if observed and self.completes(intent, confirmations, code) and sufficient \
                and code not in self.blocking_codes:
            status = PaymentIntentStatus.COMPLETED
        elif observed:
            status = PaymentIntentStatus.AWAITING_CONFIRMATION

        changes = {}
        if status != intent.status:
            changes["status"] = status
        if confirmations != intent.confirmations:
            changes["confirmations"] = confirmations
        if amount_received != intent.amount_received:
            changes["amount_received"] = amount_received
        if transaction_hash != intent.transaction_hash:
            changes["transaction_hash"] = transaction_hash
        if not changes:
            return intent

        changes["updated_at"] = now
        return intent.model_copy(update=changes)

    def completes(self, intent: PaymentIntent, confirmations: int, code: str) -> bool:
        return confirmations >= intent.required_confirmations

    def paid_in_time(self, intent: PaymentIntent,
                     signal: Optional[PaymentSignal] = None) -> bool:
        """
        Whether enough funds reached the processor before the window closed.

        Amounts stored on the intent were recorded before any expiry, so they
        count as is. A signal's amount counts only when the processor dates
        the funds at or before `expiration_time`.
        """
        if intent.amount_received is not None and \
                self.is_sufficient(intent.amount_received, intent.expected_amount):
            return True
        if signal is None or signal.amount_received is None or signal.seen_at is None:
            return False
        return signal.seen_at <= intent.expiration_time and \
            self.is_sufficient(signal.amount_received, intent.expected_amount)

    def is_lapsed(self, intent: PaymentIntent, now: datetime) -> bool:
        """Past the deadline with no covering payment recorded"""
        return intent.is_expired(now) and not self.paid_in_time(intent)

    def is_sufficient(self, received: Decimal, expected: Decimal) -> bool:
        tolerance = expected * self.amount_tolerance_percent / Decimal(100)
        return received >= expected - tolerance

    def check_payable(self, order: Order):
        """Reject orders that cannot be paid for"""
        if not order.items:
            raise OrderValidationError("Order has no items", {"order_id": order.order_id})
        if order.total_amount <= 0:
            raise OrderValidationError(
                "Order total must be positive", {"order_id": order.order_id}
            )
