import logging
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional
from ..errors import GatewayError, RefundError
from ..models.order import Order
from ..models.payment import PaymentMethod, RefundRecord
from ..utils.formatters import format_price, quantize_money, utcnow
from .gateways import (
    BitcoinGateway, ExchangeRateService, MoneroGateway, PayPalGateway,
    PaymentGatewayAdapter
)

class PaymentService:
    """Routes payment operations to the adapter for the order's method"""

    def __init__(self, adapters: Iterable[PaymentGatewayAdapter], clock: Callable = utcnow):
        self.adapters: Dict[PaymentMethod, PaymentGatewayAdapter] = {
            adapter.method: adapter for adapter in adapters
        }
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @classmethod
    def default(cls, clock: Callable = utcnow) -> "PaymentService":
        """Registry wired to the live processors configured in Config"""
        rates = ExchangeRateService(clock=clock)
        return cls([
            PayPalGateway(clock=clock),
            BitcoinGateway(rates=rates, clock=clock),
            MoneroGateway(rates=rates, clock=clock)
        ], clock=clock)

    def adapter_for(self, method: PaymentMethod) -> PaymentGatewayAdapter:
        adapter = self.adapters.get(PaymentMethod(method))
        if adapter is None:
            raise GatewayError("Payment method is not available", method=PaymentMethod(method).value)
        return adapter

    async def refund(self, order: Order, amount: Decimal, reason: str,
                     idempotency_key: str, issued_by: Optional[str] = None,
                     return_id: Optional[str] = None) -> RefundRecord:
        """Issue one refund instruction and describe it as a record for the order"""
        amount = quantize_money(amount)
        if amount <= 0 or amount > order.refundable_amount:
            raise RefundError(
                f"Refund of {format_price(amount)} exceeds the refundable amount "
                f"{format_price(order.refundable_amount)}",
                method=order.payment_method.value, reference=order.payment_reference
            )

        adapter = self.adapter_for(order.payment_method)
        result = await adapter.refund(order, amount, reason, idempotency_key)

        self.logger.info(
            f"Refund {result.refund_id} of {format_price(amount)} for order "
            f"{order.order_number} ({result.status})"
        )
        return RefundRecord(
            refund_id=result.refund_id,
            amount=result.amount,
            reason=reason,
            status=result.status,
            issued_at=self.clock(),
            issued_by=issued_by,
            return_id=return_id
        )
