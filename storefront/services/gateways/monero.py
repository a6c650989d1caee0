import json
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional
from ...config import Config
from ...errors import GatewayError, WebhookVerificationError
from ...models.order import Order
from ...models.payment import (
    PaymentIntent, PaymentMethod, PaymentSignal, RefundResult, SignalSource
)
from ...utils.formatters import format_crypto, utcnow
from ...utils.security import verify_signature
from .base import PaymentGatewayAdapter
from .exchange_rates import ExchangeRateService
from .http import GatewayHttpClient

XMR_PLACES = 12

class MoneroGateway(PaymentGatewayAdapter):
    """Monero payments through a GloBee hosted payment request"""

    method = PaymentMethod.MONERO
    failure_codes = frozenset({"cancelled", "failed"})
    expiry_codes = frozenset({"expired"})
    settled_codes = frozenset({"confirmed", "complete", "completed"})
    blocking_codes = frozenset({"underpaid"})

    def __init__(self, http=None, rates: Optional[ExchangeRateService] = None,
                 clock: Callable = utcnow):
        super().__init__(http or GatewayHttpClient("monero"), clock)
        self.rates = rates or ExchangeRateService(clock=clock)
        self.base_url = Config.GLOBEE_API_URL

    def _headers(self) -> Dict[str, str]:
        if not Config.GLOBEE_API_KEY:
            raise GatewayError("GloBee API key not configured", method=self.method.value)
        return {
            "Authorization": f"Bearer {Config.GLOBEE_API_KEY}",
            "Content-Type": "application/json"
        }

    async def initiate(self, order: Order) -> PaymentIntent:
        self.check_payable(order)
        xmr_amount, rate = await self.rates.convert(order.total_amount, "XMR", XMR_PLACES)
        now = self.clock()

        response = await self.http.request(
            "POST",
            f"{self.base_url}/payment-request",
            json={
                "total": format_crypto(xmr_amount, XMR_PLACES),
                "currency": "XMR",
                "order_id": order.order_id,
                "customer_email": order.customer_email,
                "success_url": f"{Config.FRONTEND_URL}/order-confirmation/{order.order_id}",
                "cancel_url": f"{Config.FRONTEND_URL}/checkout",
                "ipn_url": f"{Config.BACKEND_URL}/api/payments/monero/webhook",
                "confirmation_speed": "high",
                "redirect_url": f"{Config.FRONTEND_URL}/payment/monero/{order.order_id}"
            },
            headers=self._headers(),
            reference=order.order_id
        )
        data = response.json()
        if not response.ok or not data.get("payment_address") or not data.get("id"):
            raise GatewayError(
                f"GloBee API error: {data.get('message') or 'invalid response'}",
                method=self.method.value,
                details={"http_status": response.status, "order_id": order.order_id}
            )

        self.logger.info(
            f"Monero payment request {data['id']} created for order {order.order_number}: "
            f"{format_crypto(xmr_amount, XMR_PLACES)} XMR"
        )
        return PaymentIntent(
            order_id=order.order_id,
            method=self.method,
            external_reference=str(data["id"]),
            expected_amount=xmr_amount,
            currency="XMR",
            fiat_amount=order.total_amount,
            exchange_rate=rate.crypto_per_fiat,
            exchange_rate_timestamp=rate.fetched_at,
            expiration_time=self._expiration(data, now),
            required_confirmations=Config.MONERO_REQUIRED_CONFIRMATIONS,
            deposit_address=data["payment_address"],
            payment_url=data.get("payment_url"),
            qr_payload=f"monero:{data['payment_address']}?tx_amount={format_crypto(xmr_amount, XMR_PLACES)}",
            created_at=now
        )

    def _expiration(self, data: Dict[str, Any], now: datetime) -> datetime:
        window_end = now + timedelta(hours=Config.MONERO_PAYMENT_WINDOW_HOURS)
        reported = data.get("expiration_time")
        if not reported:
            return window_end
        try:
            expires = datetime.fromisoformat(str(reported).replace("Z", "+00:00"))
        except ValueError:
            return window_end
        if expires.tzinfo is None:
            return window_end
        # never give the buyer longer than our own window
        return min(expires, window_end)

    async def fetch_signal(self, intent: PaymentIntent) -> PaymentSignal:
        response = await self.http.request(
            "GET",
            f"{self.base_url}/payment-request/{intent.external_reference}",
            headers=self._headers(),
            reference=intent.external_reference
        )
        if not response.ok:
            raise GatewayError(
                "Unable to fetch payment status", method=self.method.value,
                reference=intent.external_reference, details={"http_status": response.status}
            )
        return self._signal(response.json(), SignalSource.POLL, intent.external_reference)

    def parse_webhook(self, raw_body: bytes, signature: Optional[str]) -> PaymentSignal:
        """Verify a GloBee IPN body and turn it into a signal"""
        if not Config.GLOBEE_SECRET:
            raise WebhookVerificationError("GloBee webhook secret not configured")
        if not verify_signature(raw_body, signature, Config.GLOBEE_SECRET):
            raise WebhookVerificationError("Invalid GloBee webhook signature")

        try:
            data = json.loads(raw_body)
        except ValueError:
            raise WebhookVerificationError("Webhook body is not valid JSON")
        if not isinstance(data, dict) or not data.get("id"):
            raise WebhookVerificationError("Webhook does not name a payment request")

        return self._signal(data, SignalSource.WEBHOOK)

    def _signal(self, data: Dict[str, Any], source: SignalSource,
                reference: Optional[str] = None) -> PaymentSignal:
        paid_amount = data.get("paid_amount")
        try:
            amount = Decimal(str(paid_amount)) if paid_amount is not None else None
            confirmations = data.get("confirmations")
            confirmations = int(confirmations) if confirmations is not None else None
        except (InvalidOperation, ValueError, TypeError):
            raise GatewayError(
                "Invalid payment data from GloBee", method=self.method.value,
                reference=reference or data.get("id")
            )

        return PaymentSignal(
            external_reference=str(data.get("id") or reference),
            confirmations=confirmations,
            status_code=data.get("status"),
            amount_received=amount,
            transaction_hash=data.get("transaction_hash"),
            source=source
        )

    async def refund(self, order: Order, amount: Decimal, reason: str,
                     idempotency_key: str) -> RefundResult:
        intent = order.payment_intent
        xmr_amount = amount
        if intent and intent.exchange_rate:
            xmr_amount = (amount * intent.exchange_rate).quantize(Decimal(1).scaleb(-XMR_PLACES))

        self.logger.warning(
            f"Manual Monero refund required for order {order.order_number}: {amount} {Config.CURRENCY}"
        )
        return RefundResult(
            refund_id=idempotency_key,
            method=self.method,
            amount=amount,
            status="manual",
            instructions=(
                f"Send {format_crypto(xmr_amount, XMR_PLACES)} XMR back to the customer "
                f"for order {order.order_number} ({reason})"
            )
        )
