import base64
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional
from ...config import Config
from ...errors import CaptureError, GatewayError, RefundError, WebhookVerificationError
from ...models.order import Order
from ...models.payment import (
    PaymentIntent, PaymentIntentStatus, PaymentMethod, PaymentResult,
    PaymentSignal, RefundResult, SignalSource
)
from ...utils.formatters import quantize_money, utcnow
from .base import PaymentGatewayAdapter
from .http import GatewayHttpClient

LIVE_URL = "https://api-m.paypal.com"
SANDBOX_URL = "https://api-m.sandbox.paypal.com"

# webhook event types and the status code they are folded into
WEBHOOK_EVENTS = {
    "CHECKOUT.ORDER.APPROVED": "approved",
    "CHECKOUT.ORDER.COMPLETED": "completed",
    "CHECKOUT.ORDER.VOIDED": "voided",
    "PAYMENT.CAPTURE.COMPLETED": "payment.capture.completed",
    "PAYMENT.CAPTURE.DENIED": "payment.capture.denied",
    "PAYMENT.CAPTURE.DECLINED": "payment.capture.declined",
}

class PayPalGateway(PaymentGatewayAdapter):
    """
    PayPal Orders v2 redirect flow.

    The buyer approves on PayPal and is sent back to the storefront, which
    then captures. Only a completed capture settles the payment.
    """

    method = PaymentMethod.CARD_REDIRECT
    failure_codes = frozenset({
        "voided", "declined", "payment.capture.denied", "payment.capture.declined"
    })
    settled_codes = frozenset({"completed", "payment.capture.completed"})
    supports_capture = True

    def __init__(self, http=None, clock: Callable = utcnow):
        super().__init__(http or GatewayHttpClient("paypal"), clock)
        self.base_url = LIVE_URL if Config.PAYPAL_MODE == "live" else SANDBOX_URL
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    async def _get_access_token(self) -> str:
        now = self.clock()
        if self._access_token and self._token_expiry and now < self._token_expiry:
            return self._access_token

        credentials = f"{Config.PAYPAL_CLIENT_ID}:{Config.PAYPAL_CLIENT_SECRET}"
        auth = base64.b64encode(credentials.encode()).decode()
        response = await self.http.request(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            data="grant_type=client_credentials",
            headers={
                "Authorization": f"Basic {auth}",
                "Content-Type": "application/x-www-form-urlencoded"
            }
        )
        data = response.json()
        if not response.ok or not data.get("access_token"):
            raise GatewayError(
                "Failed to authenticate with PayPal", method=self.method.value,
                details={"http_status": response.status}
            )

        self._access_token = data["access_token"]
        # refresh a minute before PayPal expires the token
        expires_in = int(data.get("expires_in", 0))
        self._token_expiry = now + timedelta(seconds=expires_in - 60)
        self.logger.info("PayPal access token obtained")
        return self._access_token

    async def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._get_access_token()}",
            "Content-Type": "application/json"
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def initiate(self, order: Order) -> PaymentIntent:
        self.check_payable(order)
        now = self.clock()
        amount = quantize_money(order.total_amount)

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order.order_id,
                "invoice_id": order.order_number,
                "amount": {
                    "currency_code": Config.CURRENCY,
                    "value": f"{amount:.2f}"
                }
            }],
            "application_context": {
                "brand_name": Config.BRAND_NAME,
                "landing_page": "NO_PREFERENCE",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": f"{Config.FRONTEND_URL}/checkout/paypal/return?order={order.order_id}",
                "cancel_url": f"{Config.FRONTEND_URL}/checkout"
            }
        }

        response = await self.http.request(
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            json=payload,
            # one key per stored order version so a new attempt gets a new PayPal order
            headers=await self._headers(request_id=f"create-{order.order_id}-{order.version}"),
            reference=order.order_id
        )
        data = response.json()
        if not response.ok or not data.get("id"):
            raise GatewayError(
                "Failed to create PayPal order", method=self.method.value,
                details={"http_status": response.status, "order_id": order.order_id}
            )

        approve_url = self._link(data, "approve") or self._link(data, "payer-action")
        if not approve_url:
            raise GatewayError(
                "PayPal order has no approval link", method=self.method.value,
                reference=data["id"]
            )

        self.logger.info(f"PayPal order {data['id']} created for order {order.order_number}")
        return PaymentIntent(
            order_id=order.order_id,
            method=self.method,
            external_reference=data["id"],
            expected_amount=amount,
            currency=Config.CURRENCY,
            fiat_amount=amount,
            expiration_time=now + timedelta(hours=Config.PAYPAL_APPROVAL_WINDOW_HOURS),
            redirect_url=approve_url,
            created_at=now
        )

    async def capture(self, intent: PaymentIntent) -> PaymentResult:
        reference = intent.external_reference
        response = await self.http.request(
            "POST",
            f"{self.base_url}/v2/checkout/orders/{reference}/capture",
            json={},
            headers=await self._headers(request_id=f"capture-{reference}"),
            reference=reference
        )
        data = response.json()

        if response.status == 422 and self._issue(data) == "ORDER_ALREADY_CAPTURED":
            self.logger.info(f"PayPal order {reference} was already captured")
            details = await self.get_order_details(reference)
            result = self._capture_result(reference, details)
            return result.model_copy(update={"already_captured": True})

        if response.status == 404:
            raise CaptureError(
                "Unknown PayPal order", method=self.method.value, reference=reference
            )
        if not response.ok:
            issue = self._issue(data) or f"HTTP {response.status}"
            raise CaptureError(
                f"PayPal declined the capture: {issue}", method=self.method.value,
                reference=reference, details={"issue": issue}
            )

        result = self._capture_result(reference, data)
        if result.status == PaymentIntentStatus.FAILED:
            raise CaptureError(
                "PayPal declined the capture", method=self.method.value, reference=reference
            )

        self.logger.info(f"PayPal order {reference} captured")
        return result

    async def get_order_details(self, reference: str) -> Dict[str, Any]:
        response = await self.http.request(
            "GET",
            f"{self.base_url}/v2/checkout/orders/{reference}",
            headers=await self._headers(),
            reference=reference
        )
        if response.status == 404:
            raise CaptureError(
                "Unknown PayPal order", method=self.method.value, reference=reference
            )
        if not response.ok:
            raise GatewayError(
                "Failed to get PayPal order details", method=self.method.value,
                reference=reference, details={"http_status": response.status}
            )
        return response.json()

    async def fetch_signal(self, intent: PaymentIntent) -> PaymentSignal:
        data = await self.get_order_details(intent.external_reference)
        capture = self._first_capture(data)
        code = (data.get("status") or "").lower()
        if capture and capture.get("status") in ("DECLINED", "FAILED"):
            code = "declined"
        elif code == "completed" and (not capture or capture.get("status") != "COMPLETED"):
            # order closed but the capture itself is still held by PayPal
            code = "approved"

        return PaymentSignal(
            external_reference=intent.external_reference,
            status_code=code or None,
            amount_received=self._amount(capture),
            transaction_hash=capture.get("id") if capture else None,
            source=SignalSource.POLL
        )

    def evaluate(self, intent: PaymentIntent, signal: PaymentSignal,
                 now: datetime) -> PaymentIntent:
        updated = super().evaluate(intent, signal, now)
        if (updated.status == PaymentIntentStatus.COMPLETED
                and updated.capture_id is None and updated.transaction_hash):
            updated = updated.model_copy(update={"capture_id": updated.transaction_hash})
        return updated

    def completes(self, intent: PaymentIntent, confirmations: int, code: str) -> bool:
        return code in self.settled_codes

    async def refund(self, order: Order, amount: Decimal, reason: str,
                     idempotency_key: str) -> RefundResult:
        intent = order.payment_intent
        reference = intent.external_reference if intent else None
        capture_id = intent.capture_id if intent else None
        if capture_id is None and reference:
            capture = self._first_capture(await self.get_order_details(reference))
            capture_id = capture.get("id") if capture else None
        if capture_id is None:
            raise RefundError(
                "Order has no PayPal capture to refund", method=self.method.value,
                reference=reference
            )

        amount = quantize_money(amount)
        response = await self.http.request(
            "POST",
            f"{self.base_url}/v2/payments/captures/{capture_id}/refund",
            json={
                "amount": {"currency_code": Config.CURRENCY, "value": f"{amount:.2f}"},
                "note_to_payer": reason[:255]
            },
            headers=await self._headers(request_id=idempotency_key),
            reference=reference
        )
        data = response.json()
        if not response.ok or not data.get("id"):
            raise RefundError(
                "Failed to process PayPal refund", method=self.method.value,
                reference=reference,
                details={"http_status": response.status, "issue": self._issue(data)}
            )

        self.logger.info(f"PayPal refund {data['id']} processed for capture {capture_id}")
        return RefundResult(
            refund_id=data["id"],
            method=self.method,
            amount=amount,
            status="completed" if data.get("status") == "COMPLETED" else "pending"
        )

    async def verify_webhook(self, headers: Dict[str, str], event: Dict[str, Any]) -> bool:
        """Ask PayPal whether a webhook delivery is authentic"""
        if not Config.PAYPAL_WEBHOOK_ID:
            return False
        headers = {k.lower(): v for k, v in headers.items()}
        response = await self.http.request(
            "POST",
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            json={
                "auth_algo": headers.get("paypal-auth-algo"),
                "cert_url": headers.get("paypal-cert-url"),
                "transmission_id": headers.get("paypal-transmission-id"),
                "transmission_sig": headers.get("paypal-transmission-sig"),
                "transmission_time": headers.get("paypal-transmission-time"),
                "webhook_id": Config.PAYPAL_WEBHOOK_ID,
                "webhook_event": event
            },
            headers=await self._headers()
        )
        return response.ok and response.json().get("verification_status") == "SUCCESS"

    async def parse_webhook(self, headers: Dict[str, str],
                            event: Dict[str, Any]) -> Optional[PaymentSignal]:
        """Verified webhook event as a signal; None for events that carry no status"""
        if not await self.verify_webhook(headers, event):
            raise WebhookVerificationError("Invalid PayPal webhook signature")

        code = WEBHOOK_EVENTS.get(event.get("event_type", ""))
        if code is None:
            return None

        resource = event.get("resource") or {}
        if code.startswith("payment.capture"):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            reference = related.get("order_id")
            transaction_hash = resource.get("id")
            amount = self._amount(resource)
        else:
            reference = resource.get("id")
            transaction_hash = None
            amount = None

        if not reference:
            raise WebhookVerificationError("PayPal webhook does not name an order")

        return PaymentSignal(
            external_reference=reference,
            status_code=code,
            amount_received=amount,
            transaction_hash=transaction_hash,
            source=SignalSource.WEBHOOK
        )

    def _capture_result(self, reference: str, data: Dict[str, Any]) -> PaymentResult:
        capture = self._first_capture(data)
        capture_status = capture.get("status") if capture else None
        if data.get("status") == "COMPLETED" and capture_status == "COMPLETED":
            status = PaymentIntentStatus.COMPLETED
        elif capture_status in ("DECLINED", "FAILED"):
            status = PaymentIntentStatus.FAILED
        else:
            status = PaymentIntentStatus.AWAITING_CONFIRMATION

        payer = data.get("payer") or {}
        return PaymentResult(
            external_reference=reference,
            status=status,
            capture_id=capture.get("id") if capture else None,
            amount=self._amount(capture),
            payer_email=payer.get("email_address")
        )

    @staticmethod
    def _first_capture(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in data.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    @staticmethod
    def _amount(capture: Optional[Dict[str, Any]]) -> Optional[Decimal]:
        if not capture:
            return None
        value = (capture.get("amount") or {}).get("value")
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    @staticmethod
    def _link(data: Dict[str, Any], rel: str) -> Optional[str]:
        for link in data.get("links") or []:
            if link.get("rel") == rel:
                return link.get("href")
        return None

    @staticmethod
    def _issue(data: Dict[str, Any]) -> Optional[str]:
        details = data.get("details") or []
        if details:
            return details[0].get("issue")
        return data.get("name")
