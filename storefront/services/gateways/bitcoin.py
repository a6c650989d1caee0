from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional
import pytz
from ...config import Config
from ...errors import GatewayError, WebhookVerificationError
from ...models.order import Order
from ...models.payment import (
    PaymentIntent, PaymentMethod, PaymentSignal, RefundResult, SignalSource
)
from ...utils.formatters import format_crypto, utcnow
from ...utils.security import secrets_match
from .base import PaymentGatewayAdapter
from .exchange_rates import ExchangeRateService
from .http import GatewayHttpClient

BTC_PLACES = 8
SATOSHIS_PER_BTC = Decimal(100000000)

def satoshis_to_btc(satoshis) -> Decimal:
    return Decimal(int(satoshis)) / SATOSHIS_PER_BTC

class BitcoinGateway(PaymentGatewayAdapter):
    """
    On-chain Bitcoin payments to a fresh Blockonomics address per order.

    The order total is converted to BTC when the payment is initiated and the
    payment completes once the transaction has enough confirmations and the
    received amount is within tolerance.
    """

    method = PaymentMethod.BITCOIN

    def __init__(self, http=None, rates: Optional[ExchangeRateService] = None,
                 clock: Callable = utcnow):
        super().__init__(http or GatewayHttpClient("bitcoin"), clock)
        self.rates = rates or ExchangeRateService(clock=clock)
        self.base_url = Config.BLOCKONOMICS_API_URL

    def _headers(self) -> Dict[str, str]:
        if not Config.BLOCKONOMICS_API_KEY:
            raise GatewayError("Blockonomics API key not configured", method=self.method.value)
        return {
            "Authorization": f"Bearer {Config.BLOCKONOMICS_API_KEY}",
            "Content-Type": "application/json"
        }

    async def initiate(self, order: Order) -> PaymentIntent:
        self.check_payable(order)
        btc_amount, rate = await self.rates.convert(order.total_amount, "BTC", BTC_PLACES)
        address = await self.generate_address(order.order_id)
        now = self.clock()

        self.logger.info(
            f"Bitcoin payment for order {order.order_number}: "
            f"{format_crypto(btc_amount, BTC_PLACES)} BTC to {address}"
        )
        return PaymentIntent(
            order_id=order.order_id,
            method=self.method,
            external_reference=address,
            expected_amount=btc_amount,
            currency="BTC",
            fiat_amount=order.total_amount,
            exchange_rate=rate.crypto_per_fiat,
            exchange_rate_timestamp=rate.fetched_at,
            expiration_time=now + timedelta(hours=Config.BITCOIN_PAYMENT_WINDOW_HOURS),
            required_confirmations=Config.BITCOIN_REQUIRED_CONFIRMATIONS,
            deposit_address=address,
            qr_payload=f"bitcoin:{address}?amount={format_crypto(btc_amount, BTC_PLACES)}",
            created_at=now
        )

    async def generate_address(self, order_id: str) -> str:
        response = await self.http.request(
            "POST", f"{self.base_url}/new_address",
            headers=self._headers(), reference=order_id
        )
        address = response.json().get("address")
        if not response.ok or not address:
            raise GatewayError(
                "Failed to generate Bitcoin address", method=self.method.value,
                details={"http_status": response.status, "order_id": order_id}
            )
        return address

    async def fetch_signal(self, intent: PaymentIntent) -> PaymentSignal:
        txid = intent.transaction_hash or await self.find_transaction(intent)
        if txid is None:
            return PaymentSignal(
                external_reference=intent.external_reference, source=SignalSource.POLL
            )
        return await self._transaction_signal(intent, txid)

    async def find_transaction(self, intent: PaymentIntent) -> Optional[str]:
        """Latest transaction paying the deposit address, from its history"""
        response = await self.http.request(
            "POST", f"{self.base_url}/searchhistory",
            json={"addr": intent.deposit_address},
            headers=self._headers(), reference=intent.external_reference
        )
        if not response.ok:
            raise GatewayError(
                "Failed to fetch Bitcoin address history", method=self.method.value,
                reference=intent.external_reference, details={"http_status": response.status}
            )

        data = response.json()
        # unconfirmed transactions are listed under "pending", newest first
        for entry in (data.get("pending") or []) + (data.get("history") or []):
            if entry.get("txid") and int(entry.get("value") or 0) > 0:
                return entry["txid"]
        return None

    async def _transaction_signal(self, intent: PaymentIntent, txid: str) -> PaymentSignal:
        response = await self.http.request(
            "GET", f"{self.base_url}/tx_detail/{txid}",
            headers=self._headers(), reference=intent.external_reference
        )
        if not response.ok:
            raise GatewayError(
                "Failed to fetch transaction details", method=self.method.value,
                reference=intent.external_reference, details={"http_status": response.status}
            )

        data = response.json()
        outputs = [o for o in data.get("out") or [] if o.get("address") == intent.deposit_address]
        received = None
        if outputs:
            received = sum((satoshis_to_btc(o.get("value", 0)) for o in outputs), Decimal(0))

        seen_at = None
        if data.get("time"):
            seen_at = datetime.fromtimestamp(int(data["time"]), tz=pytz.utc)

        return PaymentSignal(
            external_reference=intent.external_reference,
            confirmations=int(data.get("confirmations") or 0),
            amount_received=received,
            transaction_hash=txid,
            seen_at=seen_at,
            source=SignalSource.POLL
        )

    def parse_callback(self, params: Mapping[str, Any]) -> PaymentSignal:
        """
        Turn a Blockonomics callback into a signal.

        Callbacks carry addr, value (satoshi), txid, and either confirmations
        or status (0 unconfirmed, 1 partially confirmed, 2 confirmed), and
        must present the shared callback secret.
        """
        if not secrets_match(params.get("secret"), Config.BLOCKONOMICS_CALLBACK_SECRET):
            raise WebhookVerificationError("Invalid Blockonomics callback secret")

        address = params.get("addr")
        txid = params.get("txid")
        if not address or not txid:
            raise WebhookVerificationError("Invalid webhook data")

        try:
            received = satoshis_to_btc(params["value"]) if params.get("value") is not None else None
            if params.get("confirmations") is not None:
                confirmations = int(params["confirmations"])
            elif params.get("status") is not None:
                status = int(params["status"])
                confirmations = (
                    Config.BITCOIN_REQUIRED_CONFIRMATIONS if status >= 2 else status
                )
            else:
                confirmations = 0
        except (ValueError, TypeError, InvalidOperation):
            raise WebhookVerificationError("Invalid webhook data")

        return PaymentSignal(
            external_reference=address,
            confirmations=confirmations,
            amount_received=received,
            transaction_hash=txid,
            source=SignalSource.WEBHOOK
        )

    async def refund(self, order: Order, amount: Decimal, reason: str,
                     idempotency_key: str) -> RefundResult:
        # on-chain refunds need an address from the buyer and are sent by an operator
        intent = order.payment_intent
        btc_amount = amount
        if intent and intent.exchange_rate:
            btc_amount = (amount * intent.exchange_rate).quantize(Decimal(1).scaleb(-BTC_PLACES))

        self.logger.warning(
            f"Manual Bitcoin refund required for order {order.order_number}: {amount} {Config.CURRENCY}"
        )
        return RefundResult(
            refund_id=idempotency_key,
            method=self.method,
            amount=amount,
            status="manual",
            instructions=(
                f"Send {format_crypto(btc_amount, BTC_PLACES)} BTC back to the customer "
                f"for order {order.order_number} ({reason})"
            )
        )
