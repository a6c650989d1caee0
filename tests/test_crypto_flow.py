"""Bitcoin and Monero payments driven by webhooks and polling"""
import json
from decimal import Decimal
import pytest

from storefront.errors import PaymentExpired, WebhookVerificationError
from storefront.models.order import CartItem, OrderStatus
from storefront.models.payment import PaymentIntentStatus, PaymentMethod, PaymentStatus
from storefront.utils.security import sign_payload
from tests.fakes import BTC_ADDRESS, route_bitcoin, route_monero


def btc_callback(confirmations=None, value=1774950, txid="tx-1", secret="callback-secret", **extra):
    params = {"addr": BTC_ADDRESS, "value": value, "txid": txid, "secret": secret}
    if confirmations is not None:
        params["confirmations"] = confirmations
    params.update(extra)
    return params


@pytest.fixture
def bitcoin(http):
    route_bitcoin(http)
    return http


@pytest.fixture
def btc_adapter(payments):
    return payments.adapter_for(PaymentMethod.BITCOIN)


@pytest.fixture
def bitcoin_order(storefront, place_order, customer, bitcoin):
    """£693.99 + £15.99 shipping = £709.98, paid in BTC"""
    async def _create():
        order = await place_order(
            payment_method=PaymentMethod.BITCOIN,
            cart=[CartItem(product_id="prod-3", quantity=1)]
        )
        instructions = await storefront.orders.initiate_payment(order.order_id, customer)
        return order, instructions
    return _create


class TestBitcoinInitiate:
    @pytest.mark.asyncio
    async def test_instructions(self, bitcoin_order, clock):
        order, instructions = await bitcoin_order()

        assert order.total_amount == Decimal("709.98")
        assert instructions.amount == Decimal("0.01774950")
        assert instructions.currency == "BTC"
        assert instructions.exchange_rate == Decimal("0.000025")
        assert instructions.deposit_address == BTC_ADDRESS
        assert instructions.qr_payload == f"bitcoin:{BTC_ADDRESS}?amount=0.0177495"
        assert instructions.required_confirmations == 2
        assert instructions.expiration_time == clock.now.replace(day=16)

    @pytest.mark.asyncio
    async def test_capture_is_not_applicable(self, storefront, bitcoin_order):
        from storefront.errors import CaptureError
        order, _ = await bitcoin_order()
        with pytest.raises(CaptureError, match="not applicable"):
            await storefront.orders.capture_payment(order.order_id, BTC_ADDRESS)


class TestBitcoinConfirmations:
    """Completion happens once, at the confirmation threshold."""

    @pytest.mark.asyncio
    async def test_below_threshold_stays_pending(self, storefront, bitcoin_order, btc_adapter):
        order, _ = await bitcoin_order()
        updated = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=1))
        )

        assert updated.status == OrderStatus.PENDING
        assert updated.payment_status == PaymentStatus.PENDING
        assert updated.payment_intent.status == PaymentIntentStatus.AWAITING_CONFIRMATION
        assert updated.payment_intent.confirmations == 1
        assert updated.payment_intent.transaction_hash == "tx-1"

    @pytest.mark.asyncio
    async def test_threshold_completes_exactly_once(self, storefront, bitcoin_order, btc_adapter):
        order, _ = await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(btc_callback(confirmations=1)))
        completed = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=2))
        )

        assert completed.status == OrderStatus.PROCESSING
        assert completed.payment_status == PaymentStatus.COMPLETED
        assert completed.payment_intent.amount_received == Decimal("0.0177495")

        # repeated and late webhooks are no-ops
        for confirmations in (2, 3, 1):
            again = await storefront.tracker.handle_signal(
                btc_adapter.parse_callback(btc_callback(confirmations=confirmations))
            )
            assert again.version == completed.version

        history = [e.status for e in completed.status_history]
        assert history.count(OrderStatus.PROCESSING) == 1

    @pytest.mark.asyncio
    async def test_duplicate_signal_writes_nothing(self, storefront, bitcoin_order, btc_adapter):
        await bitcoin_order()
        first = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=1))
        )
        second = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=1))
        )
        assert second.version == first.version

    @pytest.mark.asyncio
    async def test_confirmations_never_regress(self, storefront, bitcoin_order, btc_adapter):
        await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(
            btc_callback(confirmations=1)
        ))
        updated = await storefront.tracker.handle_signal(btc_adapter.parse_callback(
            btc_callback(confirmations=0)
        ))
        assert updated.payment_intent.confirmations == 1

    @pytest.mark.asyncio
    async def test_underpayment_does_not_complete(self, storefront, bitcoin_order, btc_adapter):
        await bitcoin_order()
        updated = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=6, value=1000000))
        )
        assert updated.status == OrderStatus.PENDING
        assert updated.payment_intent.status == PaymentIntentStatus.AWAITING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_one_percent_tolerance(self, storefront, bitcoin_order, btc_adapter):
        await bitcoin_order()
        updated = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=2, value=1760000))
        )
        assert updated.status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_status_field_maps_to_confirmations(self, storefront, bitcoin_order, btc_adapter):
        await bitcoin_order()
        signal = btc_adapter.parse_callback(btc_callback(status=2))
        assert signal.confirmations == 2
        updated = await storefront.tracker.handle_signal(signal)
        assert updated.status == OrderStatus.PROCESSING


class TestBitcoinCallbackSecurity:
    def test_wrong_secret(self, btc_adapter):
        with pytest.raises(WebhookVerificationError):
            btc_adapter.parse_callback(btc_callback(confirmations=2, secret="guess"))

    def test_missing_secret(self, btc_adapter):
        params = btc_callback(confirmations=2)
        del params["secret"]
        with pytest.raises(WebhookVerificationError):
            btc_adapter.parse_callback(params)

    def test_missing_txid(self, btc_adapter):
        with pytest.raises(WebhookVerificationError, match="Invalid webhook data"):
            btc_adapter.parse_callback(btc_callback(confirmations=2, txid=""))

    @pytest.mark.asyncio
    async def test_unknown_address_is_acknowledged(self, storefront, btc_adapter):
        signal = btc_adapter.parse_callback(btc_callback(confirmations=2))
        assert await storefront.tracker.handle_signal(signal) is None


class TestExpiry:
    @pytest.mark.asyncio
    async def test_signal_after_deadline_cancels(self, storefront, bitcoin_order, btc_adapter,
                                                  catalog, clock):
        order, _ = await bitcoin_order()
        assert catalog.products["prod-3"].stock_quantity == 2
        clock.advance(hours=24, seconds=1)

        updated = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=6))
        )

        assert updated.status == OrderStatus.CANCELLED
        assert updated.payment_status == PaymentStatus.FAILED
        assert updated.payment_intent.status == PaymentIntentStatus.EXPIRED
        assert updated.refunds == []
        assert catalog.products["prod-3"].stock_quantity == 3

    @pytest.mark.asyncio
    async def test_signal_at_deadline_still_counts(self, storefront, bitcoin_order, btc_adapter, clock):
        await bitcoin_order()
        clock.advance(hours=24)
        updated = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=2))
        )
        assert updated.status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_funds_seen_in_window_survive_deadline(self, storefront, bitcoin_order,
                                                         btc_adapter, catalog, clock):
        order, _ = await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(btc_callback(confirmations=0)))
        clock.advance(hours=30)

        waiting = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=1))
        )
        assert waiting.status == OrderStatus.PENDING
        assert waiting.payment_intent.status == PaymentIntentStatus.AWAITING_CONFIRMATION

        completed = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=2))
        )
        assert completed.status == OrderStatus.PROCESSING
        assert catalog.products["prod-3"].stock_quantity == 2

    @pytest.mark.asyncio
    async def test_poll_after_deadline_expires_unpaid_order(self, storefront, bitcoin_order, http, clock):
        order, _ = await bitcoin_order()
        clock.advance(hours=25)

        status = await storefront.tracker.poll(order.order_id)

        assert status == PaymentIntentStatus.EXPIRED
        assert len(http.calls_to("/searchhistory")) == 1
        assert (await storefront.orders.get_order(order.order_id)).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_initiate_after_deadline(self, storefront, bitcoin_order, customer, clock):
        order, _ = await bitcoin_order()
        clock.advance(hours=25)
        with pytest.raises(PaymentExpired):
            await storefront.orders.initiate_payment(order.order_id, customer)

    @pytest.mark.asyncio
    async def test_initiate_after_deadline_keeps_paid_attempt(self, storefront, bitcoin_order,
                                                              btc_adapter, customer, clock):
        order, first = await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(btc_callback(confirmations=1)))
        clock.advance(hours=25)

        again = await storefront.orders.initiate_payment(order.order_id, customer)
        assert again.deposit_address == first.deposit_address
        assert again.status == PaymentIntentStatus.AWAITING_CONFIRMATION


def tx_detail(confirmations, at, value=1774950):
    return {
        "confirmations": confirmations,
        "time": int(at.timestamp()),
        "out": [{"address": BTC_ADDRESS, "value": value}, {"address": "change", "value": 5000}]
    }


class TestBitcoinPolling:
    @pytest.mark.asyncio
    async def test_poll_uses_transaction_details(self, storefront, bitcoin_order, btc_adapter,
                                                 http, clock):
        order, _ = await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(btc_callback(confirmations=0)))
        http.add("GET", "/tx_detail/tx-1", data=tx_detail(3, clock.now))

        status = await storefront.tracker.poll(order.order_id)

        assert status == PaymentIntentStatus.COMPLETED
        stored = await storefront.orders.get_order(order.order_id)
        assert stored.status == OrderStatus.PROCESSING
        assert stored.payment_intent.confirmations == 3
        assert http.calls_to("/searchhistory") == []

    @pytest.mark.asyncio
    async def test_poll_finds_transaction_in_address_history(self, storefront, bitcoin_order,
                                                             http, clock):
        order, _ = await bitcoin_order()
        http.add("POST", "/searchhistory", data={
            "pending": [{"txid": "tx-9", "value": 1774950, "addr": [BTC_ADDRESS], "status": 0}],
            "history": []
        })
        http.add("GET", "/tx_detail/tx-9", data=tx_detail(0, clock.now))

        status = await storefront.tracker.poll(order.order_id)

        assert status == PaymentIntentStatus.AWAITING_CONFIRMATION
        assert http.calls_to("/searchhistory")[0].json == {"addr": BTC_ADDRESS}
        stored = await storefront.orders.get_order(order.order_id)
        assert stored.payment_intent.transaction_hash == "tx-9"
        assert stored.payment_intent.amount_received == Decimal("0.0177495")

    @pytest.mark.asyncio
    async def test_poll_with_nothing_received(self, storefront, bitcoin_order, http):
        order, _ = await bitcoin_order()
        before = await storefront.orders.get_order(order.order_id)

        assert await storefront.tracker.poll(order.order_id) == PaymentIntentStatus.INITIATED
        assert (await storefront.orders.get_order(order.order_id)).version == before.version
        assert len(http.calls_to("/searchhistory")) == 1

    @pytest.mark.asyncio
    async def test_sweep(self, storefront, bitcoin_order, btc_adapter, http, clock):
        await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(btc_callback(confirmations=1)))
        http.add("GET", "/tx_detail/tx-1", data=tx_detail(2, clock.now))

        assert await storefront.tracker.sweep() == {"completed": 1}
        assert await storefront.tracker.sweep() == {}


class TestBitcoinPollingOnly:
    """No callbacks arrive; cron polling alone has to settle the payment"""

    @pytest.fixture
    def history(self, http):
        http.add("POST", "/searchhistory", data={
            "pending": [],
            "history": [{"txid": "tx-9", "value": 1774950, "addr": [BTC_ADDRESS]}]
        })
        return http

    @pytest.mark.asyncio
    async def test_payment_confirming_after_deadline_completes(self, storefront, bitcoin_order,
                                                               history, catalog, clock):
        order, _ = await bitcoin_order()
        paid_at = clock.advance(hours=1)
        history.add("GET", "/tx_detail/tx-9", data=tx_detail(1, paid_at))

        statuses = []
        for _ in range(5):
            statuses.append(await storefront.tracker.poll(order.order_id))
            clock.advance(hours=1)
        clock.advance(hours=20)
        # still one confirmation after the window closed
        statuses.append(await storefront.tracker.poll(order.order_id))

        history.add("GET", "/tx_detail/tx-9", data=tx_detail(2, paid_at))
        statuses.append(await storefront.tracker.poll(order.order_id))

        assert statuses == [PaymentIntentStatus.AWAITING_CONFIRMATION] * 6 + [
            PaymentIntentStatus.COMPLETED
        ]
        stored = await storefront.orders.get_order(order.order_id)
        assert stored.status == OrderStatus.PROCESSING
        assert stored.payment_status == PaymentStatus.COMPLETED
        assert catalog.products["prod-3"].stock_quantity == 2
        assert len(history.calls_to("/searchhistory")) == 1

    @pytest.mark.asyncio
    async def test_first_poll_after_deadline_finds_in_window_payment(self, storefront, bitcoin_order,
                                                                     history, clock):
        order, _ = await bitcoin_order()
        paid_at = clock.advance(hours=23)
        history.add("GET", "/tx_detail/tx-9", data=tx_detail(2, paid_at))
        clock.advance(hours=3)

        assert await storefront.tracker.poll(order.order_id) == PaymentIntentStatus.COMPLETED
        assert (await storefront.orders.get_order(order.order_id)).status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_payment_sent_after_deadline_expires(self, storefront, bitcoin_order,
                                                       history, catalog, clock):
        order, _ = await bitcoin_order()
        paid_at = clock.advance(hours=24, minutes=10)
        history.add("GET", "/tx_detail/tx-9", data=tx_detail(2, paid_at))

        assert await storefront.tracker.poll(order.order_id) == PaymentIntentStatus.EXPIRED
        stored = await storefront.orders.get_order(order.order_id)
        assert stored.status == OrderStatus.CANCELLED
        assert catalog.products["prod-3"].stock_quantity == 3


def globee_event(**fields):
    body = {"id": "gb-1", "status": "paid", "paid_amount": "5.72784"}
    body.update(fields)
    raw = json.dumps(body).encode()
    return raw, sign_payload(raw, "globee-secret")


class TestMonero:
    @pytest.fixture
    def monero(self, http):
        route_monero(http)
        return http

    @pytest.fixture
    def xmr_adapter(self, payments):
        return payments.adapter_for(PaymentMethod.MONERO)

    async def _order(self, storefront, place_order, customer):
        order = await place_order(payment_method=PaymentMethod.MONERO)
        instructions = await storefront.orders.initiate_payment(order.order_id, customer)
        return order, instructions

    @pytest.mark.asyncio
    async def test_initiate(self, storefront, place_order, customer, monero):
        order, instructions = await self._order(storefront, place_order, customer)

        assert instructions.amount == Decimal("5.727840000000")
        assert instructions.currency == "XMR"
        assert instructions.payment_url == "https://globee.com/payment/gb-1"
        assert instructions.required_confirmations == 10

        request = monero.calls_to("/payment-request", "POST")[0]
        assert request.json["total"] == "5.72784"
        assert request.json["order_id"] == order.order_id
        assert request.headers["Authorization"] == "Bearer globee-key"

    @pytest.mark.asyncio
    async def test_confirmation_threshold(self, storefront, place_order, customer, monero, xmr_adapter):
        await self._order(storefront, place_order, customer)

        partial = await storefront.tracker.handle_signal(
            xmr_adapter.parse_webhook(*globee_event(confirmations=3))
        )
        assert partial.status == OrderStatus.PENDING
        assert partial.payment_intent.status == PaymentIntentStatus.AWAITING_CONFIRMATION

        confirmed = await storefront.tracker.handle_signal(
            xmr_adapter.parse_webhook(*globee_event(confirmations=10))
        )
        assert confirmed.status == OrderStatus.PROCESSING
        assert confirmed.payment_status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_confirmed_status_settles(self, storefront, place_order, customer, monero, xmr_adapter):
        await self._order(storefront, place_order, customer)
        updated = await storefront.tracker.handle_signal(
            xmr_adapter.parse_webhook(*globee_event(status="confirmed"))
        )
        assert updated.status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_underpaid_blocks_completion(self, storefront, place_order, customer, monero, xmr_adapter):
        await self._order(storefront, place_order, customer)
        updated = await storefront.tracker.handle_signal(
            xmr_adapter.parse_webhook(*globee_event(status="underpaid", confirmations=12))
        )
        assert updated.status == OrderStatus.PENDING
        assert updated.payment_intent.status == PaymentIntentStatus.AWAITING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_cancelled_fails_payment(self, storefront, place_order, customer, monero, xmr_adapter):
        await self._order(storefront, place_order, customer)
        updated = await storefront.tracker.handle_signal(
            xmr_adapter.parse_webhook(*globee_event(status="cancelled"))
        )
        assert updated.status == OrderStatus.PENDING
        assert updated.payment_status == PaymentStatus.FAILED
        assert updated.payment_intent.status == PaymentIntentStatus.FAILED

    @pytest.mark.asyncio
    async def test_expired_status_cancels_order(self, storefront, place_order, customer, monero,
                                                xmr_adapter, catalog):
        await self._order(storefront, place_order, customer)
        updated = await storefront.tracker.handle_signal(
            xmr_adapter.parse_webhook(*globee_event(status="expired"))
        )
        assert updated.status == OrderStatus.CANCELLED
        assert catalog.products["prod-1"].stock_quantity == 5

    def test_signature_with_prefix(self, xmr_adapter):
        raw, signature = globee_event(confirmations=10)
        signal = xmr_adapter.parse_webhook(raw, f"sha256={signature}")
        assert signal.confirmations == 10
        assert signal.amount_received == Decimal("5.72784")

    def test_bad_signature(self, xmr_adapter):
        raw, _ = globee_event(confirmations=10)
        with pytest.raises(WebhookVerificationError):
            xmr_adapter.parse_webhook(raw, sign_payload(raw, "wrong-secret"))
        with pytest.raises(WebhookVerificationError):
            xmr_adapter.parse_webhook(raw, None)

    def test_tampered_body(self, xmr_adapter):
        raw, signature = globee_event(confirmations=3)
        tampered = raw.replace(b'"confirmations": 3', b'"confirmations": 30')
        with pytest.raises(WebhookVerificationError):
            xmr_adapter.parse_webhook(tampered, signature)

    @pytest.mark.asyncio
    async def test_poll(self, storefront, place_order, customer, monero):
        order, _ = await self._order(storefront, place_order, customer)
        monero.add("GET", "/payment-request/gb-1", data={
            "id": "gb-1", "status": "paid", "confirmations": 11, "paid_amount": "5.72784",
            "transaction_hash": "xmr-tx"
        })
        assert await storefront.tracker.poll(order.order_id) == PaymentIntentStatus.COMPLETED


class TestCryptoCancellation:
    @pytest.mark.asyncio
    async def test_late_signal_after_cancel_is_ignored(self, storefront, bitcoin_order, btc_adapter,
                                                      customer):
        order, _ = await bitcoin_order()
        cancelled = await storefront.orders.cancel_order(order.order_id, customer, "No longer needed")
        assert cancelled.payment_intent.status == PaymentIntentStatus.FAILED

        late = await storefront.tracker.handle_signal(
            btc_adapter.parse_callback(btc_callback(confirmations=2))
        )
        assert late.status == OrderStatus.CANCELLED
        assert late.version == cancelled.version

    @pytest.mark.asyncio
    async def test_paid_crypto_order_gets_manual_refund(self, storefront, bitcoin_order, btc_adapter,
                                                        admin):
        order, _ = await bitcoin_order()
        await storefront.tracker.handle_signal(btc_adapter.parse_callback(btc_callback(confirmations=2)))

        cancelled = await storefront.orders.cancel_order(order.order_id, admin, "Out of stock")

        assert cancelled.payment_status == PaymentStatus.REFUNDED
        refund = cancelled.refunds[0]
        assert refund.status == "manual"
        assert refund.amount == Decimal("709.98")
        assert refund.refund_id == f"cancel-{order.order_id}"
        assert refund.issued_by == admin.id
