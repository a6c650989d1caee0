"""Test doubles for processor HTTP traffic and time"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from storefront.models.order import (
    Address, Order, OrderItem, OrderStatus, ShippingMethod, StatusHistoryEntry
)
from storefront.models.payment import PaymentMethod, PaymentStatus
from storefront.services.gateways.http import HttpResponse

@dataclass
class Call:
    verb: str
    url: str
    headers: Optional[Dict[str, str]]
    json: Any
    data: Any
    params: Optional[Dict[str, Any]]

class FakeHttp:
    """
    Scripted stand-in for GatewayHttpClient.

    Routes match on verb and URL suffix. Each route holds a queue of replies
    (an HttpResponse or an exception to raise); the last reply repeats.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[Call] = []

    def add(self, verb: str, path: str, status: int = 200, data: Any = None,
            error: Optional[Exception] = None):
        """Replace the replies for a route with a single one"""
        self.routes[(verb, path)] = [error or HttpResponse(status, data)]

    def queue(self, verb: str, path: str, *replies: Any):
        """Replies are (status, data) tuples or exceptions, served in order"""
        self.routes[(verb, path)] = [
            reply if isinstance(reply, Exception) else HttpResponse(*reply)
            for reply in replies
        ]

    async def request(self, verb, url, *, headers=None, json=None, data=None,
                      params=None, reference=None):
        self.calls.append(Call(verb, url, headers, json, data, params))
        matches = [
            key for key in self.routes
            if key[0] == verb and url.endswith(key[1])
        ]
        if not matches:
            raise AssertionError(f"Unexpected request {verb} {url}")

        # longest suffix wins so /orders/X/capture beats /orders/X
        replies = self.routes[max(matches, key=lambda key: len(key[1]))]
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def calls_to(self, path: str, verb: Optional[str] = None) -> List[Call]:
        return [
            c for c in self.calls
            if c.url.endswith(path) and (verb is None or c.verb == verb)
        ]

class FakeClock:
    """Callable clock the tests move by hand"""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

def make_address() -> Address:
    return Address(
        full_name="Jane Buyer",
        address_line1="1 High Street",
        city="London",
        state_province="Greater London",
        postal_code="SW1A 1AA",
        country="GB",
        phone_number="+441234567890"
    )

def make_order(now, status: OrderStatus = OrderStatus.PENDING,
               payment_status: PaymentStatus = PaymentStatus.PENDING,
               **changes) -> Order:
    """Bare order snapshot for pure transition tests"""
    item = OrderItem(
        product_id="prod-1", name="Custom Phone", unit_price=Decimal("699.99"),
        quantity=1, line_total=Decimal("699.99")
    )
    fields = dict(
        order_id="order-1",
        order_number="ORD-12345678-001",
        user_id="user-1",
        items=[item],
        subtotal=Decimal("699.99"),
        shipping_cost=Decimal("15.99"),
        tax=Decimal("0.00"),
        total_amount=Decimal("715.98"),
        shipping_address=make_address(),
        billing_address=make_address(),
        shipping_method=ShippingMethod(id="standard", name="Standard", cost=Decimal("15.99")),
        status=status,
        payment_method=PaymentMethod.CARD_REDIRECT,
        payment_status=payment_status,
        status_history=[StatusHistoryEntry(status=status, timestamp=now)],
        created_at=now,
        updated_at=now
    )
    fields.update(changes)
    return Order(**fields)

# processor replies

PAYPAL_REFERENCE = "PP-1"

def paypal_created(reference: str = PAYPAL_REFERENCE) -> Tuple[int, Dict[str, Any]]:
    return 201, {
        "id": reference,
        "status": "CREATED",
        "links": [
            {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{reference}"},
            {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={reference}"}
        ]
    }

def paypal_captured(reference: str = PAYPAL_REFERENCE, amount: str = "715.98") -> Dict[str, Any]:
    return {
        "id": reference,
        "status": "COMPLETED",
        "payer": {"email_address": "buyer@example.com"},
        "purchase_units": [{
            "reference_id": "order",
            "payments": {"captures": [{
                "id": "CAP-1",
                "status": "COMPLETED",
                "amount": {"currency_code": "GBP", "value": amount}
            }]}
        }]
    }

def route_paypal(http: FakeHttp, reference: str = PAYPAL_REFERENCE):
    http.add("POST", "/v1/oauth2/token", data={"access_token": "token-1", "expires_in": 32400})
    http.queue("POST", "/v2/checkout/orders", paypal_created(reference))
    http.add("POST", f"/v2/checkout/orders/{reference}/capture", 201, paypal_captured(reference))
    http.add("POST", "/v2/payments/captures/CAP-1/refund", 201, {"id": "RF-1", "status": "COMPLETED"})

def route_rates(http: FakeHttp, btc_gbp=40000, xmr_gbp=125):
    http.add("GET", "/simple/price", data={
        "bitcoin": {"gbp": btc_gbp},
        "monero": {"gbp": xmr_gbp}
    })

BTC_ADDRESS = "bc1qtestaddress0000000000000000000000000"

def route_bitcoin(http: FakeHttp, address: str = BTC_ADDRESS):
    route_rates(http)
    http.add("POST", "/new_address", data={"address": address})
    http.add("POST", "/searchhistory", data={"pending": [], "history": []})

def route_monero(http: FakeHttp, reference: str = "gb-1"):
    route_rates(http)
    http.add("POST", "/payment-request", data={
        "id": reference,
        "payment_address": "44AFFq5kSiGBoZ4NMDwYtN18obc8AemS33DBLWs3H7otXft",
        "payment_url": f"https://globee.com/payment/{reference}",
        "total": "5.72784",
        "currency": "XMR",
        "status": "unpaid"
    })
