# =============================================================================
# File: tests/conftest.py
# Description: Fixtures wiring the storefront core to in-memory storage,
#              scripted processor replies and a hand-driven clock
# =============================================================================

from datetime import datetime
from decimal import Decimal
import pytest
import pytest_asyncio
import pytz

from storefront.app import Storefront
from storefront.config import Config
from storefront.database.memory import InMemoryCatalog
from storefront.models.order import CartItem, ShippingMethod
from storefront.models.payment import PaymentMethod
from storefront.models.product import ProductSnapshot
from storefront.models.user import Principal, Role
from storefront.services.gateways import (
    BitcoinGateway, ExchangeRateService, MoneroGateway, PayPalGateway
)
from storefront.services.payment_service import PaymentService
from tests.fakes import FakeClock, FakeHttp, make_address


# =============================================================================
# CONFIGURATION
# =============================================================================

@pytest.fixture(autouse=True)
def gateway_config(monkeypatch):
    """Processor credentials and store settings used by every test."""
    monkeypatch.setattr(Config, "CURRENCY", "GBP")
    monkeypatch.setattr(Config, "TAX_RATE", Decimal("0"))
    monkeypatch.setattr(Config, "PAYPAL_MODE", "sandbox")
    monkeypatch.setattr(Config, "PAYPAL_CLIENT_ID", "client-id")
    monkeypatch.setattr(Config, "PAYPAL_CLIENT_SECRET", "client-secret")
    monkeypatch.setattr(Config, "PAYPAL_WEBHOOK_ID", "WH-1")
    monkeypatch.setattr(Config, "BLOCKONOMICS_API_KEY", "blockonomics-key")
    monkeypatch.setattr(Config, "BLOCKONOMICS_CALLBACK_SECRET", "callback-secret")
    monkeypatch.setattr(Config, "GLOBEE_API_KEY", "globee-key")
    monkeypatch.setattr(Config, "GLOBEE_SECRET", "globee-secret")
    monkeypatch.setattr(Config, "BITCOIN_REQUIRED_CONFIRMATIONS", 2)
    monkeypatch.setattr(Config, "MONERO_REQUIRED_CONFIRMATIONS", 10)
    monkeypatch.setattr(Config, "RETURN_WINDOW_DAYS", 30)
    monkeypatch.setattr(Config, "MAX_COMMIT_ATTEMPTS", 3)


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=pytz.utc))


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def catalog():
    return InMemoryCatalog(
        products=[
            ProductSnapshot(product_id="prod-1", name="Custom Phone",
                            price=Decimal("699.99"), stock_quantity=5),
            ProductSnapshot(product_id="prod-2", name="Phone Case",
                            price=Decimal("10.00"), stock_quantity=10),
            ProductSnapshot(product_id="prod-3", name="Privacy Phone",
                            price=Decimal("693.99"), stock_quantity=3),
            ProductSnapshot(product_id="prod-retired", name="Old Phone",
                            price=Decimal("99.00"), stock_quantity=3, is_active=False),
        ],
        shipping_methods=[
            ShippingMethod(id="standard", name="Standard Shipping", cost=Decimal("15.99"),
                           estimated_delivery="3-5 business days"),
            ShippingMethod(id="retired", name="Courier", cost=Decimal("5.00"), is_active=False),
        ]
    )


@pytest.fixture
def rates(http, clock):
    return ExchangeRateService(http=http, fiat="GBP", clock=clock)


@pytest.fixture
def payments(http, rates, clock):
    return PaymentService([
        PayPalGateway(http=http, clock=clock),
        BitcoinGateway(http=http, rates=rates, clock=clock),
        MoneroGateway(http=http, rates=rates, clock=clock),
    ], clock=clock)


@pytest_asyncio.fixture
async def storefront(payments, catalog, clock):
    app = Storefront.in_memory(payments, catalog=catalog, clock=clock)
    await app.start()
    yield app
    await app.stop()


# =============================================================================
# PRINCIPALS AND CHECKOUT
# =============================================================================

@pytest.fixture
def customer():
    return Principal(id="user-1")


@pytest.fixture
def other_customer():
    return Principal(id="user-2")


@pytest.fixture
def admin():
    return Principal(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def address():
    return make_address()


@pytest.fixture
def place_order(storefront, customer, address):
    """Create an order for `customer`; defaults to one Custom Phone by PayPal."""
    async def _place(payment_method=PaymentMethod.CARD_REDIRECT, cart=None):
        return await storefront.orders.create_order(
            customer,
            cart or [CartItem(product_id="prod-1", quantity=1)],
            address,
            address,
            "standard",
            payment_method,
            customer_email="buyer@example.com"
        )
    return _place
