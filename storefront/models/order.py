from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import List, Optional
from .base import SnapshotModel
from .payment import PaymentIntent, PaymentMethod, PaymentStatus, RefundRecord

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"

class CartItem(BaseModel):
    """Line in the buyer's cart at checkout"""
    product_id: str
    quantity: int

class OrderItem(BaseModel):
    """Individual item in an order, priced at checkout time"""
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int = Field(ge=1)
    line_total: Decimal

    model_config = ConfigDict(frozen=True)

class Address(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state_province: str
    postal_code: str
    country: str
    phone_number: Optional[str] = None

    model_config = ConfigDict(frozen=True)

class ShippingMethod(BaseModel):
    id: str
    name: str
    cost: Decimal
    estimated_delivery: Optional[str] = None
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

class TrackingInfo(BaseModel):
    tracking_number: str
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None

class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None

    model_config = ConfigDict(frozen=True)

class Order(SnapshotModel):
    """Order placed at checkout; every change yields a new snapshot"""
    order_id: str
    order_number: str
    user_id: str
    customer_email: Optional[str] = None

    items: List[OrderItem]
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total_amount: Decimal

    shipping_address: Address
    billing_address: Address
    shipping_method: ShippingMethod

    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent: Optional[PaymentIntent] = None
    refunds: List[RefundRecord] = Field(default_factory=list)

    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    delivery_date: Optional[datetime] = None
    has_return_request: bool = False
    cancellation_reason: Optional[str] = None

    version: int = 1

    @property
    def total_refunded(self) -> Decimal:
        return sum((r.amount for r in self.refunds), Decimal("0"))

    @property
    def refundable_amount(self) -> Decimal:
        return max(Decimal("0"), self.total_amount - self.total_refunded)

    @property
    def payment_reference(self) -> Optional[str]:
        return self.payment_intent.external_reference if self.payment_intent else None

    @property
    def is_completed(self) -> bool:
        return self.status in [OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED]
