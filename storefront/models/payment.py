from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

class PaymentMethod(str, Enum):
    CARD_REDIRECT = "card_redirect"
    BITCOIN = "bitcoin"
    MONERO = "monero"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

class PaymentIntentStatus(str, Enum):
    INITIATED = "initiated"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PaymentIntentStatus.COMPLETED,
            PaymentIntentStatus.EXPIRED,
            PaymentIntentStatus.FAILED
        )

class SignalSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"

class PaymentIntent(BaseModel):
    """One payment attempt for an order"""
    order_id: str
    method: PaymentMethod
    external_reference: str
    status: PaymentIntentStatus = PaymentIntentStatus.INITIATED

    # amount the buyer must send, in `currency`
    expected_amount: Decimal
    currency: str
    fiat_amount: Decimal
    exchange_rate: Optional[Decimal] = None
    exchange_rate_timestamp: Optional[datetime] = None

    expiration_time: datetime
    required_confirmations: int = 0
    confirmations: int = 0
    amount_received: Optional[Decimal] = None
    transaction_hash: Optional[str] = None
    capture_id: Optional[str] = None

    # presentation data
    redirect_url: Optional[str] = None
    deposit_address: Optional[str] = None
    qr_payload: Optional[str] = None
    payment_url: Optional[str] = None

    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiration_time

class PaymentSignal(BaseModel):
    """External observation about a payment: webhook push or poll result"""
    external_reference: str
    confirmations: Optional[int] = None
    status_code: Optional[str] = None
    amount_received: Optional[Decimal] = None
    transaction_hash: Optional[str] = None
    # when the processor first saw the funds, if it says
    seen_at: Optional[datetime] = None
    source: SignalSource = SignalSource.WEBHOOK

class PaymentResult(BaseModel):
    """Outcome of a synchronous capture"""
    external_reference: str
    status: PaymentIntentStatus
    capture_id: Optional[str] = None
    amount: Optional[Decimal] = None
    payer_email: Optional[str] = None
    already_captured: bool = False

class RefundResult(BaseModel):
    """Refund instruction accepted by a gateway"""
    refund_id: str
    method: PaymentMethod
    amount: Decimal
    # "completed", "pending" or "manual" (crypto refunds are sent by an operator)
    status: str
    instructions: Optional[str] = None

class RefundRecord(BaseModel):
    """Refund entry kept on the order"""
    refund_id: str
    amount: Decimal
    reason: str
    status: str
    issued_at: datetime
    issued_by: Optional[str] = None
    return_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

class ExchangeRate(BaseModel):
    """Snapshot of a crypto/fiat rate"""
    currency: str
    fiat: str
    # units of crypto per one unit of fiat
    crypto_per_fiat: Decimal
    fetched_at: datetime
    stale: bool = False

class PaymentInstructions(BaseModel):
    """What the buyer is shown after initiating a payment"""
    order_id: str
    order_number: str
    method: PaymentMethod
    status: PaymentIntentStatus
    amount: Decimal
    currency: str
    expiration_time: datetime
    required_confirmations: int = 0
    redirect_url: Optional[str] = None
    deposit_address: Optional[str] = None
    qr_payload: Optional[str] = None
    payment_url: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
