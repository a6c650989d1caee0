from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from .base import SnapshotModel

class ReturnStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUND_ISSUED = "refund_issued"

    @property
    def is_terminal(self) -> bool:
        return self in (ReturnStatus.REJECTED, ReturnStatus.REFUND_ISSUED)

class ReturnReason(str, Enum):
    DAMAGED_RECEIVED = "damaged_received"
    WRONG_ITEM_SENT = "wrong_item_sent"
    NOT_AS_DESCRIBED = "not_as_described"
    CHANGED_MIND = "changed_mind"
    WRONG_SIZE = "wrong_size"
    QUALITY_ISSUES = "quality_issues"
    DEFECTIVE_ITEM = "defective_item"
    OTHER = "other"

class ReturnDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class ReturnItemRequest(BaseModel):
    """Item the customer asks to send back"""
    product_id: str
    quantity: int = Field(ge=1)
    reason: ReturnReason
    reason_description: Optional[str] = Field(default=None, max_length=500)

class ReturnItem(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    reason: ReturnReason
    reason_description: Optional[str] = None

    model_config = ConfigDict(frozen=True)

class ReturnRequest(SnapshotModel):
    """Customer request to return delivered items for a refund"""
    return_id: str
    order_id: str
    order_number: str
    user_id: str
    request_number: str
    request_date: datetime
    items: List[ReturnItem]
    total_refund_amount: Decimal
    status: ReturnStatus = ReturnStatus.REQUESTED
    admin_notes: Optional[str] = None
    refund_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def formatted_request_number(self) -> str:
        return f"RET-{self.request_number}"

    @property
    def total_items_count(self) -> int:
        return sum(item.quantity for item in self.items)
