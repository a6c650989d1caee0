import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from ..config import Config
from ..errors import (
    ConcurrentModification, InvalidTransition, PermissionDenied, ReturnNotEligible,
    ReturnNotFound
)
from ..models.order import Order, OrderStatus
from ..models.return_request import (
    ReturnDecision, ReturnItem, ReturnItemRequest, ReturnRequest, ReturnStatus
)
from ..models.user import Principal
from ..utils.formatters import format_datetime, format_price, utcnow
from .state_machine import OrderStateMachine, add_refund, advance

class ReturnService:
    """Customer return requests and their resolution by an administrator"""

    def __init__(self, machine: OrderStateMachine, clock: Callable = utcnow):
        self.machine = machine
        self.repository = machine.repository
        self.payments = machine.payments
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def check_eligibility(self, order: Order, now: datetime):
        """Raise ReturnNotEligible unless the order can take a return request"""
        if order.status != OrderStatus.DELIVERED or order.delivery_date is None:
            raise ReturnNotEligible(
                "Only delivered orders can be returned",
                {"order_id": order.order_id, "status": order.status.value}
            )
        deadline = order.delivery_date + timedelta(days=Config.RETURN_WINDOW_DAYS)
        if now > deadline:
            raise ReturnNotEligible(
                f"The return window closed on {format_datetime(deadline)}",
                {"order_id": order.order_id}
            )
        if order.has_return_request:
            raise ReturnNotEligible(
                "A return has already been requested for this order",
                {"order_id": order.order_id}
            )

    def _return_items(self, order: Order, requested: List[ReturnItemRequest]) -> List[ReturnItem]:
        if not requested:
            raise ReturnNotEligible("No items selected for return", {"order_id": order.order_id})

        ordered = {item.product_id: item for item in order.items}
        totals: Dict[str, int] = {}
        for line in requested:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity

        for product_id, quantity in totals.items():
            item = ordered.get(product_id)
            if item is None:
                raise ReturnNotEligible(
                    "Item was not part of this order", {"product_id": product_id}
                )
            if quantity > item.quantity:
                raise ReturnNotEligible(
                    f"Cannot return more than {item.quantity} of {item.name}",
                    {"product_id": product_id}
                )

        return [
            ReturnItem(
                product_id=line.product_id,
                name=ordered[line.product_id].name,
                unit_price=ordered[line.product_id].unit_price,
                quantity=line.quantity,
                reason=line.reason,
                reason_description=line.reason_description
            )
            for line in requested
        ]

    async def _request_number(self, now: datetime) -> str:
        """YYYYMMDD followed by the day's sequence, e.g. 20260116003"""
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        count = await self.repository.count_returns_between(start, start + timedelta(days=1))
        return f"{now:%Y%m%d}{count + 1:03d}"

    async def request_return(self, order_id: str, principal: Principal,
                             items: List[ReturnItemRequest]) -> ReturnRequest:
        """Open a return request for a delivered order inside the return window"""
        order = await self.machine.load(order_id)
        if not principal.owns(order.user_id):
            raise PermissionDenied("You can only return your own orders", {"order_id": order_id})

        async def step(order: Order) -> ReturnRequest:
            now = self.clock()
            self.check_eligibility(order, now)
            return_items = self._return_items(order, items)
            total = sum((i.unit_price * i.quantity for i in return_items), Decimal("0"))

            return_request = ReturnRequest(
                return_id=str(uuid.uuid4()),
                order_id=order.order_id,
                order_number=order.order_number,
                user_id=order.user_id,
                request_number=await self._request_number(now),
                request_date=now,
                items=return_items,
                total_refund_amount=min(total, order.refundable_amount),
                created_at=now,
                updated_at=now
            )
            updated = order.touched(now, has_return_request=True)
            await self.machine.commit(order, updated, return_request=return_request)
            return return_request

        return_request = await self.machine.with_retry(order_id, step)
        self.logger.info(
            f"Return {return_request.formatted_request_number} requested for order "
            f"{return_request.order_number}: {format_price(return_request.total_refund_amount)}"
        )
        return return_request

    async def resolve_return(self, return_id: str, decision: ReturnDecision,
                             actor: Principal, notes: Optional[str] = None) -> ReturnRequest:
        """
        Approve or reject a return request.

        Approval is recorded first, then the refund is sent to the original
        gateway, then the request and the order are settled together. When the
        refund fails the request stays approved and approving it again retries
        the refund under the same idempotency key.
        """
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can resolve returns", {"return_id": return_id})

        return_request = await self._load(return_id)
        decision = ReturnDecision(decision)
        if return_request.status.is_terminal:
            raise InvalidTransition(return_request.status.value, decision.value,
                                    "return request is already resolved")

        if decision == ReturnDecision.REJECT:
            return await self._reject(return_request, actor, notes)

        if return_request.status == ReturnStatus.REQUESTED:
            return_request = await self._approve(return_request, actor, notes)
        return await self._issue_refund(return_request, actor)

    async def _load(self, return_id: str) -> ReturnRequest:
        return_request = await self.repository.get_return(return_id)
        if return_request is None:
            raise ReturnNotFound(return_id)
        return return_request

    async def _reject(self, return_request: ReturnRequest, actor: Principal,
                      notes: Optional[str]) -> ReturnRequest:
        if return_request.status != ReturnStatus.REQUESTED:
            raise InvalidTransition(return_request.status.value, ReturnStatus.REJECTED.value,
                                    "an approved return can no longer be rejected")
        rejected = None

        async def step(order: Order) -> Order:
            nonlocal rejected
            now = self.clock()
            rejected = return_request.touched(
                now, status=ReturnStatus.REJECTED, admin_notes=notes,
                resolved_at=now, resolved_by=actor.id
            )
            updated = order.touched(now, has_return_request=False)
            return await self.machine.commit(
                order, updated, return_request=rejected,
                expected_return_status=ReturnStatus.REQUESTED
            )

        await self.machine.with_retry(return_request.order_id, step)
        self.logger.info(f"Return {return_request.formatted_request_number} rejected by {actor.id}")
        return rejected

    async def _approve(self, return_request: ReturnRequest, actor: Principal,
                       notes: Optional[str]) -> ReturnRequest:
        approved = None

        async def step(order: Order) -> Order:
            nonlocal approved
            now = self.clock()
            approved = return_request.touched(
                now, status=ReturnStatus.APPROVED, admin_notes=notes, resolved_by=actor.id
            )
            return await self.machine.commit(
                order, order.touched(now), return_request=approved,
                expected_return_status=ReturnStatus.REQUESTED
            )

        await self.machine.with_retry(return_request.order_id, step)
        self.logger.info(f"Return {return_request.formatted_request_number} approved by {actor.id}")
        return approved

    async def _issue_refund(self, return_request: ReturnRequest,
                            actor: Principal) -> ReturnRequest:
        order = await self.machine.load(return_request.order_id)
        refund = next(
            (r for r in order.refunds if r.return_id == return_request.return_id), None
        )
        if refund is None:
            refund = await self.payments.refund(
                order, return_request.total_refund_amount,
                f"Return {return_request.formatted_request_number}",
                idempotency_key=f"return-{return_request.return_id}",
                issued_by=actor.id, return_id=return_request.return_id
            )
        settled = None

        async def step(order: Order) -> Order:
            nonlocal settled
            now = self.clock()
            updated = add_refund(order, refund, now).touched(now, has_return_request=False)
            updated = advance(
                updated, OrderStatus.RETURNED, now,
                note=f"Return {return_request.formatted_request_number}: "
                     f"{format_price(refund.amount)} refunded"
            )

            settled = return_request.touched(
                now, status=ReturnStatus.REFUND_ISSUED, refund_id=refund.refund_id,
                resolved_at=now, resolved_by=actor.id
            )
            return await self.machine.commit(
                order, updated, return_request=settled,
                expected_return_status=ReturnStatus.APPROVED
            )

        try:
            await self.machine.with_retry(return_request.order_id, step)
        except (InvalidTransition, ConcurrentModification):
            self.logger.error(
                f"Refund {refund.refund_id} issued for return "
                f"{return_request.formatted_request_number} but the order could not be settled"
            )
            raise

        self.logger.info(
            f"Return {return_request.formatted_request_number} refunded: {format_price(refund.amount)}"
        )
        return settled

    async def get_return(self, return_id: str, principal: Principal) -> ReturnRequest:
        return_request = await self._load(return_id)
        if not (principal.is_admin or principal.owns(return_request.user_id)):
            raise PermissionDenied("You do not have access to this return", {"return_id": return_id})
        return return_request

    async def get_user_returns(self, user_id: str, limit: int = 10) -> List[ReturnRequest]:
        return await self.repository.list_user_returns(user_id, limit)

    async def get_order_returns(self, order_id: str) -> List[ReturnRequest]:
        return await self.repository.list_order_returns(order_id)
