import logging
import random
import uuid
from collections import OrderedDict
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from ..config import Config
from ..errors import (
    CaptureError, OrderValidationError, PaymentExpired, PermissionDenied
)
from ..models.order import (
    Address, CartItem, Order, OrderItem, OrderStatus, StatusHistoryEntry, TrackingInfo
)
from ..models.payment import (
    PaymentInstructions, PaymentIntent, PaymentIntentStatus, PaymentMethod, PaymentStatus
)
from ..models.user import Principal
from ..utils.formatters import format_price, quantize_money, tracking_url_for, utcnow
from .state_machine import OrderStateMachine, add_refund, apply_intent, with_payment

def generate_order_number(now) -> str:
    """ORD-<last 8 digits of epoch ms>-<3 random digits>"""
    millis = str(int(now.timestamp() * 1000))[-8:]
    return f"ORD-{millis}-{random.randint(0, 999):03d}"

class OrderService:
    """Checkout, payment and fulfillment operations on orders"""

    def __init__(self, repository, catalog, payments, clock: Callable = utcnow):
        self.repository = repository
        self.catalog = catalog
        self.payments = payments
        self.clock = clock
        self.machine = OrderStateMachine(repository, payments, catalog, clock)
        self.logger = logging.getLogger(__name__)

    async def create_order(self, principal: Principal, cart: List[CartItem],
                           shipping_address: Address, billing_address: Address,
                           shipping_method_id: str, payment_method: PaymentMethod,
                           customer_email: Optional[str] = None) -> Order:
        """
        Create a pending order from the cart.

        Prices are copied from the catalog so later price changes do not touch
        the order. Stock is reserved before the order is stored and given back
        if storing fails.
        """
        quantities = self._aggregate_cart(cart)
        if payment_method not in self.payments.adapters:
            raise OrderValidationError(
                "Payment method is not available", {"payment_method": PaymentMethod(payment_method).value}
            )

        items = []
        for product_id, quantity in quantities.items():
            product = await self.catalog.get_product(product_id)
            if product is None or not product.is_active:
                raise OrderValidationError(
                    "Product is not available", {"product_id": product_id}
                )
            if product.stock_quantity < quantity:
                raise OrderValidationError(
                    f"Insufficient stock for product {product.name}", {"product_id": product_id}
                )
            unit_price = quantize_money(product.price)
            items.append(OrderItem(
                product_id=product.product_id,
                name=product.name,
                unit_price=unit_price,
                quantity=quantity,
                line_total=unit_price * quantity
            ))

        shipping_method = await self.catalog.get_shipping_method(shipping_method_id)
        if shipping_method is None or not shipping_method.is_active:
            raise OrderValidationError(
                "Shipping method is not available", {"shipping_method_id": shipping_method_id}
            )

        subtotal = sum((item.line_total for item in items), Decimal("0"))
        shipping_cost = quantize_money(shipping_method.cost)
        tax = quantize_money(subtotal * Config.TAX_RATE)
        total_amount = subtotal + shipping_cost + tax

        now = self.clock()
        order = Order(
            order_id=str(uuid.uuid4()),
            order_number=generate_order_number(now),
            user_id=principal.id,
            customer_email=customer_email,
            items=items,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            tax=tax,
            total_amount=total_amount,
            shipping_address=shipping_address,
            billing_address=billing_address,
            shipping_method=shipping_method,
            payment_method=payment_method,
            status_history=[StatusHistoryEntry(
                status=OrderStatus.PENDING, timestamp=now, note="Order created"
            )],
            created_at=now,
            updated_at=now
        )

        await self.catalog.reserve_stock(order.order_id, order.items)
        try:
            await self.repository.insert_order(order)
        except Exception:
            await self.catalog.release_stock(order.order_id, order.items)
            raise

        self.logger.info(
            f"Order {order.order_number} created for user {principal.id}: "
            f"{format_price(total_amount)} via {order.payment_method.value}"
        )
        return order

    def _aggregate_cart(self, cart: List[CartItem]) -> Dict[str, int]:
        if not cart:
            raise OrderValidationError("Cart is empty")

        quantities: Dict[str, int] = OrderedDict()
        for line in cart:
            if line.quantity < 1 or line.quantity > Config.MAX_ITEM_QUANTITY:
                raise OrderValidationError(
                    f"Quantity must be between 1 and {Config.MAX_ITEM_QUANTITY}",
                    {"product_id": line.product_id}
                )
            quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

        for product_id, quantity in quantities.items():
            if quantity > Config.MAX_ITEM_QUANTITY:
                raise OrderValidationError(
                    f"Quantity must be between 1 and {Config.MAX_ITEM_QUANTITY}",
                    {"product_id": product_id}
                )
        return quantities

    async def initiate_payment(self, order_id: str, principal: Principal) -> PaymentInstructions:
        """
        Open a payment attempt with the order's processor.

        An open, unexpired attempt is handed back as is; after a failed attempt
        a new one is created and payment goes back to pending.
        """
        order = await self.get_order(order_id, principal)
        adapter = self.payments.adapter_for(order.payment_method)
        intent: Optional[PaymentIntent] = None

        async def step(order: Order) -> Order:
            nonlocal intent
            if order.status != OrderStatus.PENDING or order.payment_status == PaymentStatus.COMPLETED:
                raise OrderValidationError(
                    "Order is not awaiting payment",
                    {"order_id": order.order_id, "status": order.status.value}
                )

            now = self.clock()
            current = order.payment_intent
            if current is not None and not current.status.is_terminal:
                if not adapter.is_lapsed(current, now):
                    return order
                await self._expire(order, current, now)

            if intent is None:
                # processor call happens outside any commit
                intent = await adapter.initiate(order)

            updated = order
            if order.payment_status == PaymentStatus.FAILED:
                updated = with_payment(updated, PaymentStatus.PENDING, now)
            updated = updated.touched(now, payment_intent=intent)
            return await self.machine.commit(order, updated)

        order = await self.machine.with_retry(order_id, step)
        self.logger.info(
            f"Payment initiated for order {order.order_number} "
            f"({order.payment_intent.external_reference})"
        )
        return self._instructions(order)

    async def capture_payment(self, order_id: str, external_reference: str) -> Order:
        """
        Finalize a redirect payment after the buyer approved it.

        Capturing an already completed payment returns the order unchanged. A
        declined capture leaves the order pending with payment failed; an
        unreachable processor leaves it untouched.
        """
        async def step(order: Order) -> Order:
            intent = order.payment_intent
            if intent is None or intent.external_reference != external_reference:
                raise CaptureError(
                    "Payment reference does not match this order",
                    method=order.payment_method.value, reference=external_reference
                )
            if intent.status == PaymentIntentStatus.COMPLETED:
                return order
            if intent.status.is_terminal:
                raise CaptureError(
                    f"Payment attempt is {intent.status.value}; start a new payment",
                    method=intent.method.value, reference=external_reference
                )

            now = self.clock()
            adapter = self.payments.adapter_for(intent.method)
            if adapter.is_lapsed(intent, now):
                await self._expire(order, intent, now)

            try:
                result = await adapter.capture(intent)
            except CaptureError:
                if not adapter.supports_capture:
                    raise
                failed = intent.model_copy(update={
                    "status": PaymentIntentStatus.FAILED, "updated_at": now
                })
                await self.machine.commit(order, apply_intent(order, failed, now))
                self.logger.warning(f"Capture failed for order {order.order_number}")
                raise

            captured = intent.model_copy(update={
                "status": result.status,
                "capture_id": result.capture_id or intent.capture_id,
                "amount_received": result.amount,
                "updated_at": now
            })
            committed = await self.machine.commit(order, apply_intent(order, captured, now))
            if result.already_captured:
                self.logger.info(f"Order {order.order_number} was already captured at the processor")
            return committed

        order = await self.machine.with_retry(order_id, step)
        self.logger.info(
            f"Capture for order {order.order_number}: payment {order.payment_status.value}"
        )
        return order

    async def _expire(self, order: Order, intent: PaymentIntent, now):
        """Commit an expired attempt, cancel the order and raise PaymentExpired"""
        expired = intent.model_copy(update={
            "status": PaymentIntentStatus.EXPIRED, "updated_at": now
        })
        committed = await self.machine.commit(order, apply_intent(order, expired, now))
        self.logger.info(f"Payment for order {order.order_number} expired; order cancelled")
        await self.machine.release_inventory(committed)
        raise PaymentExpired(order.order_id, intent.external_reference)

    async def cancel_order(self, order_id: str, actor: Principal, reason: str) -> Order:
        order = await self.get_order(order_id, actor)
        return await self.machine.cancel(order.order_id, actor.id, reason)

    async def advance_fulfillment(self, order_id: str, new_status: OrderStatus,
                                  actor: Principal, tracking: Optional[TrackingInfo] = None,
                                  note: Optional[str] = None) -> Order:
        """
        Admin status update along the fulfillment path.

        Shipping needs a tracking number and a carrier; without an explicit
        tracking URL one is built from the carrier's tracking page.
        """
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can update order status",
                                   {"order_id": order_id})

        new_status = OrderStatus(new_status)
        if new_status == OrderStatus.CANCELLED:
            return await self.machine.cancel(order_id, actor.id, note or "Cancelled by administrator")

        changes = {}
        if tracking is not None:
            tracking_number = tracking.tracking_number.strip()
            carrier = tracking.carrier.strip() if tracking.carrier else None
            tracking_url = tracking.tracking_url.strip() if tracking.tracking_url else None
            if tracking_url is None and carrier:
                tracking_url = tracking_url_for(carrier, tracking_number)
                if tracking_url is None:
                    self.logger.warning(f"No tracking page known for carrier {carrier}")
            changes["tracking_number"] = tracking_number
            changes["carrier"] = carrier
            changes["tracking_url"] = tracking_url

        return await self.machine.transition(
            order_id, new_status,
            note=note or f"Status updated to {new_status.value} by {actor.id}",
            **changes
        )

    async def issue_refund(self, order_id: str, amount: Decimal, reason: str,
                           actor: Principal) -> Order:
        """
        Refund part or all of a completed payment outside a return.

        The order status stays as it is; once the refunds cover the total the
        payment becomes refunded and a note goes into the history. The
        processor is asked once, before the refund is recorded.
        """
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can issue refunds", {"order_id": order_id})
        reason = (reason or "").strip()
        if not reason:
            raise OrderValidationError("A refund reason is required", {"order_id": order_id})
        amount = quantize_money(amount)
        if amount <= 0:
            raise OrderValidationError("Refund amount must be positive", {"order_id": order_id})

        refund = None

        async def step(order: Order) -> Order:
            nonlocal refund
            if order.payment_status != PaymentStatus.COMPLETED:
                if refund is not None:
                    self.logger.error(
                        f"Refund {refund.refund_id} was issued for order {order.order_number} "
                        f"but its payment moved to {order.payment_status.value}"
                    )
                raise OrderValidationError(
                    f"Cannot refund order with payment status: {order.payment_status.value}",
                    {"order_id": order.order_id}
                )
            if refund is None:
                if amount > order.refundable_amount:
                    raise OrderValidationError(
                        f"Refund amount ({format_price(amount)}) exceeds maximum refundable "
                        f"amount ({format_price(order.refundable_amount)})",
                        {"order_id": order.order_id}
                    )
                refund = await self.payments.refund(
                    order, amount, reason,
                    idempotency_key=f"refund-{order.order_id}-{len(order.refunds) + 1}",
                    issued_by=actor.id
                )

            now = self.clock()
            updated = add_refund(
                order, refund, now,
                note=f"Order fully refunded - {format_price(refund.amount)}: {reason}"
            )
            return await self.machine.commit(order, updated)

        order = await self.machine.with_retry(order_id, step)
        self.logger.info(
            f"Refund of {format_price(refund.amount)} recorded for order {order.order_number} "
            f"by {actor.id}; payment {order.payment_status.value}"
        )
        return order

    async def get_order(self, order_id: str, principal: Optional[Principal] = None) -> Order:
        order = await self.machine.load(order_id)
        if principal is not None and not (principal.is_admin or principal.owns(order.user_id)):
            raise PermissionDenied("You do not have access to this order", {"order_id": order_id})
        return order

    async def get_user_orders(self, user_id: str, limit: int = 10) -> List[Order]:
        return await self.repository.list_user_orders(user_id, limit)

    async def release_inventory(self, order_id: str, actor: Principal) -> bool:
        """Retry giving back stock of a cancelled order"""
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can release stock", {"order_id": order_id})
        order = await self.machine.load(order_id)
        if order.status != OrderStatus.CANCELLED:
            raise OrderValidationError(
                "Only cancelled orders give back their stock",
                {"order_id": order_id, "status": order.status.value}
            )
        return await self.machine.release_inventory(order)

    @staticmethod
    def _instructions(order: Order) -> PaymentInstructions:
        intent = order.payment_intent
        return PaymentInstructions(
            order_id=order.order_id,
            order_number=order.order_number,
            method=intent.method,
            status=intent.status,
            amount=intent.expected_amount,
            currency=intent.currency,
            expiration_time=intent.expiration_time,
            required_confirmations=intent.required_confirmations,
            redirect_url=intent.redirect_url,
            deposit_address=intent.deposit_address,
            qr_payload=intent.qr_payload,
            payment_url=intent.payment_url,
            exchange_rate=intent.exchange_rate
        )
