import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from ..errors import ConcurrentModification, OrderValidationError
from ..models.order import Order, OrderItem, OrderStatus, ShippingMethod
from ..models.product import ProductSnapshot
from ..models.return_request import ReturnRequest, ReturnStatus
from ..services.product_service import Catalog
from .repository import ASYNC_METHODS, OPEN_INTENT_STATUSES, OrderRepository

class InMemoryOrderRepository(OrderRepository):
    """
    Process-local repository with the same conditional-update contract as
    the PostgreSQL one. Used by tests and local runs.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._returns: Dict[str, ReturnRequest] = {}
        self._lock = asyncio.Lock()

    async def insert_order(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order
            return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_order_by_reference(self, reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment_reference == reference:
                    return order
            return None

    async def list_user_orders(self, user_id: str, limit: int = 10) -> List[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.user_id == user_id]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return orders[:limit]

    async def list_awaiting_payment(self, limit: int = 50) -> List[Order]:
        async with self._lock:
            orders = [
                o for o in self._orders.values()
                if o.status == OrderStatus.PENDING
                and o.payment_method.value in ASYNC_METHODS
                and o.payment_intent is not None
                and o.payment_intent.status.value in OPEN_INTENT_STATUSES
            ]
            orders.sort(key=lambda o: o.created_at)
            return orders[:limit]

    async def compare_and_set(self, order: Order, expected_status: OrderStatus,
                              expected_version: int,
                              return_request: Optional[ReturnRequest] = None,
                              expected_return_status: Optional[ReturnStatus] = None) -> Order:
        async with self._lock:
            stored = self._orders.get(order.order_id)
            if (stored is None or stored.status != expected_status
                    or stored.version != expected_version):
                raise ConcurrentModification(
                    order.order_id, OrderStatus(expected_status).value, expected_version
                )

            if return_request is not None:
                current = self._returns.get(return_request.return_id)
                if expected_return_status is None:
                    conflict = current is not None or any(
                        r.request_number == return_request.request_number
                        for r in self._returns.values()
                    )
                else:
                    conflict = current is None or current.status != expected_return_status
                if conflict:
                    raise ConcurrentModification(
                        order.order_id, OrderStatus(expected_status).value, expected_version
                    )
                self._returns[return_request.return_id] = return_request

            self._orders[order.order_id] = order
            return order

    async def get_return(self, return_id: str) -> Optional[ReturnRequest]:
        async with self._lock:
            return self._returns.get(return_id)

    async def list_order_returns(self, order_id: str) -> List[ReturnRequest]:
        async with self._lock:
            returns = [r for r in self._returns.values() if r.order_id == order_id]
            return sorted(returns, key=lambda r: r.request_date)

    async def list_user_returns(self, user_id: str, limit: int = 10) -> List[ReturnRequest]:
        async with self._lock:
            returns = [r for r in self._returns.values() if r.user_id == user_id]
            returns.sort(key=lambda r: r.request_date, reverse=True)
            return returns[:limit]

    async def count_returns_between(self, start: datetime, end: datetime) -> int:
        async with self._lock:
            return sum(1 for r in self._returns.values() if start <= r.request_date < end)

class InMemoryCatalog(Catalog):
    """Dictionary-backed catalog with idempotent stock movements"""

    def __init__(self, products: Iterable[ProductSnapshot] = (),
                 shipping_methods: Iterable[ShippingMethod] = ()):
        self.products: Dict[str, ProductSnapshot] = {p.product_id: p for p in products}
        self.shipping_methods: Dict[str, ShippingMethod] = {m.id: m for m in shipping_methods}
        self._movements: Dict[Tuple[str, str, str], int] = {}
        self._lock = asyncio.Lock()

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        return self.products.get(product_id)

    async def get_shipping_method(self, shipping_method_id: str) -> Optional[ShippingMethod]:
        return self.shipping_methods.get(shipping_method_id)

    def set_price(self, product_id: str, price: Decimal):
        """Change a live catalog price (existing orders keep their snapshot)"""
        product = self.products[product_id]
        self.products[product_id] = product.model_copy(update={"price": price})

    async def reserve_stock(self, order_id: str, items: List[OrderItem]) -> None:
        async with self._lock:
            pending = [i for i in items if (order_id, i.product_id, "reserve") not in self._movements]
            for item in pending:
                product = self.products.get(item.product_id)
                if product is None or product.stock_quantity < item.quantity:
                    raise OrderValidationError(
                        f"Insufficient stock for product {item.name}",
                        {"product_id": item.product_id}
                    )
            for item in pending:
                product = self.products[item.product_id]
                self.products[item.product_id] = product.model_copy(
                    update={"stock_quantity": product.stock_quantity - item.quantity}
                )
                self._movements[(order_id, item.product_id, "reserve")] = item.quantity

    async def release_stock(self, order_id: str, items: List[OrderItem]) -> bool:
        async with self._lock:
            released = False
            for item in items:
                reserved = self._movements.get((order_id, item.product_id, "reserve"))
                if reserved is None or (order_id, item.product_id, "release") in self._movements:
                    continue
                product = self.products[item.product_id]
                self.products[item.product_id] = product.model_copy(
                    update={"stock_quantity": product.stock_quantity + reserved}
                )
                self._movements[(order_id, item.product_id, "release")] = reserved
                released = True
            return released
