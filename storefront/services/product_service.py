import logging
from abc import ABC, abstractmethod
from typing import List, Optional
from ..errors import OrderValidationError
from ..models.order import OrderItem, ShippingMethod
from ..models.product import ProductSnapshot

class Catalog(ABC):
    """Catalog collaborator consumed at checkout and on compensation"""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        pass

    @abstractmethod
    async def get_shipping_method(self, shipping_method_id: str) -> Optional[ShippingMethod]:
        pass

    @abstractmethod
    async def reserve_stock(self, order_id: str, items: List[OrderItem]) -> None:
        """Take stock for an order; raises OrderValidationError when short"""
        pass

    @abstractmethod
    async def release_stock(self, order_id: str, items: List[OrderItem]) -> bool:
        """Give back an order's stock once; False when nothing was released"""
        pass

class ProductService(Catalog):
    """PostgreSQL-backed catalog reads and stock movements"""

    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        async with self.db.pool.acquire() as conn:
            product = await conn.fetchrow("""
                SELECT product_id, name, price, stock_quantity, is_active
                FROM products
                WHERE product_id = $1
            """, product_id)
            return ProductSnapshot(**dict(product)) if product else None

    async def get_shipping_method(self, shipping_method_id: str) -> Optional[ShippingMethod]:
        async with self.db.pool.acquire() as conn:
            method = await conn.fetchrow("""
                SELECT shipping_method_id AS id, name, cost, estimated_delivery, is_active
                FROM shipping_methods
                WHERE shipping_method_id = $1
            """, shipping_method_id)
            return ShippingMethod(**dict(method)) if method else None

    async def reserve_stock(self, order_id: str, items: List[OrderItem]) -> None:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                for item in items:
                    # the movement row makes a repeated reservation a no-op
                    inserted = await conn.fetchval("""
                        INSERT INTO inventory_movements (order_id, product_id, kind, quantity)
                        VALUES ($1, $2, 'reserve', $3)
                        ON CONFLICT DO NOTHING
                        RETURNING order_id
                    """, order_id, item.product_id, item.quantity)
                    if inserted is None:
                        continue

                    result = await conn.execute("""
                        UPDATE products
                        SET stock_quantity = stock_quantity - $1,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE product_id = $2 AND stock_quantity >= $1
                    """, item.quantity, item.product_id)

                    if result != "UPDATE 1":
                        raise OrderValidationError(
                            f"Insufficient stock for product {item.name}",
                            {"product_id": item.product_id}
                        )

    async def release_stock(self, order_id: str, items: List[OrderItem]) -> bool:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                released = False
                for item in items:
                    reserved = await conn.fetchval("""
                        SELECT quantity FROM inventory_movements
                        WHERE order_id = $1 AND product_id = $2 AND kind = 'reserve'
                    """, order_id, item.product_id)
                    if reserved is None:
                        continue

                    inserted = await conn.fetchval("""
                        INSERT INTO inventory_movements (order_id, product_id, kind, quantity)
                        VALUES ($1, $2, 'release', $3)
                        ON CONFLICT DO NOTHING
                        RETURNING order_id
                    """, order_id, item.product_id, reserved)
                    if inserted is None:
                        continue

                    await conn.execute("""
                        UPDATE products
                        SET stock_quantity = stock_quantity + $1,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE product_id = $2
                    """, reserved, item.product_id)
                    released = True

                if released:
                    self.logger.info(f"Released stock for order {order_id}")
                return released
