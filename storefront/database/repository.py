import logging
import asyncpg
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from ..errors import ConcurrentModification
from ..models.order import Order, OrderStatus
from ..models.payment import PaymentIntentStatus, PaymentMethod
from ..models.return_request import ReturnRequest, ReturnStatus

ASYNC_METHODS = (PaymentMethod.BITCOIN.value, PaymentMethod.MONERO.value)
OPEN_INTENT_STATUSES = (
    PaymentIntentStatus.INITIATED.value,
    PaymentIntentStatus.AWAITING_CONFIRMATION.value
)

class OrderRepository(ABC):
    """
    Persistence boundary for orders and return requests.

    Every mutation of an existing order goes through compare_and_set, which
    only commits while the stored order still has the status and version the
    caller read.
    """

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_reference(self, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_user_orders(self, user_id: str, limit: int = 10) -> List[Order]:
        pass

    @abstractmethod
    async def list_awaiting_payment(self, limit: int = 50) -> List[Order]:
        """Pending crypto orders whose payment is still open"""
        pass

    @abstractmethod
    async def compare_and_set(self, order: Order, expected_status: OrderStatus,
                              expected_version: int,
                              return_request: Optional[ReturnRequest] = None,
                              expected_return_status: Optional[ReturnStatus] = None) -> Order:
        """
        Atomically replace an order snapshot.

        When `return_request` is given it is written in the same unit: inserted
        when `expected_return_status` is None, otherwise updated only while the
        stored request still has that status. Raises ConcurrentModification
        when any expectation does not hold; nothing is written in that case.
        """
        pass

    @abstractmethod
    async def get_return(self, return_id: str) -> Optional[ReturnRequest]:
        pass

    @abstractmethod
    async def list_order_returns(self, order_id: str) -> List[ReturnRequest]:
        pass

    @abstractmethod
    async def list_user_returns(self, user_id: str, limit: int = 10) -> List[ReturnRequest]:
        pass

    @abstractmethod
    async def count_returns_between(self, start: datetime, end: datetime) -> int:
        pass

class PostgresOrderRepository(OrderRepository):
    """Order documents stored as JSONB rows with indexed lookup columns"""

    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def insert_order(self, order: Order) -> Order:
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO orders (
                    order_id, order_number, user_id, status, payment_method,
                    payment_status, payment_reference, intent_status, version,
                    document, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12)
            """, *self._order_columns(order))
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            document = await conn.fetchval(
                "SELECT document FROM orders WHERE order_id = $1", order_id
            )
            return Order.model_validate_json(document) if document else None

    async def get_order_by_reference(self, reference: str) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            document = await conn.fetchval(
                "SELECT document FROM orders WHERE payment_reference = $1", reference
            )
            return Order.model_validate_json(document) if document else None

    async def list_user_orders(self, user_id: str, limit: int = 10) -> List[Order]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT document FROM orders
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2
            """, user_id, limit)
            return [Order.model_validate_json(row['document']) for row in rows]

    async def list_awaiting_payment(self, limit: int = 50) -> List[Order]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT document FROM orders
                WHERE status = $1
                  AND payment_method = ANY($2::text[])
                  AND intent_status = ANY($3::text[])
                ORDER BY created_at
                LIMIT $4
            """, OrderStatus.PENDING.value, list(ASYNC_METHODS),
                list(OPEN_INTENT_STATUSES), limit)
            return [Order.model_validate_json(row['document']) for row in rows]

    async def compare_and_set(self, order: Order, expected_status: OrderStatus,
                              expected_version: int,
                              return_request: Optional[ReturnRequest] = None,
                              expected_return_status: Optional[ReturnStatus] = None) -> Order:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                columns = self._order_columns(order)
                result = await conn.execute("""
                    UPDATE orders
                    SET status = $1,
                        payment_status = $2,
                        payment_reference = $3,
                        intent_status = $4,
                        version = $5,
                        document = $6::jsonb,
                        updated_at = $7
                    WHERE order_id = $8 AND status = $9 AND version = $10
                """,
                    columns[3], columns[5], columns[6], columns[7], columns[8],
                    columns[9], columns[11], order.order_id,
                    OrderStatus(expected_status).value, expected_version
                )

                # raising inside the transaction block rolls it back
                if result != "UPDATE 1":
                    raise ConcurrentModification(
                        order.order_id, OrderStatus(expected_status).value, expected_version
                    )

                if return_request is not None:
                    await self._write_return(conn, return_request, expected_return_status,
                                             order, expected_version)

        return order

    async def _write_return(self, conn, return_request: ReturnRequest,
                            expected_return_status: Optional[ReturnStatus],
                            order: Order, expected_version: int):
        document = return_request.model_dump_json()
        if expected_return_status is None:
            try:
                await conn.execute("""
                    INSERT INTO return_requests (
                        return_id, order_id, user_id, request_number, status,
                        document, request_date, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
                """,
                    return_request.return_id, return_request.order_id,
                    return_request.user_id, return_request.request_number,
                    return_request.status.value, document,
                    return_request.request_date, return_request.updated_at
                )
            except asyncpg.exceptions.UniqueViolationError:
                # another request took the same day's number; the caller recounts
                self.logger.warning(
                    f"Return number {return_request.request_number} already taken"
                )
                raise ConcurrentModification(order.order_id, order.status.value, expected_version)
            return

        result = await conn.execute("""
            UPDATE return_requests
            SET status = $1, document = $2::jsonb, updated_at = $3
            WHERE return_id = $4 AND status = $5
        """,
            return_request.status.value, document, return_request.updated_at,
            return_request.return_id, ReturnStatus(expected_return_status).value
        )
        if result != "UPDATE 1":
            raise ConcurrentModification(order.order_id, order.status.value, expected_version)

    async def get_return(self, return_id: str) -> Optional[ReturnRequest]:
        async with self.db.pool.acquire() as conn:
            document = await conn.fetchval(
                "SELECT document FROM return_requests WHERE return_id = $1", return_id
            )
            return ReturnRequest.model_validate_json(document) if document else None

    async def list_order_returns(self, order_id: str) -> List[ReturnRequest]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT document FROM return_requests
                WHERE order_id = $1
                ORDER BY request_date
            """, order_id)
            return [ReturnRequest.model_validate_json(row['document']) for row in rows]

    async def list_user_returns(self, user_id: str, limit: int = 10) -> List[ReturnRequest]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT document FROM return_requests
                WHERE user_id = $1
                ORDER BY request_date DESC
                LIMIT $2
            """, user_id, limit)
            return [ReturnRequest.model_validate_json(row['document']) for row in rows]

    async def count_returns_between(self, start: datetime, end: datetime) -> int:
        async with self.db.pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT COUNT(*) FROM return_requests
                WHERE request_date >= $1 AND request_date < $2
            """, start, end)

    @staticmethod
    def _order_columns(order: Order) -> tuple:
        intent = order.payment_intent
        return (
            order.order_id,
            order.order_number,
            order.user_id,
            order.status.value,
            order.payment_method.value,
            order.payment_status.value,
            intent.external_reference if intent else None,
            intent.status.value if intent else None,
            order.version,
            order.model_dump_json(),
            order.created_at,
            order.updated_at
        )
