import logging
from typing import Callable, Optional
from .database.database import Database
from .database.memory import InMemoryCatalog, InMemoryOrderRepository
from .database.repository import PostgresOrderRepository
from .services.confirmation_tracker import ConfirmationTracker
from .services.order_service import OrderService
from .services.payment_service import PaymentService
from .services.product_service import ProductService
from .services.return_service import ReturnService
from .utils.formatters import utcnow

class Storefront:
    """Wires repository, catalog, gateways and services together"""

    def __init__(self, repository, catalog, payments: PaymentService,
                 clock: Callable = utcnow, db: Optional[Database] = None):
        self.db = db
        self.repository = repository
        self.catalog = catalog
        self.payments = payments
        self.orders = OrderService(repository, catalog, payments, clock)
        self.tracker = ConfirmationTracker(self.orders.machine, payments, clock)
        self.returns = ReturnService(self.orders.machine, clock)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def with_database(cls, db: Optional[Database] = None,
                      payments: Optional[PaymentService] = None,
                      clock: Callable = utcnow) -> "Storefront":
        db = db or Database()
        return cls(
            PostgresOrderRepository(db),
            ProductService(db),
            payments or PaymentService.default(clock),
            clock=clock,
            db=db
        )

    @classmethod
    def in_memory(cls, payments: PaymentService, catalog: Optional[InMemoryCatalog] = None,
                  clock: Callable = utcnow) -> "Storefront":
        return cls(InMemoryOrderRepository(), catalog or InMemoryCatalog(), payments, clock=clock)

    async def start(self):
        if self.db is not None:
            await self.db.connect()
        self.logger.info("Storefront core started")

    async def stop(self):
        if self.db is not None:
            await self.db.close()
        self.logger.info("Storefront core stopped")
