"""
In-process assembly of the whole fulfillment saga.

Builds every service and coordinator on one bus and one set of stores.
Useful for local runs and end-to-end tests; production deployments run
each coordinator in its own service against shared infrastructure.

Example:
    >>> async with FulfillmentSaga(config=SagaConfig()) as saga:
    ...     await saga.inventory.set_stock("SKU-A", "wh-1", 5)
    ...     order = await saga.orders.create_order(command)
    ...     await saga.bus.wait_until_idle()
    ...     (await saga.orders.get_order(order.order_id)).status
    <OrderStatus.CONFIRMED: 'confirmed'>
"""

import logging
from types import TracebackType
from typing import Self

from fulfillment.bus import InMemoryEventBus
from fulfillment.clock import Clock, utcnow
from fulfillment.config import SagaConfig
from fulfillment.idempotency import (
    IdempotencyKeyStore,
    InMemoryIdempotencyKeyStore,
    InMemoryProcessedEventStore,
    ProcessedEventStore,
)
from fulfillment.inventory import ReservationManager, ReservationSweeper
from fulfillment.locks import KeyedLockManager
from fulfillment.observability import Tracer
from fulfillment.orders import InMemoryOrderRepository, OrderRepository, OrderService
from fulfillment.payments import (
    InMemoryPaymentGateway,
    InMemoryPaymentRecordRepository,
    PaymentGateway,
    PaymentService,
)
from fulfillment.repositories import DLQRepository
from fulfillment.saga.coordinator import SagaCoordinator
from fulfillment.saga.inventory import InventoryCoordinator
from fulfillment.saga.notification import InMemoryNotifier, NotificationCoordinator, Notifier
from fulfillment.saga.order import OrderCoordinator
from fulfillment.saga.payment import PaymentCoordinator

logger = logging.getLogger(__name__)


class FulfillmentSaga:
    """
    Orders, inventory, payment and notification participants on one bus.

    Any collaborator may be injected; the rest are in-memory defaults.

    Args:
        config: Timeouts, TTLs and retry policy
        clock: Time source shared by every component
        bus: Event bus (an InMemoryEventBus is built from config if omitted)
        dlq_repo: Dead-letter repository for the default bus
        processed: Processed-event store shared by the coordinators
        keys: Idempotency key store for payments
        orders_repository: Order storage
        gateway: Payment gateway
        notifier: Customer notification channel
        tracer: Optional custom Tracer shared by every component
        enable_tracing: Whether to enable tracing
    """

    def __init__(
        self,
        *,
        config: SagaConfig | None = None,
        clock: Clock | None = None,
        bus: InMemoryEventBus | None = None,
        dlq_repo: DLQRepository | None = None,
        processed: ProcessedEventStore | None = None,
        keys: IdempotencyKeyStore | None = None,
        orders_repository: OrderRepository | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.config = config or SagaConfig()
        self.clock = clock or utcnow
        tracing = {"tracer": tracer, "enable_tracing": enable_tracing}

        self.bus = bus or InMemoryEventBus(
            dlq_repo=dlq_repo,
            retry_config=self.config.retry,
            handler_timeout=self.config.handler_timeout,
            **tracing,
        )
        self.processed = processed or InMemoryProcessedEventStore(clock=self.clock, **tracing)
        self.keys = keys or InMemoryIdempotencyKeyStore(clock=self.clock, **tracing)
        self.locks = KeyedLockManager(**tracing)

        self.inventory = ReservationManager(
            clock=self.clock,
            locks=self.locks,
            default_ttl=self.config.reservation_ttl,
            lock_timeout=self.config.db_timeout,
            **tracing,
        )
        self.orders = OrderService(
            orders_repository or InMemoryOrderRepository(**tracing),
            self.inventory,
            self.bus,
            clock=self.clock,
            reservation_ttl=self.config.reservation_ttl,
            **tracing,
        )
        self.gateway = gateway or InMemoryPaymentGateway()
        self.payments = PaymentService(
            self.gateway,
            InMemoryPaymentRecordRepository(),
            self.keys,
            clock=self.clock,
            gateway_timeout=self.config.gateway_timeout,
            **tracing,
        )
        self.notifier = notifier or InMemoryNotifier()
        self.sweeper = ReservationSweeper(
            self.inventory,
            self.bus,
            interval=self.config.sweep_interval,
            **tracing,
        )

        self.coordinators: list[SagaCoordinator] = [
            OrderCoordinator(
                self.bus,
                self.processed,
                self.orders.repository,
                clock=self.clock,
                action_timeout=self.config.db_timeout,
                **tracing,
            ),
            InventoryCoordinator(
                self.bus,
                self.processed,
                self.inventory,
                clock=self.clock,
                action_timeout=self.config.db_timeout,
                **tracing,
            ),
            PaymentCoordinator(
                self.bus,
                self.processed,
                self.payments,
                action_timeout=self.config.gateway_timeout,
                **tracing,
            ),
            NotificationCoordinator(self.bus, self.processed, self.notifier, **tracing),
        ]
        self._attached = False

    def attach(self) -> None:
        """Subscribe every coordinator to the bus."""
        if self._attached:
            return
        for coordinator in self.coordinators:
            coordinator.attach()
        self._attached = True

    async def start(self, *, run_sweeper: bool = True) -> None:
        """Attach the coordinators and start the expiry sweeper."""
        self.attach()
        if run_sweeper:
            await self.sweeper.start()
        logger.info(
            "Fulfillment saga started with %d coordinators",
            len(self.coordinators),
            extra={"coordinators": [c.consumer_group for c in self.coordinators]},
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the sweeper and drain the bus."""
        await self.sweeper.stop()
        await self.bus.shutdown(timeout=timeout)
        logger.info("Fulfillment saga stopped")

    async def purge_processed_markers(self) -> int:
        """Delete processed-event markers older than the retention window."""
        cutoff = self.clock() - self.config.processed_marker_retention
        purged = await self.processed.purge_expired(cutoff)
        if purged:
            logger.info(
                "Purged %d processed-event markers older than %s",
                purged,
                cutoff.isoformat(),
                extra={"purged": purged},
            )
        return purged

    async def __aenter__(self) -> Self:
        await self.start(run_sweeper=False)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


__all__ = ["FulfillmentSaga"]
