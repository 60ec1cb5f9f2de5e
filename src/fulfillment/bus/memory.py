"""In-memory event bus implementation.

Delivers envelopes to consumer groups within the same process, with the
same guarantees a broker-backed bus gives: an append-only log for durable
acceptance, serial delivery per (consumer group, partition key), retry
with exponential backoff and a dead-letter channel.

Suitable for development, tests and single-instance deployments.
"""

import asyncio
import fnmatch
import inspect
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from uuid import UUID

from fulfillment.bus.interface import EnvelopeHandler, EventBus
from fulfillment.events.base import EventEnvelope
from fulfillment.exceptions import NonRetryableEventError, TransientBusError
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_ATTEMPT,
    ATTR_CONSUMER_GROUP,
    ATTR_CORRELATION_ID,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_SUCCESS,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_PARTITION_KEY,
    ATTR_RETRY_COUNT,
)
from fulfillment.repositories.dlq import DLQRepository, InMemoryDLQRepository
from fulfillment.retry import RetryConfig, calculate_backoff

logger = logging.getLogger(__name__)


@dataclass
class _ConsumerGroup:
    handler: EnvelopeHandler
    topics: list[str] = field(default_factory=list)

    def matches(self, event_type: str) -> bool:
        return any(fnmatch.fnmatchcase(event_type, topic) for topic in self.topics)


@dataclass(frozen=True)
class _Delivery:
    envelope: EventEnvelope
    dlq_id: int | str | None = None
    resolved_by: str | None = None


class InMemoryEventBus(EventBus):
    """
    In-memory event bus with at-least-once delivery and per-key ordering.

    Features:
    - Append-only publication log (``get_published``)
    - One worker task per (consumer group, partition key); different keys
      and different groups run in parallel
    - Handler timeout; a timeout counts as a failed attempt
    - Exponential backoff retry, dead-lettering after the last attempt
    - Immediate dead-lettering of non-retryable errors (unknown event type,
      unsupported payload version)
    - Operator replay of dead-lettered envelopes

    Example:
        >>> bus = InMemoryEventBus(retry_config=RetryConfig(max_attempts=5))
        >>> bus.subscribe("order.*", handler, consumer_group="inventory-service")
        >>> await bus.publish(envelope)
        >>> await bus.wait_until_idle()

    Thread Safety:
        Subscription management is thread-safe. Publishing must happen on
        the event loop the bus delivers on.
    """

    def __init__(
        self,
        *,
        dlq_repo: DLQRepository | None = None,
        retry_config: RetryConfig | None = None,
        handler_timeout: float | None = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the bus.

        Args:
            dlq_repo: Dead-letter repository (in-memory if not provided)
            retry_config: Redelivery policy (default 5 attempts, 1s base, 30s cap)
            handler_timeout: Seconds one delivery attempt may take (None = unbounded)
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing.
                Ignored if tracer is explicitly provided.
        """
        self._dlq_repo: DLQRepository = dlq_repo or InMemoryDLQRepository(
            enable_tracing=enable_tracing
        )
        self._retry_config = retry_config or RetryConfig()
        self._handler_timeout = handler_timeout

        self._groups: dict[str, _ConsumerGroup] = {}
        self._lock = threading.RLock()

        self._log: list[EventEnvelope] = []
        self._queues: dict[tuple[str, str], deque[_Delivery]] = {}
        self._workers: dict[tuple[str, str], asyncio.Task[None]] = {}
        # Envelopes that could be neither delivered nor dead-lettered
        self._parked: list[tuple[str, EventEnvelope, BaseException]] = []
        self._closed = False

        self._stats = {
            "events_published": 0,
            "deliveries": 0,
            "handlers_succeeded": 0,
            "handler_errors": 0,
            "retries": 0,
            "dead_lettered": 0,
            "replayed": 0,
        }

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def dlq_repo(self) -> DLQRepository:
        return self._dlq_repo

    # =========================================================================
    # Subscription management
    # =========================================================================

    def subscribe(
        self,
        topic: str,
        handler: EnvelopeHandler,
        *,
        consumer_group: str,
    ) -> None:
        with self._lock:
            group = self._groups.get(consumer_group)
            if group is None:
                group = _ConsumerGroup(handler=handler)
                self._groups[consumer_group] = group
            elif group.handler != handler:
                raise ValueError(
                    f"Consumer group '{consumer_group}' is already bound to another handler"
                )
            if topic not in group.topics:
                group.topics.append(topic)

        logger.info(
            f"Consumer group {consumer_group} subscribed to {topic}",
            extra={"consumer_group": consumer_group, "topic": topic},
        )

    def unsubscribe(self, topic: str, *, consumer_group: str) -> bool:
        with self._lock:
            group = self._groups.get(consumer_group)
            if group is None or topic not in group.topics:
                return False
            group.topics.remove(topic)
            if not group.topics:
                del self._groups[consumer_group]

        logger.info(
            f"Consumer group {consumer_group} unsubscribed from {topic}",
            extra={"consumer_group": consumer_group, "topic": topic},
        )
        return True

    def get_subscriptions(self) -> dict[str, list[str]]:
        """Topics per consumer group."""
        with self._lock:
            return {name: list(group.topics) for name, group in self._groups.items()}

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(self, envelope: EventEnvelope) -> None:
        """
        Append the envelope to the log and schedule delivery.

        Returns once the envelope is in the log; handlers run in the
        background on per-partition workers.

        Raises:
            TransientBusError: If the bus has been shut down
        """
        with self._tracer.span(
            "fulfillment.event_bus.publish",
            {
                ATTR_EVENT_ID: str(envelope.event_id),
                ATTR_EVENT_TYPE: envelope.event_type,
                ATTR_PARTITION_KEY: envelope.partition_key,
                ATTR_CORRELATION_ID: str(envelope.correlation_id),
                ATTR_MESSAGING_SYSTEM: "memory",
                ATTR_MESSAGING_DESTINATION: envelope.event_type,
            },
        ):
            if self._closed:
                raise TransientBusError(f"Event bus is shut down; cannot publish {envelope}")

            self._log.append(envelope)
            self._stats["events_published"] += 1

            with self._lock:
                targets = [
                    name for name, group in self._groups.items() if group.matches(envelope.event_type)
                ]

            if not targets:
                logger.debug(
                    f"No consumer groups subscribed to {envelope.event_type}",
                    extra={"event_type": envelope.event_type, "event_id": str(envelope.event_id)},
                )

            for consumer_group in targets:
                self._enqueue(consumer_group, _Delivery(envelope))

    def _enqueue(self, consumer_group: str, delivery: _Delivery) -> None:
        key = (consumer_group, delivery.envelope.partition_key)
        queue = self._queues.setdefault(key, deque())
        queue.append(delivery)

        if key not in self._workers:
            task = asyncio.create_task(self._run_worker(key))
            self._workers[key] = task
            task.add_done_callback(lambda t, k=key: self._on_worker_done(k, t))

    def _on_worker_done(self, key: tuple[str, str], task: asyncio.Task[None]) -> None:
        if self._workers.get(key) is task:
            del self._workers[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Delivery worker for {key[0]}/{key[1]} crashed: {task.exception()}",
                exc_info=task.exception(),
            )

    async def _run_worker(self, key: tuple[str, str]) -> None:
        consumer_group, _ = key
        queue = self._queues[key]
        while queue:
            delivery = queue[0]
            await self._deliver(consumer_group, delivery)
            queue.popleft()
        del self._queues[key]
        # Worker must leave the registry before yielding control again
        self._workers.pop(key, None)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _invoke(self, handler: EnvelopeHandler, envelope: EventEnvelope) -> None:
        if self._handler_timeout is None:
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result
            return

        async with asyncio.timeout(self._handler_timeout):
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result

    async def _deliver(self, consumer_group: str, delivery: _Delivery) -> None:
        envelope = delivery.envelope
        with self._lock:
            group = self._groups.get(consumer_group)
        if group is None:
            # Group unsubscribed after the envelope was queued; park it rather than drop it
            logger.warning(
                f"Consumer group {consumer_group} has no handler; parking {envelope}",
                extra={"consumer_group": consumer_group, "event_id": str(envelope.event_id)},
            )
            self._parked.append((consumer_group, envelope, LookupError(consumer_group)))
            return

        max_attempts = self._retry_config.max_attempts
        for attempt in range(1, max_attempts + 1):
            self._stats["deliveries"] += 1
            with self._tracer.span(
                "fulfillment.event_bus.deliver",
                {
                    ATTR_EVENT_ID: str(envelope.event_id),
                    ATTR_EVENT_TYPE: envelope.event_type,
                    ATTR_PARTITION_KEY: envelope.partition_key,
                    ATTR_CONSUMER_GROUP: consumer_group,
                    ATTR_ATTEMPT: attempt,
                },
            ) as span:
                try:
                    await self._invoke(group.handler, envelope)
                except NonRetryableEventError as e:
                    if span:
                        span.set_attribute(ATTR_HANDLER_SUCCESS, False)
                        span.record_exception(e)
                    self._stats["handler_errors"] += 1
                    logger.error(
                        f"Non-retryable failure in {consumer_group} for {envelope}: {e}",
                        exc_info=True,
                        extra={
                            "consumer_group": consumer_group,
                            "event_id": str(envelope.event_id),
                            "event_type": envelope.event_type,
                            "attempt": attempt,
                        },
                    )
                    await self._dead_letter(consumer_group, envelope, e, attempt)
                    return
                except Exception as e:
                    if span:
                        span.set_attribute(ATTR_HANDLER_SUCCESS, False)
                        span.record_exception(e)
                    self._stats["handler_errors"] += 1

                    if attempt == max_attempts:
                        logger.error(
                            f"Delivery of {envelope} to {consumer_group} failed after "
                            f"{attempt} attempts: {e}",
                            exc_info=True,
                            extra={
                                "consumer_group": consumer_group,
                                "event_id": str(envelope.event_id),
                                "event_type": envelope.event_type,
                                "attempt": attempt,
                            },
                        )
                        await self._dead_letter(consumer_group, envelope, e, attempt)
                        return

                    delay = calculate_backoff(attempt - 1, self._retry_config)
                    self._stats["retries"] += 1
                    logger.warning(
                        f"Redelivering {envelope} to {consumer_group} after failure",
                        extra={
                            "consumer_group": consumer_group,
                            "event_id": str(envelope.event_id),
                            "event_type": envelope.event_type,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "delay_seconds": delay,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                else:
                    if span:
                        span.set_attribute(ATTR_HANDLER_SUCCESS, True)
                    self._stats["handlers_succeeded"] += 1
                    logger.debug(
                        f"{consumer_group} processed {envelope}",
                        extra={
                            "consumer_group": consumer_group,
                            "event_id": str(envelope.event_id),
                            "event_type": envelope.event_type,
                            "attempt": attempt,
                        },
                    )
                    if delivery.dlq_id is not None:
                        await self._dlq_repo.mark_resolved(
                            delivery.dlq_id, delivery.resolved_by or "replay"
                        )
                    return

            await asyncio.sleep(delay)

    async def _dead_letter(
        self,
        consumer_group: str,
        envelope: EventEnvelope,
        error: BaseException,
        attempts: int,
    ) -> None:
        with self._tracer.span(
            "fulfillment.event_bus.dead_letter",
            {
                ATTR_EVENT_ID: str(envelope.event_id),
                ATTR_EVENT_TYPE: envelope.event_type,
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_RETRY_COUNT: attempts,
                ATTR_ERROR_TYPE: type(error).__name__,
            },
        ):
            # DLQ writes reuse the redelivery backoff
            max_writes = self._retry_config.max_attempts
            for write in range(1, max_writes + 1):
                try:
                    await self._dlq_repo.add_failed_event(
                        event_id=envelope.event_id,
                        consumer_group=consumer_group,
                        event_type=envelope.event_type,
                        event_data=envelope.to_dict(),
                        error=error,
                        retry_count=attempts,
                    )
                    break
                except Exception as e:
                    if write == max_writes:
                        self._parked.append((consumer_group, envelope, e))
                        logger.error(
                            f"Could not dead-letter {envelope} for {consumer_group} after "
                            f"{write} writes; parked in memory",
                            exc_info=e,
                            extra={
                                "consumer_group": consumer_group,
                                "event_id": str(envelope.event_id),
                            },
                        )
                        return
                    delay = calculate_backoff(write - 1, self._retry_config)
                    logger.warning(
                        f"DLQ write for {envelope} failed, retrying in {delay:.2f}s",
                        extra={
                            "consumer_group": consumer_group,
                            "event_id": str(envelope.event_id),
                            "attempt": write,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(delay)

            self._stats["dead_lettered"] += 1
            logger.info(
                f"Dead-lettered {envelope} for {consumer_group}",
                extra={
                    "consumer_group": consumer_group,
                    "event_id": str(envelope.event_id),
                    "event_type": envelope.event_type,
                    "retry_count": attempts,
                },
            )

    # =========================================================================
    # Operator tools
    # =========================================================================

    async def replay_dead_letter(self, dlq_id: int | str, resolved_by: str = "replay") -> bool:
        """
        Redeliver a dead-lettered envelope to the consumer group that failed it.

        The entry is marked ``retrying``; it is marked ``resolved`` when the
        handler succeeds, and back to ``failed`` if it fails again.

        Returns:
            False if no such entry exists or it is already resolved
        """
        entry = await self._dlq_repo.get_failed_event_by_id(dlq_id)
        if entry is None or entry.status == "resolved":
            return False

        envelope = EventEnvelope.from_dict(entry.envelope_data())
        await self._dlq_repo.mark_retrying(dlq_id)
        self._stats["replayed"] += 1
        logger.info(
            f"Replaying dead-lettered {envelope} to {entry.consumer_group}",
            extra={
                "consumer_group": entry.consumer_group,
                "event_id": str(envelope.event_id),
                "dlq_id": str(dlq_id),
            },
        )
        self._enqueue(entry.consumer_group, _Delivery(envelope, dlq_id, resolved_by))
        return True

    def get_published(self, event_type: str | None = None) -> list[EventEnvelope]:
        """Envelopes accepted by the bus, in publication order."""
        if event_type is None:
            return list(self._log)
        return [e for e in self._log if fnmatch.fnmatchcase(e.event_type, event_type)]

    def get_published_for(self, partition_key: str | UUID) -> list[EventEnvelope]:
        key = str(partition_key)
        return [e for e in self._log if e.partition_key == key]

    def get_parked(self) -> list[tuple[str, EventEnvelope, BaseException]]:
        """Envelopes that could not be delivered or dead-lettered."""
        return list(self._parked)

    def get_stats(self) -> dict[str, int]:
        """
        Counters about bus operation.

        Returns:
            Dictionary with events_published, deliveries, handlers_succeeded,
            handler_errors, retries, dead_lettered, replayed and pending
        """
        stats = dict(self._stats)
        stats["pending"] = sum(len(q) for q in self._queues.values())
        return stats

    async def wait_until_idle(self, timeout: float | None = None) -> None:
        """
        Wait until every queued envelope (including follow-ups published by
        handlers) has been processed or dead-lettered.

        Raises:
            TimeoutError: If the bus is still busy after ``timeout`` seconds
        """
        async with asyncio.timeout(timeout):
            while self._workers:
                await asyncio.wait(list(self._workers.values()))

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop accepting envelopes and wait for in-flight deliveries.

        Workers still running after ``timeout`` are cancelled; their
        envelopes stay in the log for inspection.
        """
        self._closed = True
        logger.info(f"Shutting down event bus, {len(self._workers)} worker(s) active")

        pending = list(self._workers.values())
        if pending:
            _, remaining = await asyncio.wait(pending, timeout=timeout)
            if remaining:
                logger.warning(
                    f"Event bus shutdown: {len(remaining)} worker(s) did not finish within timeout",
                    extra={"remaining_workers": len(remaining)},
                )
                for task in remaining:
                    task.cancel()

        logger.info("Event bus shutdown complete")


__all__ = ["InMemoryEventBus"]
