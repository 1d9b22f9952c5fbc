"""Event bus client.

Durable, partitioned, at-least-once event delivery with consumer groups.
``KafkaEventBus`` talks to a broker through aiokafka; ``InMemoryEventBus``
keeps the same contract inside the process for development and tests.

Within a consumer group every partition is processed by one worker, strictly
in order. An offset is committed only after the handler finished, or after
the event was parked on the dead-letter topic once retries ran out.
"""

import asyncio
import itertools
import json
import zlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import IllegalStateError, KafkaConnectionError, KafkaError

from src.core.config import Settings
from src.core.exceptions import AlertingServiceError, BrokerUnavailableError
from src.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class PublishReceipt:
    """Where a published event landed."""

    topic: str
    partition: int
    offset: int


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for failing handlers."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def serialize_value(value: Any) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


def deserialize_value(raw: bytes | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        # Left for the handler to reject, so it lands on the dead-letter topic
        return {"undecodable": raw.decode("utf-8", errors="replace")}


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, AlertingServiceError):
        return error.retryable
    return True


class EventBus(ABC):
    """Contract shared by the broker-backed and in-process buses."""

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        dead_letter_suffix: str = ".dlq",
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.dead_letter_suffix = dead_letter_suffix

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def publish(
        self, topic: str, event: dict[str, Any], key: str | None = None,
    ) -> PublishReceipt:
        """Append an event to a topic and wait for the acknowledgement.

        Raises:
            BrokerUnavailableError: the publish budget ran out.
        """

    @abstractmethod
    async def subscribe_group(
        self, topic: str, consumer_group: str, handler: EventHandler,
    ) -> None:
        """Deliver every event of a topic to the handler, once per group."""

    @abstractmethod
    async def health_check(self) -> bool: ...

    def dead_letter_topic(self, topic: str) -> str:
        return f"{topic}{self.dead_letter_suffix}"

    async def _dispatch(
        self,
        topic: str,
        consumer_group: str,
        handler: EventHandler,
        event: Any,
        *,
        partition: int,
        offset: int,
        key: str | None = None,
    ) -> None:
        """Run the handler under the retry policy.

        Returns once the event is handled or dead-lettered; only a failure to
        dead-letter escapes, in which case the offset must not be committed.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                await handler(event)
                return
            except Exception as e:
                retryable = is_retryable(e)
                if not retryable or attempt >= self.retry_policy.max_attempts:
                    await self._dead_letter(
                        topic, consumer_group, event, e, attempt,
                        partition=partition, offset=offset, key=key,
                    )
                    return

                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "Event handler failed, retrying",
                    topic=topic,
                    consumer_group=consumer_group,
                    partition=partition,
                    offset=offset,
                    attempt=attempt,
                    retry_in=delay,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(delay)

    async def _dead_letter(
        self,
        topic: str,
        consumer_group: str,
        event: Any,
        error: Exception,
        attempts: int,
        *,
        partition: int,
        offset: int,
        key: str | None,
    ) -> None:
        dead_letter_topic = self.dead_letter_topic(topic)
        record = {
            "original_topic": topic,
            "consumer_group": consumer_group,
            "partition": partition,
            "offset": offset,
            "error": str(error),
            "error_type": type(error).__name__,
            "attempts": attempts,
            "failed_at": datetime.now(UTC).isoformat(),
            "event": event,
        }
        logger.error(
            "Event moved to dead-letter topic",
            topic=topic,
            dead_letter_topic=dead_letter_topic,
            consumer_group=consumer_group,
            partition=partition,
            offset=offset,
            attempts=attempts,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.publish(dead_letter_topic, record, key=key)


@dataclass
class _Record:
    offset: int
    key: str | None
    value: Any


@dataclass
class _Subscription:
    topic: str
    consumer_group: str
    handler: EventHandler
    committed: dict[int, int] = field(default_factory=dict)
    tasks: list[asyncio.Task] = field(default_factory=list)


class InMemoryEventBus(EventBus):
    """Partitioned in-process log with consumer groups."""

    def __init__(
        self,
        *,
        partitions: int = 3,
        retry_policy: RetryPolicy | None = None,
        dead_letter_suffix: str = ".dlq",
        redelivery_delay: float = 0.5,
        drain_timeout: float = 10.0,
    ) -> None:
        super().__init__(retry_policy=retry_policy, dead_letter_suffix=dead_letter_suffix)
        self.partitions = partitions
        self.redelivery_delay = redelivery_delay
        self.drain_timeout = drain_timeout
        self._logs: dict[str, list[list[_Record]]] = {}
        self._waiters: dict[str, set[asyncio.Event]] = {}
        self._subscriptions: dict[tuple[str, str], _Subscription] = {}
        self._round_robin = itertools.count()
        self._started = False
        self._stopping = False
        self.logger = logger.bind(component="event_bus", backend="memory")

    def _topic_log(self, topic: str) -> list[list[_Record]]:
        if topic not in self._logs:
            self._logs[topic] = [[] for _ in range(self.partitions)]
            self._waiters[topic] = set()
        return self._logs[topic]

    def partition_for(self, key: str | None) -> int:
        if key is None:
            return next(self._round_robin) % self.partitions
        return zlib.crc32(key.encode("utf-8")) % self.partitions

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopping = False
        for subscription in self._subscriptions.values():
            self._spawn_workers(subscription)
        self.logger.info("Event bus started", partitions=self.partitions)

    async def stop(self) -> None:
        """Stop the workers once each has finished its current event."""
        if not self._started:
            return
        self._stopping = True
        for waiters in self._waiters.values():
            for waiter in waiters:
                waiter.set()

        tasks = [task for sub in self._subscriptions.values() for task in sub.tasks]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                self.logger.warning("Event bus workers cancelled", count=len(pending))
        for subscription in self._subscriptions.values():
            subscription.tasks.clear()

        self._started = False
        self.logger.info("Event bus stopped")

    async def publish(
        self, topic: str, event: dict[str, Any], key: str | None = None,
    ) -> PublishReceipt:
        if not self._started:
            raise BrokerUnavailableError(
                "Event bus is not running", context={"topic": topic},
            )

        partition = self.partition_for(key)
        log = self._topic_log(topic)[partition]
        record = _Record(
            offset=len(log),
            key=key,
            # Same bytes a broker would carry
            value=deserialize_value(serialize_value(event)),
        )
        log.append(record)
        for waiter in self._waiters[topic]:
            waiter.set()

        self.logger.debug(
            "Event published", topic=topic, partition=partition, offset=record.offset,
        )
        return PublishReceipt(topic=topic, partition=partition, offset=record.offset)

    async def subscribe_group(
        self, topic: str, consumer_group: str, handler: EventHandler,
    ) -> None:
        if (topic, consumer_group) in self._subscriptions:
            raise ValueError(f"Group {consumer_group} already subscribed to {topic}")

        subscription = _Subscription(
            topic=topic,
            consumer_group=consumer_group,
            handler=handler,
            committed={partition: 0 for partition in range(self.partitions)},
        )
        self._subscriptions[(topic, consumer_group)] = subscription
        self._topic_log(topic)
        if self._started:
            self._spawn_workers(subscription)
        self.logger.info("Subscribed", topic=topic, consumer_group=consumer_group)

    def _spawn_workers(self, subscription: _Subscription) -> None:
        subscription.tasks = [
            asyncio.create_task(
                self._run_partition(subscription, partition),
                name=f"bus-{subscription.topic}-{subscription.consumer_group}-{partition}",
            )
            for partition in range(self.partitions)
        ]

    async def _run_partition(self, subscription: _Subscription, partition: int) -> None:
        log = self._topic_log(subscription.topic)[partition]
        wakeup = asyncio.Event()
        self._waiters[subscription.topic].add(wakeup)
        try:
            while not self._stopping:
                wakeup.clear()
                offset = subscription.committed[partition]
                if offset >= len(log):
                    await wakeup.wait()
                    continue

                record = log[offset]
                try:
                    await self._dispatch(
                        subscription.topic,
                        subscription.consumer_group,
                        subscription.handler,
                        record.value,
                        partition=partition,
                        offset=offset,
                        key=record.key,
                    )
                except Exception:
                    # Not committed; the same record is delivered again
                    self.logger.exception(
                        "Event delivery failed, redelivering",
                        topic=subscription.topic,
                        consumer_group=subscription.consumer_group,
                        partition=partition,
                        offset=offset,
                    )
                    await asyncio.sleep(self.redelivery_delay)
                    continue

                subscription.committed[partition] = offset + 1
        finally:
            self._waiters[subscription.topic].discard(wakeup)

    async def health_check(self) -> bool:
        return self._started

    def records(self, topic: str) -> list[Any]:
        """Every event on a topic, partition by partition."""
        return [record.value for log in self._topic_log(topic) for record in log]

    def _drained(self) -> bool:
        return all(
            subscription.committed[partition] >= len(log)
            for subscription in self._subscriptions.values()
            for partition, log in enumerate(self._topic_log(subscription.topic))
        )

    async def join(self, timeout: float = 5.0) -> None:
        """Wait until every subscribed group has committed every event."""
        async with asyncio.timeout(timeout):
            while not self._drained():
                await asyncio.sleep(0.01)


class KafkaEventBus(EventBus):
    """Event bus backed by a Kafka cluster."""

    def __init__(
        self,
        bootstrap_servers: str,
        *,
        client_id: str,
        retry_policy: RetryPolicy | None = None,
        dead_letter_suffix: str = ".dlq",
        publish_timeout: float = 10.0,
        publish_max_attempts: int = 5,
        publish_backoff: float = 0.5,
        connect_max_attempts: int = 5,
        drain_timeout: float = 30.0,
        producer: AIOKafkaProducer | None = None,
    ) -> None:
        super().__init__(retry_policy=retry_policy, dead_letter_suffix=dead_letter_suffix)
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.publish_timeout = publish_timeout
        self.publish_max_attempts = publish_max_attempts
        self.publish_backoff = publish_backoff
        self.connect_max_attempts = connect_max_attempts
        self.drain_timeout = drain_timeout
        self._producer = producer
        self._consumers: dict[tuple[str, str], AIOKafkaConsumer] = {}
        self._tasks: list[asyncio.Task] = []
        self._pending: list[tuple[str, str, EventHandler]] = []
        self._started = False
        self._stopping = False
        self._connection_lock = asyncio.Lock()
        self.logger = logger.bind(component="event_bus", backend="kafka")

    async def start(self) -> None:
        """Start the producer, retrying the connection with backoff."""
        async with self._connection_lock:
            if self._started:
                return

            if self._producer is None:
                self._producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    client_id=self.client_id,
                    value_serializer=serialize_value,
                    key_serializer=lambda key: key.encode("utf-8") if key else None,
                    acks="all",
                    enable_idempotence=True,
                )

            for attempt in range(1, self.connect_max_attempts + 1):
                try:
                    self.logger.info(
                        "Attempting Kafka connection",
                        attempt=attempt,
                        max_attempts=self.connect_max_attempts,
                    )
                    await asyncio.wait_for(self._producer.start(), timeout=self.publish_timeout)
                    break
                except (KafkaConnectionError, asyncio.TimeoutError) as e:
                    if attempt == self.connect_max_attempts:
                        raise BrokerUnavailableError(
                            f"Could not connect to Kafka at {self.bootstrap_servers}",
                            context={"error": str(e)},
                        ) from e
                    delay = self.publish_backoff * (2 ** (attempt - 1))
                    self.logger.warning(
                        "Kafka connection attempt failed", attempt=attempt, retry_in=delay, error=str(e),
                    )
                    await asyncio.sleep(delay)

            self._started = True
            self._stopping = False
            self.logger.info("Successfully connected to Kafka")

        pending, self._pending = self._pending, []
        for topic, consumer_group, handler in pending:
            await self._start_consumer(topic, consumer_group, handler)

    async def stop(self) -> None:
        """Let consumers finish their current batch, then close everything."""
        self._stopping = True
        if self._tasks:
            _, still_running = await asyncio.wait(self._tasks, timeout=self.drain_timeout)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        self._tasks.clear()

        for (topic, consumer_group), consumer in self._consumers.items():
            try:
                await consumer.stop()
            except KafkaError as e:
                self.logger.warning(
                    "Error stopping Kafka consumer",
                    topic=topic,
                    consumer_group=consumer_group,
                    error=str(e),
                )
        self._consumers.clear()

        async with self._connection_lock:
            if self._producer is not None and self._started:
                try:
                    await self._producer.stop()
                except KafkaError as e:
                    self.logger.warning("Error stopping Kafka producer", error=str(e))
            self._started = False
        self.logger.info("Kafka event bus stopped")

    async def publish(
        self, topic: str, event: dict[str, Any], key: str | None = None,
    ) -> PublishReceipt:
        if not self._started or self._producer is None:
            raise BrokerUnavailableError(
                "Kafka producer not connected", context={"topic": topic},
            )

        last_error: Exception | None = None
        for attempt in range(1, self.publish_max_attempts + 1):
            try:
                metadata = await asyncio.wait_for(
                    self._producer.send_and_wait(topic, value=event, key=key),
                    timeout=self.publish_timeout,
                )
                self.logger.debug(
                    "Published event to Kafka topic",
                    topic=topic,
                    partition=metadata.partition,
                    offset=metadata.offset,
                )
                return PublishReceipt(
                    topic=topic, partition=metadata.partition, offset=metadata.offset,
                )
            except (KafkaError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt == self.publish_max_attempts:
                    break
                delay = self.publish_backoff * (2 ** (attempt - 1))
                self.logger.warning(
                    "Kafka publish failed, retrying",
                    topic=topic,
                    attempt=attempt,
                    retry_in=delay,
                    error=str(e) or type(e).__name__,
                )
                await asyncio.sleep(delay)

        self.logger.error(
            "Failed to publish event to Kafka",
            topic=topic,
            attempts=self.publish_max_attempts,
            error=str(last_error),
        )
        raise BrokerUnavailableError(
            f"Publish to {topic} failed after {self.publish_max_attempts} attempts",
            context={"topic": topic, "error": str(last_error)},
        )

    async def subscribe_group(
        self, topic: str, consumer_group: str, handler: EventHandler,
    ) -> None:
        if not self._started:
            self._pending.append((topic, consumer_group, handler))
            return
        await self._start_consumer(topic, consumer_group, handler)

    async def _start_consumer(
        self, topic: str, consumer_group: str, handler: EventHandler,
    ) -> None:
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=consumer_group,
            client_id=f"{self.client_id}-{consumer_group}",
            value_deserializer=deserialize_value,
            key_deserializer=lambda key: key.decode("utf-8") if key else None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        try:
            await consumer.start()
        except KafkaError as e:
            raise BrokerUnavailableError(
                f"Could not subscribe {consumer_group} to {topic}",
                context={"error": str(e)},
            ) from e

        self._consumers[(topic, consumer_group)] = consumer
        self._tasks.append(
            asyncio.create_task(
                self._consume(topic, consumer_group, consumer, handler),
                name=f"kafka-{topic}-{consumer_group}",
            )
        )
        self.logger.info("Subscribed to Kafka topic", topic=topic, consumer_group=consumer_group)

    async def _consume(
        self,
        topic: str,
        consumer_group: str,
        consumer: AIOKafkaConsumer,
        handler: EventHandler,
    ) -> None:
        while not self._stopping:
            try:
                batches = await consumer.getmany(timeout_ms=1000)
                # Partitions run concurrently, each strictly in order
                await asyncio.gather(
                    *(
                        self._process_partition(consumer_group, consumer, tp, messages, handler)
                        for tp, messages in batches.items()
                    )
                )
            except asyncio.CancelledError:
                raise
            except KafkaError as e:
                self.logger.warning(
                    "Kafka fetch failed", topic=topic, consumer_group=consumer_group, error=str(e),
                )
                await asyncio.sleep(self.publish_backoff)
            except Exception:
                self.logger.exception(
                    "Kafka consume loop error", topic=topic, consumer_group=consumer_group,
                )
                await asyncio.sleep(self.publish_backoff)

    async def _process_partition(
        self,
        consumer_group: str,
        consumer: AIOKafkaConsumer,
        tp: TopicPartition,
        messages: list[Any],
        handler: EventHandler,
    ) -> None:
        for message in messages:
            try:
                await self._dispatch(
                    tp.topic,
                    consumer_group,
                    handler,
                    message.value,
                    partition=tp.partition,
                    offset=message.offset,
                    key=message.key,
                )
                await consumer.commit({tp: message.offset + 1})
            except Exception:
                self.logger.exception(
                    "Event delivery failed, redelivering",
                    topic=tp.topic,
                    consumer_group=consumer_group,
                    partition=tp.partition,
                    offset=message.offset,
                )
                # Rewind so the next fetch starts from the failed event
                try:
                    consumer.seek(tp, message.offset)
                except IllegalStateError:
                    # Partition was revoked; its next owner resumes from the last commit
                    self.logger.warning(
                        "Partition no longer assigned, skipping rewind",
                        topic=tp.topic,
                        consumer_group=consumer_group,
                        partition=tp.partition,
                    )
                return

            if self._stopping:
                # Uncommitted remainder is fetched again by the next owner
                return

    async def health_check(self) -> bool:
        if not self._started or self._producer is None:
            return False
        try:
            metadata = await self._producer.client.fetch_all_metadata()
            return len(metadata.brokers()) > 0
        except Exception as e:
            self.logger.warning("Kafka health check failed", error=str(e))
            return False


def build_event_bus(settings: Settings) -> EventBus:
    """Create the bus selected by configuration."""
    retry_policy = RetryPolicy(
        max_attempts=settings.handler_max_attempts,
        base_delay=settings.handler_backoff_seconds,
        max_delay=settings.handler_backoff_max_seconds,
    )
    if settings.event_bus_backend == "kafka":
        return KafkaEventBus(
            settings.kafka_bootstrap_servers,
            client_id=settings.kafka_client_id,
            retry_policy=retry_policy,
            dead_letter_suffix=settings.dead_letter_suffix,
            publish_timeout=settings.publish_timeout_seconds,
            publish_max_attempts=settings.publish_max_attempts,
            publish_backoff=settings.publish_backoff_seconds,
        )
    return InMemoryEventBus(
        partitions=settings.bus_partitions,
        retry_policy=retry_policy,
        dead_letter_suffix=settings.dead_letter_suffix,
    )
