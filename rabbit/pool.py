import asyncio
from typing import Any, Generic, Optional, Protocol, Set, Type

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from common.errors import PartialDeliveryError, describe
from common.logger import get_logger
from common.retry import backoff_delay
from rabbit.broker import RabbitMQClient, attempt_of
from rabbit.models import Job, P


class JobHandler(Protocol[P]):
    async def handle(self, job: Job[P]) -> Any:
        ...


class WorkerPool(Generic[P]):
    """Fixed-size group of consumers draining one queue.

    A job that raises is parked in the retry queue with an exponential delay
    until ``max_deliveries`` is reached, then dead-lettered. Payloads that do
    not parse are dead-lettered straight away.
    """

    def __init__(
            self,
            client: RabbitMQClient,
            queue_name: str,
            model: Type[P],
            handler: JobHandler[P],
            concurrency: int,
            max_deliveries: int = 3,
            redelivery_delay: float = 5.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._logger = get_logger(f"{__name__}.{queue_name}")
        self._client = client
        self._queue_name = queue_name
        self._model = model
        self._handler = handler
        self._concurrency = concurrency
        self._max_deliveries = max_deliveries
        self._redelivery_delay = redelivery_delay

        self._semaphore = asyncio.Semaphore(concurrency)
        self._inflight: Set[asyncio.Task] = set()
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        self._channel = await self._client.open_channel(prefetch_count=self._concurrency)
        self._queue, self._consumer_tag = await self._client.consume(
            self._queue_name, self._on_message, channel=self._channel
        )
        self._logger.info(
            "Consuming '%s' with concurrency %d", self._queue_name, self._concurrency
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop taking new deliveries and wait for the running ones."""
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None

        if self._inflight:
            self._logger.info("Draining %d in-flight job(s)", len(self._inflight))
            _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            if pending:
                self._logger.warning(
                    "%d job(s) still running after %.0fs drain timeout", len(pending), timeout
                )

        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            async with self._semaphore:
                await self._process(message)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def _process(self, message: AbstractIncomingMessage) -> None:
        try:
            data = RabbitMQClient.parse_message(message)
            payload = self._model.model_validate(data)
        except ValueError:
            self._logger.exception(
                "Rejecting malformed message %s on '%s'", message.message_id, self._queue_name
            )
            await message.reject(requeue=False)
            return

        job = Job(
            id=message.message_id or "",
            queue=self._queue_name,
            data=payload,
            attempt=attempt_of(message),
        )

        try:
            await self._handler.handle(job)
        except Exception as exc:
            await self._on_failure(message, job, exc)
            return

        await message.ack()
        self._logger.info("Job %s completed (attempt %d)", job.id, job.attempt)

    async def _on_failure(
            self,
            message: AbstractIncomingMessage,
            job: Job[P],
            exc: Exception,
    ) -> None:
        if job.attempt >= self._max_deliveries:
            self._logger.error(
                "Job %s failed on final delivery %d/%d, dead-lettering: %s",
                job.id, job.attempt, self._max_deliveries, describe(exc),
            )
            await message.reject(requeue=False)
            return

        delay = backoff_delay(self._redelivery_delay, job.attempt)
        remaining = exc.remaining if isinstance(exc, PartialDeliveryError) else None
        try:
            await self._client.schedule_redelivery(
                self._queue_name, message, attempt=job.attempt + 1, delay=delay,
                payload=remaining,
            )
        except Exception:
            self._logger.exception("Could not schedule redelivery of job %s", job.id)
            await message.reject(requeue=False)
            return

        await message.ack()
        self._logger.warning(
            "Job %s failed on delivery %d/%d, redelivering in %.1fs: %s",
            job.id, job.attempt, self._max_deliveries, delay, describe(exc),
        )
