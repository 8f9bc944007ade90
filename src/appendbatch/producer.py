"""
Per-record append semantics on top of the batch accumulator and a pipelined
append session.

Each submitted record gets a ``RecordSubmitTicket``. The producer keeps the
unresolved tickets in a FIFO ledger: the next ``k`` ledger entries always
belong to the next emitted batch of ``k`` records, so one batch
acknowledgment resolves exactly those tickets.
"""

from __future__ import annotations

import asyncio
import functools
import typing as t
from collections import deque

import structlog

from appendbatch.accumulator import BatchAccumulator
from appendbatch.config import ProducerOptions
from appendbatch.exceptions import (
    AppendCancelledError,
    InternalInvariantError,
    ProducerClosedError,
)
from appendbatch.models import AppendAck, AppendRecord, Batch, IndexedAppendAck
from appendbatch.retry import RetryingRequestExecutor
from appendbatch.session import AppendSession
from appendbatch.transport import BatchTransport

log = structlog.get_logger(__name__)

AckFuture = asyncio.Future[IndexedAppendAck]


def _resolve(future: AckFuture, ack: IndexedAppendAck) -> None:
    if not future.done():
        future.set_result(ack)


def _reject(future: AckFuture, error: BaseException) -> None:
    if future.done():
        return
    future.set_exception(error)
    # Mark as retrieved: callers that never await a ticket should not trigger
    # "exception was never retrieved" noise. Awaiting still raises.
    future.exception()


class RecordSubmitTicket:
    """
    Read-only handle on the outcome of one submitted record.

    Resolved exactly once, with an ``IndexedAppendAck`` or an error. Awaiting
    the ticket (or ``ack()``) from several places is allowed; cancelling one
    waiter does not cancel the ticket.
    """

    def __init__(self, future: AckFuture) -> None:
        self._future = future

    async def ack(self) -> IndexedAppendAck:
        """Wait until the record is durable and return its acknowledgment."""
        return await asyncio.shield(self._future)

    def __await__(self) -> t.Generator[t.Any, None, IndexedAppendAck]:
        return self.ack().__await__()

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> IndexedAppendAck:
        return self._future.result()

    def exception(self) -> BaseException | None:
        return self._future.exception()

    def cancel(self) -> bool:
        """Give up on the outcome. The record may still be appended."""
        return self._future.cancel()


class Producer:
    """
    Submit records one at a time and get one acknowledgment per record.

    Examples
    --------
    >>> async with Producer(transport, ProducerOptions(max_batch_records=100)) as producer:
    ...     ticket = await producer.submit(AppendRecord.text("hello"))
    ...     ack = await ticket.ack()
    """

    def __init__(
        self,
        transport: BatchTransport,
        options: ProducerOptions | None = None,
        *,
        executor: RetryingRequestExecutor | None = None,
    ) -> None:
        """
        Initialize the producer.

        Parameters
        ----------
        transport : BatchTransport
            Transport used to append batches.
        options : ProducerOptions | None, optional
            Batching, pipelining and retry settings.
        executor : RetryingRequestExecutor | None, optional
            Retry executor; built from ``options.retry`` when omitted.
        """
        self._options = options or ProducerOptions()
        self._accumulator = BatchAccumulator(options=self._options.batch_options())
        self._session = AppendSession(
            transport=transport,
            options=self._options.session_options(),
            executor=executor or RetryingRequestExecutor(config=self._options.retry),
        )

        self._ledger: deque[AckFuture] = deque()
        self._submit_lock = asyncio.Lock()
        self._capacity = asyncio.Semaphore(value=self._options.buffer_size)
        self._send_tasks: set[asyncio.Task[AppendAck]] = set()
        self._pump_task: asyncio.Task[None] | None = None
        self._first_error: BaseException | None = None
        self._fatal_error: BaseException | None = None
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Tickets whose records are not yet part of a dispatched batch."""
        return len(self._ledger)

    def _ensure_pump(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(coro=self._run_pump(), name="producer_pump")

    async def submit(self, record: AppendRecord) -> RecordSubmitTicket:
        """
        Submit a record for appending.

        Parameters
        ----------
        record : AppendRecord
            Record to append.

        Returns
        -------
        RecordSubmitTicket
            Ticket resolved once the record's batch is acknowledged or fails.

        Raises
        ------
        ProducerClosedError
            If the producer is closed or its pipeline failed fatally.
        RecordTooLargeError
            If the record alone exceeds ``max_batch_bytes``.

        Notes
        -----
        Suspends while ``buffer_size`` submitted records are still unresolved.
        """
        self._check_accepting()
        self._ensure_pump()

        await self._capacity.acquire()
        future: AckFuture = asyncio.get_running_loop().create_future()
        future.add_done_callback(self._release_capacity)
        try:
            self._check_accepting()
        except ProducerClosedError:
            future.cancel()
            raise

        async with self._submit_lock:
            self._ledger.append(future)
            try:
                await self._accumulator.submit(record)
            except asyncio.CancelledError:
                self._ledger.remove(future)
                future.cancel()
                raise
            except Exception as error:
                self._ledger.remove(future)
                _reject(future, error)
                raise
        return RecordSubmitTicket(future)

    def _check_accepting(self) -> None:
        if self._closed:
            raise ProducerClosedError("Cannot submit: producer is closed")
        if self._fatal_error is not None:
            raise ProducerClosedError(
                f"Cannot submit: producer has failed: {self._fatal_error}"
            ) from self._fatal_error

    def _release_capacity(self, _: AckFuture) -> None:
        self._capacity.release()

    def _take_ledger_prefix(self, *, count: int) -> list[AckFuture]:
        """
        Remove and return the ``count`` oldest ledger entries.

        Raises
        ------
        InternalInvariantError
            If fewer than ``count`` entries are waiting.
        """
        if len(self._ledger) < count:
            raise InternalInvariantError(
                f"Internal error: flushed {count} records but only "
                f"{len(self._ledger)} inflight entries"
            )
        return [self._ledger.popleft() for _ in range(count)]

    def _remember(self, *, error: BaseException) -> None:
        if self._first_error is None:
            self._first_error = error

    async def _run_pump(self) -> None:
        """Dispatch emitted batches and wire their outcome to the ledger."""
        try:
            async for batch in self._accumulator.batches():
                futures = self._take_ledger_prefix(count=len(batch))
                try:
                    send_task = await self._session.dispatch(batch)
                except asyncio.CancelledError:
                    self._fail_batch(
                        batch=batch,
                        futures=futures,
                        error=AppendCancelledError("Producer cancelled before the batch was sent"),
                    )
                    raise
                except Exception as error:
                    self._fail_batch(batch=batch, futures=futures, error=error)
                    continue
                self._send_tasks.add(send_task)
                send_task.add_done_callback(
                    functools.partial(self._on_batch_done, batch, futures)
                )
        except Exception as error:
            log.error(
                event="Producer pump failed",
                error=str(object=error),
                error_type=type(error).__name__,
                pending_count=len(self._ledger),
            )
            self._fatal_error = error
            self._remember(error=error)
            while self._ledger:
                _reject(self._ledger.popleft(), error)
            for send_task in list(self._send_tasks):
                send_task.cancel()

    def _fail_batch(self, *, batch: Batch, futures: list[AckFuture], error: BaseException) -> None:
        log.warning(
            event="Batch failed",
            record_count=len(batch),
            match_seq_num=batch.match_seq_num,
            error=str(object=error),
            error_type=type(error).__name__,
        )
        self._remember(error=error)
        for future in futures:
            _reject(future, error)

    def _on_batch_done(
        self,
        batch: Batch,
        futures: list[AckFuture],
        task: asyncio.Task[AppendAck],
    ) -> None:
        """
        Resolve the tickets of a finished batch send.

        Parameters
        ----------
        batch : Batch
            Batch that was sent.
        futures : list[AckFuture]
            Ledger entries of that batch, in record order.
        task : asyncio.Task[AppendAck]
            Finished send.
        """
        self._send_tasks.discard(task)
        if task.cancelled():
            self._fail_batch(
                batch=batch,
                futures=futures,
                error=self._fatal_error
                or AppendCancelledError("Producer cancelled before the batch completed"),
            )
            return
        error = task.exception()
        if error is not None:
            self._fail_batch(batch=batch, futures=futures, error=error)
            return

        batch_ack = task.result()
        for index, future in enumerate(futures):
            _resolve(future, IndexedAppendAck(index=index, batch_ack=batch_ack))
        log.debug(
            event="Batch acknowledged",
            record_count=len(batch),
            start_seq_num=batch_ack.start.seq_num,
            end_seq_num=batch_ack.end.seq_num,
        )

    async def close(self) -> None:
        """
        Flush, send and acknowledge every submitted record, then shut down.

        Raises
        ------
        Exception
            The first batch or pipeline error seen during the producer's life.
        """
        if self._closed:
            return
        self._closed = True
        log.debug(event="Closing producer", pending_count=len(self._ledger))

        await self._accumulator.complete()
        if self._pump_task is not None:
            await self._pump_task
        await self._session.flush()
        await self._session.aclose()

        if self._ledger:
            error = ProducerClosedError("Producer closed with pending records")
            log.warning(event="Producer closed with pending records", count=len(self._ledger))
            while self._ledger:
                _reject(self._ledger.popleft(), error)

        log.debug(event="Producer closed")
        if self._first_error is not None:
            raise self._first_error

    async def cancel(self) -> None:
        """
        Stop accepting records and shut down without waiting for the backlog.

        In-flight sends get the session's grace period. Every ticket that
        never reached a finished send resolves with ``AppendCancelledError``.
        """
        self._closed = True
        discarded = await self._accumulator.cancel()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                log.debug(event="Producer pump cancelled")
        await self._session.aclose()

        error = AppendCancelledError("Producer cancelled before the record was sent")
        cancelled = len(self._ledger)
        while self._ledger:
            _reject(self._ledger.popleft(), error)
        log.info(
            event="Producer cancelled",
            discarded_count=discarded,
            cancelled_count=cancelled,
        )

    async def __aenter__(self) -> Producer:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.cancel()
