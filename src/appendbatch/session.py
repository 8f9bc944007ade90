"""
Append session with bounded buffering, batch collection and pipelined sends.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass

import structlog

from appendbatch.config import AppendSessionOptions
from appendbatch.exceptions import AppendCancelledError, ProducerClosedError, RequestTimeoutError
from appendbatch.models import AppendAck, AppendReceipt, AppendRecord, Batch
from appendbatch.retry import RetryingRequestExecutor
from appendbatch.transport import BatchTransport

log = structlog.get_logger(__name__)

_END_OF_INPUT = object()


@dataclass
class _PendingAppend:
    """A record waiting in the session buffer."""

    record: AppendRecord
    future: asyncio.Future[AppendReceipt]


class AppendSession:
    """
    Collect records into batches and keep up to ``max_concurrent_batches``
    sends in flight.

    Records enter through ``append()`` and are collected by a dispatch loop:
    up to ``batch_size`` records within ``batch_timeout_seconds``. Pre-formed
    batches enter through ``dispatch()``. Both paths share the same pipeline
    permits, so at most ``max_concurrent_batches`` sends run at once. Sends
    complete independently: batch ``N + 1`` may be acknowledged before batch
    ``N``.

    Notes
    -----
    A failed send only fails the records of that batch.
    """

    def __init__(
        self,
        transport: BatchTransport,
        options: AppendSessionOptions | None = None,
        executor: RetryingRequestExecutor | None = None,
    ) -> None:
        """
        Initialize the session.

        Parameters
        ----------
        transport : BatchTransport
            Transport used to append batches.
        options : AppendSessionOptions | None, optional
            Buffer, batching and pipelining limits.
        executor : RetryingRequestExecutor | None, optional
            Retry executor wrapping every transport call.
        """
        self._transport = transport
        self._options = options or AppendSessionOptions()
        self._executor = executor or RetryingRequestExecutor()

        self._queue: asyncio.Queue[t.Any] = asyncio.Queue(maxsize=self._options.buffer_size)
        self._permits = asyncio.Semaphore(value=self._options.max_concurrent_batches)
        self._writer_task: asyncio.Task[None] | None = None
        self._send_tasks: set[asyncio.Task[t.Any]] = set()
        self._collecting: list[_PendingAppend] = []

        self._input_closed = False
        self._closed = False
        self._total_appended = 0
        self._total_sent = 0

        log.debug(
            event="Initialized AppendSession",
            batch_size=self._options.batch_size,
            batch_timeout_seconds=self._options.batch_timeout_seconds,
            max_concurrent_batches=self._options.max_concurrent_batches,
            buffer_size=self._options.buffer_size,
        )

    @property
    def total_appended(self) -> int:
        """Records queued through ``append()``."""
        return self._total_appended

    @property
    def total_sent(self) -> int:
        """Records acknowledged by the transport."""
        return self._total_sent

    @property
    def inflight_batches(self) -> int:
        return len(self._send_tasks)

    def _ensure_writer(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(
                coro=self._run_writer_loop(),
                name="append_session_writer",
            )

    async def append(self, record: AppendRecord) -> asyncio.Future[AppendReceipt]:
        """
        Queue a record and return the future of its receipt.

        Suspends while the buffer is full.

        Parameters
        ----------
        record : AppendRecord
            Record to append.

        Returns
        -------
        asyncio.Future[AppendReceipt]
            Resolved once the record's batch is acknowledged or fails.

        Raises
        ------
        ProducerClosedError
            If the session no longer accepts input.
        """
        if self._input_closed:
            raise ProducerClosedError("Cannot append: session is closed")
        self._ensure_writer()

        future: asyncio.Future[AppendReceipt] = asyncio.get_running_loop().create_future()
        await self._queue.put(_PendingAppend(record=record, future=future))
        self._total_appended += 1
        return future

    async def dispatch(self, batch: Batch) -> asyncio.Task[AppendAck]:
        """
        Send a pre-formed batch once a pipeline permit is available.

        Parameters
        ----------
        batch : Batch
            Batch to send; its fencing token and match sequence number are
            forwarded to the transport.

        Returns
        -------
        asyncio.Task[AppendAck]
            Task resolving with the batch acknowledgment.

        Raises
        ------
        ProducerClosedError
            If the session is closed.
        """
        if self._closed:
            raise ProducerClosedError("Cannot dispatch: session is closed")
        await self._permits.acquire()
        task = asyncio.create_task(
            coro=self._send_batch(batch=batch),
            name=f"append_session_dispatch_{len(batch)}",
        )
        self._track(task=task)
        return task

    def _track(self, *, task: asyncio.Task[t.Any]) -> None:
        self._send_tasks.add(task)
        task.add_done_callback(self._on_send_task_done)

    def _on_send_task_done(self, task: asyncio.Task[t.Any]) -> None:
        """
        Release the permit of a finished send.

        Parameters
        ----------
        task : asyncio.Task[typing.Any]
            Completed send task.
        """
        self._send_tasks.discard(task)
        self._permits.release()
        if not task.cancelled():
            # Retrieved so an unobserved failure is not reported at GC time.
            _ = task.exception()

    async def _transmit(
        self,
        records: t.Sequence[AppendRecord],
        *,
        fencing_token: str | None,
        match_seq_num: int | None,
    ) -> AppendAck:
        timeout = self._options.request_timeout_seconds

        async def attempt() -> AppendAck:
            try:
                async with asyncio.timeout(timeout):
                    return await self._transport.send_batch(
                        records,
                        fencing_token=fencing_token,
                        match_seq_num=match_seq_num,
                    )
            except TimeoutError as error:
                raise RequestTimeoutError(timeout) from error

        return await self._executor.execute_with_retry(attempt, is_append=True)

    async def _send_batch(self, *, batch: Batch) -> AppendAck:
        log.debug(
            event="Sending batch",
            record_count=len(batch),
            metered_bytes=batch.metered_bytes,
            match_seq_num=batch.match_seq_num,
        )
        try:
            ack = await self._transmit(
                batch.records,
                fencing_token=batch.fencing_token,
                match_seq_num=batch.match_seq_num,
            )
        except Exception as error:
            log.error(
                event="Batch send failed",
                record_count=len(batch),
                error=str(object=error),
                error_type=type(error).__name__,
            )
            raise
        self._total_sent += len(batch)
        return ack

    async def _send_pending(self, *, batch: list[_PendingAppend]) -> None:
        """
        Send records collected by the writer loop and resolve their futures.

        Parameters
        ----------
        batch : list[_PendingAppend]
            Collected records, in queue order.
        """
        try:
            ack = await self._transmit(
                [pending.record for pending in batch],
                fencing_token=None,
                match_seq_num=None,
            )
        except asyncio.CancelledError:
            error = AppendCancelledError("Append session shut down before the batch completed")
            for pending in batch:
                if not pending.future.done():
                    pending.future.set_exception(error)
            raise
        except Exception as error:
            log.error(
                event="Batch send failed",
                record_count=len(batch),
                error=str(object=error),
                error_type=type(error).__name__,
            )
            for pending in batch:
                if not pending.future.done():
                    pending.future.set_exception(error)
            return

        for index, pending in enumerate(batch):
            if not pending.future.done():
                pending.future.set_result(
                    AppendReceipt(
                        seq_num=ack.start.seq_num + index,
                        timestamp=ack.start.timestamp,
                    )
                )
        self._total_sent += len(batch)
        log.debug(
            event="Batch acknowledged",
            record_count=len(batch),
            start_seq_num=ack.start.seq_num,
        )

    async def _collect_batch(self) -> bool:
        """
        Collect up to ``batch_size`` records into ``_collecting``.

        Returns
        -------
        bool
            ``False`` once the end-of-input marker was read.
        """
        first = await self._queue.get()
        if first is _END_OF_INPUT:
            return False
        self._collecting.append(first)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._options.batch_timeout_seconds
        while len(self._collecting) < self._options.batch_size:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except TimeoutError:
                    break
            if item is _END_OF_INPUT:
                return False
            self._collecting.append(item)
        return True

    async def _run_writer_loop(self) -> None:
        more_input = True
        while more_input:
            more_input = await self._collect_batch()
            if not self._collecting:
                continue

            await self._permits.acquire()
            batch, self._collecting = self._collecting, []
            task = asyncio.create_task(
                coro=self._send_pending(batch=batch),
                name=f"append_session_send_{len(batch)}",
            )
            self._track(task=task)
        log.debug(event="AppendSession writer loop finished")

    async def flush(self) -> None:
        """
        Stop accepting records and wait until every queued record and every
        in-flight send has finished.
        """
        if self._closed:
            return
        if not self._input_closed:
            self._input_closed = True
            if self._writer_task is not None:
                await self._queue.put(_END_OF_INPUT)
        if self._writer_task is not None:
            await self._writer_task
        while self._send_tasks:
            await asyncio.wait(set(self._send_tasks))
        log.debug(event="AppendSession flushed", total_sent=self._total_sent)

    async def aclose(self) -> None:
        """
        Shut the session down.

        Cancels the writer loop, waits up to ``shutdown_grace_seconds`` for
        in-flight sends, cancels the rest and fails every record that never
        reached a send with ``AppendCancelledError``.
        """
        if self._closed:
            return
        self._closed = True
        self._input_closed = True

        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                log.debug(event="Writer loop cancelled during close")

        if self._send_tasks:
            _, still_running = await asyncio.wait(
                set(self._send_tasks), timeout=self._options.shutdown_grace_seconds
            )
            for task in still_running:
                task.cancel()
            if still_running:
                log.warning(event="Cancelled in-flight sends", count=len(still_running))
                await asyncio.wait(still_running)

        error = AppendCancelledError("Append session closed before the record was sent")
        unsent = self._collecting
        self._collecting = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _END_OF_INPUT:
                unsent.append(item)
        for pending in unsent:
            if not pending.future.done():
                pending.future.set_exception(error)
        log.debug(event="AppendSession closed", cancelled_count=len(unsent))

    async def __aenter__(self) -> AppendSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        if exc_type is None:
            await self.flush()
        await self.aclose()
