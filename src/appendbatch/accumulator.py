"""
Group an ordered stream of records into batches bounded by record count,
metered bytes and a linger duration.
"""

from __future__ import annotations

import asyncio
import typing as t

import structlog

from appendbatch.config import BatchOptions
from appendbatch.exceptions import ProducerClosedError, RecordTooLargeError
from appendbatch.models import AppendRecord, Batch

log = structlog.get_logger(__name__)


class BatchAccumulator:
    """
    Accumulate records into batches and emit them in submission order.

    A batch is emitted when either:
    - adding the next record would exceed ``max_batch_records`` or
      ``max_batch_bytes`` (the open batch is flushed first), OR
    - the open batch reaches one of those limits, OR
    - ``linger_seconds`` elapse after the first record of the open batch, OR
    - ``flush()`` or ``complete()`` is called.

    Notes
    -----
    The open batch is only mutated while holding ``_lock``. The linger timer
    takes the same lock and only flushes the batch generation it was started
    for, so a timer firing late never flushes a newer batch early.
    """

    def __init__(self, options: BatchOptions | None = None) -> None:
        """
        Initialize the accumulator.

        Parameters
        ----------
        options : BatchOptions | None, optional
            Batching limits. Defaults to ``BatchOptions()``.
        """
        self._options = options or BatchOptions()
        self._lock = asyncio.Lock()
        self._output: asyncio.Queue[Batch | None] = asyncio.Queue()

        self._records: list[AppendRecord] = []
        self._metered_bytes = 0
        self._next_match_seq_num = self._options.match_seq_num
        self._generation = 0
        self._linger_task: asyncio.Task[None] | None = None
        self._completed = False

        log.debug(
            event="Initialized BatchAccumulator",
            linger_seconds=self._options.linger_seconds,
            max_batch_records=self._options.max_batch_records,
            max_batch_bytes=self._options.max_batch_bytes,
            fenced=self._options.fencing_token is not None,
            match_seq_num=self._options.match_seq_num,
        )

    @property
    def options(self) -> BatchOptions:
        return self._options

    @property
    def pending_records(self) -> int:
        """Number of records in the open batch."""
        return len(self._records)

    @property
    def completed(self) -> bool:
        return self._completed

    async def submit(self, record: AppendRecord) -> None:
        """
        Add a record to the open batch.

        Parameters
        ----------
        record : AppendRecord
            Record to batch.

        Raises
        ------
        RecordTooLargeError
            If the record alone exceeds ``max_batch_bytes``. No batch is touched.
        ProducerClosedError
            If ``complete()`` or ``cancel()`` was already called.
        """
        record_bytes = record.metered_bytes
        max_batch_bytes = self._options.max_batch_bytes
        if record_bytes > max_batch_bytes:
            log.error(
                event="Rejected oversized record",
                record_bytes=record_bytes,
                max_batch_bytes=max_batch_bytes,
            )
            raise RecordTooLargeError(record_bytes=record_bytes, max_batch_bytes=max_batch_bytes)

        lingers = self._options.linger_seconds > 0
        async with self._lock:
            if self._completed:
                raise ProducerClosedError("Cannot submit: accumulator is complete")

            if not self._records and lingers:
                self._start_linger_timer()

            would_exceed_records = len(self._records) + 1 > self._options.max_batch_records
            would_exceed_bytes = self._metered_bytes + record_bytes > max_batch_bytes
            if would_exceed_records or would_exceed_bytes:
                self._flush_locked(reason="limit")
                if lingers:
                    self._start_linger_timer()

            self._records.append(record)
            self._metered_bytes += record_bytes

            if (
                len(self._records) >= self._options.max_batch_records
                or self._metered_bytes >= max_batch_bytes
            ):
                self._flush_locked(reason="full")

    async def flush(self) -> None:
        """Emit the open batch now, if it holds any record."""
        async with self._lock:
            self._flush_locked(reason="explicit")

    async def complete(self) -> None:
        """
        Flush any partial batch and end the batch stream.

        Notes
        -----
        Calling ``complete()`` more than once is a no-op.
        """
        async with self._lock:
            if self._completed:
                return
            self._flush_locked(reason="complete")
            self._completed = True
            self._output.put_nowait(None)
        log.debug(event="BatchAccumulator completed")

    async def cancel(self) -> int:
        """
        Stop the linger timer, discard the open batch and end the batch stream.

        Returns
        -------
        int
            Number of discarded records.
        """
        async with self._lock:
            self._cancel_linger_timer()
            discarded = len(self._records)
            self._records = []
            self._metered_bytes = 0
            self._generation += 1
            if not self._completed:
                self._completed = True
                self._output.put_nowait(None)
        log.debug(event="BatchAccumulator cancelled", discarded_count=discarded)
        return discarded

    async def batches(self) -> t.AsyncIterator[Batch]:
        """
        Iterate over emitted batches until the stream ends.

        Yields
        ------
        Batch
            Batches in emission order.
        """
        while True:
            batch = await self._output.get()
            if batch is None:
                # Leave the end marker for any other reader.
                self._output.put_nowait(None)
                return
            yield batch

    def _flush_locked(self, *, reason: str) -> Batch | None:
        """
        Emit the open batch. Caller must hold ``_lock``.

        Parameters
        ----------
        reason : str
            Flush trigger, for logs.

        Returns
        -------
        Batch | None
            Emitted batch, or ``None`` if the open batch was empty.
        """
        self._cancel_linger_timer()
        if not self._records:
            return None

        match_seq_num = self._next_match_seq_num
        if self._next_match_seq_num is not None:
            self._next_match_seq_num += len(self._records)

        batch = Batch(
            records=tuple(self._records),
            fencing_token=self._options.fencing_token,
            match_seq_num=match_seq_num,
            metered_bytes=self._metered_bytes,
        )
        self._records = []
        self._metered_bytes = 0
        self._generation += 1
        self._output.put_nowait(batch)

        log.debug(
            event="Flushed batch",
            reason=reason,
            record_count=len(batch),
            metered_bytes=batch.metered_bytes,
            match_seq_num=match_seq_num,
        )
        return batch

    def _start_linger_timer(self) -> None:
        self._cancel_linger_timer()
        self._linger_task = asyncio.create_task(
            coro=self._linger(generation=self._generation),
            name=f"linger_timer_{self._generation}",
        )

    def _cancel_linger_timer(self) -> None:
        linger_task = self._linger_task
        self._linger_task = None
        if linger_task and not linger_task.done() and linger_task is not asyncio.current_task():
            linger_task.cancel()

    async def _linger(self, *, generation: int) -> None:
        """
        Flush the batch of ``generation`` once the linger duration elapses.

        Parameters
        ----------
        generation : int
            Batch generation the timer was started for.
        """
        await asyncio.sleep(delay=self._options.linger_seconds)
        async with self._lock:
            if generation != self._generation or not self._records:
                return
            self._flush_locked(reason="linger")
