import asyncio
import typing as t
from dataclasses import dataclass

from appendbatch.models import AppendAck, AppendRecord, StreamPosition


@dataclass
class SentBatch:
    """A call received by ``FakeTransport``."""

    records: list[AppendRecord]
    fencing_token: str | None
    match_seq_num: int | None


class FakeTransport:
    """
    In-memory stream that assigns sequence numbers in call order.

    Parameters
    ----------
    start_seq_num : int, optional
        Tail of the stream before the first append.
    failures : dict[int, Exception] | None, optional
        Error raised by the call with that index (0-based). Failed calls do
        not advance the tail.
    delays : dict[int, float] | None, optional
        Seconds the call with that index waits before acknowledging.
    gate : asyncio.Event | None, optional
        When set, every call waits for the event before acknowledging.
    """

    def __init__(
        self,
        *,
        start_seq_num: int = 0,
        failures: dict[int, Exception] | None = None,
        delays: dict[int, float] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.calls: list[SentBatch] = []
        self.completed: list[int] = []
        self.max_inflight = 0
        self._inflight = 0
        self._tail = start_seq_num
        self._failures = failures or {}
        self._delays = delays or {}
        self._gate = gate

    async def send_batch(
        self,
        records: t.Sequence[AppendRecord],
        *,
        fencing_token: str | None = None,
        match_seq_num: int | None = None,
    ) -> AppendAck:
        call_index = len(self.calls)
        self.calls.append(
            SentBatch(
                records=list(records),
                fencing_token=fencing_token,
                match_seq_num=match_seq_num,
            )
        )
        error = self._failures.get(call_index)
        if error is not None:
            raise error

        start = self._tail
        self._tail += len(records)
        self._inflight += 1
        self.max_inflight = max(self.max_inflight, self._inflight)
        try:
            delay = self._delays.get(call_index)
            if delay:
                await asyncio.sleep(delay)
            if self._gate is not None:
                await self._gate.wait()
        finally:
            self._inflight -= 1

        self.completed.append(call_index)
        return AppendAck(
            start=StreamPosition(seq_num=start, timestamp=1_000 + start),
            end=StreamPosition(seq_num=self._tail, timestamp=1_000 + self._tail),
            tail=StreamPosition(seq_num=self._tail, timestamp=1_000 + self._tail),
        )

    @property
    def batch_sizes(self) -> list[int]:
        return [len(call.records) for call in self.calls]


async def no_sleep(delay: float) -> None:
    """Stand-in for ``asyncio.sleep`` that returns immediately."""
