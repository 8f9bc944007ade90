"""
Records, batches and acknowledgments exchanged by the append pipeline.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict

Header = tuple[bytes, bytes]

FENCE_COMMAND = b"fence"
TRIM_COMMAND = b"trim"


@dataclass(frozen=True)
class AppendRecord:
    """
    A record to be appended to a stream.

    Parameters
    ----------
    body : bytes
        Record body.
    headers : tuple[tuple[bytes, bytes], ...], optional
        Ordered ``(name, value)`` header pairs.
    timestamp : int | None, optional
        Milliseconds since the Unix epoch, if the caller assigns one.
    """

    body: bytes
    headers: tuple[Header, ...] = ()
    timestamp: int | None = None

    @classmethod
    def text(
        cls,
        body: str,
        headers: t.Iterable[tuple[str, str]] | None = None,
        timestamp: int | None = None,
    ) -> AppendRecord:
        """
        Build a record from UTF-8 text.

        Parameters
        ----------
        body : str
            Record body.
        headers : typing.Iterable[tuple[str, str]] | None, optional
            Header pairs as text.
        timestamp : int | None, optional
            Milliseconds since the Unix epoch.

        Returns
        -------
        AppendRecord
            Encoded record.
        """
        return cls(
            body=body.encode("utf-8"),
            headers=tuple(
                (name.encode("utf-8"), value.encode("utf-8")) for name, value in headers or ()
            ),
            timestamp=timestamp,
        )

    @classmethod
    def fence(cls, fencing_token: str, timestamp: int | None = None) -> AppendRecord:
        """Command record that sets the stream fencing token."""
        return cls(
            body=fencing_token.encode("utf-8"),
            headers=((b"", FENCE_COMMAND),),
            timestamp=timestamp,
        )

    @classmethod
    def trim(cls, seq_num: int, timestamp: int | None = None) -> AppendRecord:
        """Command record that trims every record before ``seq_num``."""
        return cls(
            body=seq_num.to_bytes(length=8, byteorder="big", signed=False),
            headers=((b"", TRIM_COMMAND),),
            timestamp=timestamp,
        )

    @property
    def metered_bytes(self) -> int:
        """Estimated size: body length plus header name and value lengths."""
        return len(self.body) + sum(len(name) + len(value) for name, value in self.headers)


@dataclass(frozen=True)
class Batch:
    """
    An ordered group of records emitted by the accumulator.

    Parameters
    ----------
    records : tuple[AppendRecord, ...]
        Records in submission order.
    fencing_token : str | None
        Fencing token, identical for every batch of one accumulator.
    match_seq_num : int | None
        Expected stream tail for this batch, if configured.
    metered_bytes : int
        Sum of ``metered_bytes`` over ``records``.
    """

    records: tuple[AppendRecord, ...]
    fencing_token: str | None = None
    match_seq_num: int | None = None
    metered_bytes: int = field(default=0)

    def __len__(self) -> int:
        return len(self.records)


class StreamPosition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    seq_num: int
    timestamp: int = 0


class AppendAck(BaseModel):
    """
    Transport acknowledgment for one batch.

    ``end.seq_num`` is exclusive; ``tail`` is the next position to be assigned.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    start: StreamPosition
    end: StreamPosition
    tail: StreamPosition


@dataclass(frozen=True)
class IndexedAppendAck:
    """
    Acknowledgment of one record, positioned inside its batch.

    Parameters
    ----------
    index : int
        Offset of the record within its batch.
    batch_ack : AppendAck
        Acknowledgment shared by every record of the batch.
    """

    index: int
    batch_ack: AppendAck

    @property
    def seq_num(self) -> int:
        return self.batch_ack.start.seq_num + self.index

    @property
    def timestamp(self) -> int:
        return self.batch_ack.start.timestamp


@dataclass(frozen=True)
class AppendReceipt:
    """Receipt for a record appended through the per-record session path."""

    seq_num: int
    timestamp: int
