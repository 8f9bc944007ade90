"""
Tests for the Producer class in appendbatch.producer.
"""

import asyncio

import pytest

from appendbatch.config import ProducerOptions, RetryConfig
from appendbatch.exceptions import (
    AppendCancelledError,
    InternalInvariantError,
    ProducerClosedError,
    RateLimitedError,
    RecordTooLargeError,
    SeqNumMismatchError,
)
from appendbatch.models import AppendRecord, Batch
from appendbatch.producer import Producer
from appendbatch.retry import RetryingRequestExecutor
from tests.mocks.transports import FakeTransport, no_sleep


def record(index: int) -> AppendRecord:
    return AppendRecord.text(f"record-{index}")


def make_producer(transport: FakeTransport, **option_kwargs) -> Producer:
    option_kwargs.setdefault("linger_seconds", 0)
    return Producer(
        transport=transport,
        options=ProducerOptions(**option_kwargs),
        executor=RetryingRequestExecutor(config=RetryConfig(max_attempts=1), sleep=no_sleep),
    )


@pytest.mark.asyncio
async def test_each_record_gets_its_own_sequence_number():
    transport = FakeTransport()
    producer = make_producer(transport, max_batch_records=10)

    tickets = [await producer.submit(record(i)) for i in range(1000)]
    await producer.close()
    acks = [await ticket for ticket in tickets]

    assert transport.batch_sizes == [10] * 100
    assert [ack.seq_num for ack in acks] == list(range(1000))
    assert [ack.index for ack in acks[:10]] == list(range(10))
    for start in range(0, 1000, 10):
        batch_acks = {id(ack.batch_ack) for ack in acks[start : start + 10]}
        assert len(batch_acks) == 1
    assert producer.pending_count == 0


@pytest.mark.asyncio
async def test_tickets_resolve_with_batch_positions():
    transport = FakeTransport(start_seq_num=50)
    producer = make_producer(transport, max_batch_records=2)

    tickets = [await producer.submit(record(i)) for i in range(3)]
    await producer.close()

    first, second, third = [ticket.result() for ticket in tickets]
    assert (first.index, second.index, third.index) == (0, 1, 0)
    assert (first.seq_num, second.seq_num, third.seq_num) == (50, 51, 52)
    assert first.batch_ack is second.batch_ack
    assert first.batch_ack.end.seq_num == 52
    assert third.timestamp == third.batch_ack.start.timestamp


@pytest.mark.asyncio
async def test_linger_sends_partial_batch_without_close():
    transport = FakeTransport()
    producer = make_producer(transport, max_batch_records=100, linger_seconds=0.02)

    tickets = [await producer.submit(record(i)) for i in range(3)]
    acks = await asyncio.wait_for(asyncio.gather(*(t.ack() for t in tickets)), timeout=1.0)

    assert transport.batch_sizes == [3]
    assert [ack.seq_num for ack in acks] == [0, 1, 2]
    await producer.close()


@pytest.mark.asyncio
async def test_oversized_record_is_rejected_synchronously():
    transport = FakeTransport()
    producer = make_producer(transport, max_batch_bytes=16)

    ok = await producer.submit(AppendRecord(body=b"small"))
    with pytest.raises(RecordTooLargeError):
        await producer.submit(AppendRecord(body=b"x" * 17))
    assert producer.pending_count == 1
    await producer.close()

    assert (await ok).seq_num == 0
    assert transport.batch_sizes == [1]


@pytest.mark.asyncio
async def test_failed_batch_fails_only_its_records():
    transport = FakeTransport(failures={1: SeqNumMismatchError(expected_seq_num=2)})
    producer = make_producer(transport, max_batch_records=2, max_concurrent_batches=1)

    tickets = [await producer.submit(record(i)) for i in range(6)]
    with pytest.raises(SeqNumMismatchError):
        await producer.close()

    assert [tickets[i].result().seq_num for i in (0, 1)] == [0, 1]
    for i in (2, 3):
        with pytest.raises(SeqNumMismatchError):
            await tickets[i]
    assert [tickets[i].result().seq_num for i in (4, 5)] == [2, 3]


@pytest.mark.asyncio
async def test_preconditions_are_forwarded_per_batch():
    transport = FakeTransport(start_seq_num=10)
    producer = make_producer(
        transport, max_batch_records=2, fencing_token="writer-1", match_seq_num=10
    )

    for i in range(5):
        await producer.submit(record(i))
    await producer.close()

    assert [call.match_seq_num for call in transport.calls] == [10, 12, 14]
    assert {call.fencing_token for call in transport.calls} == {"writer-1"}


@pytest.mark.asyncio
async def test_retryable_failure_is_retried():
    transport = FakeTransport(failures={0: RateLimitedError()})
    producer = Producer(
        transport=transport,
        options=ProducerOptions(linger_seconds=0),
        executor=RetryingRequestExecutor(config=RetryConfig(max_attempts=3), sleep=no_sleep),
    )

    ticket = await producer.submit(record(0))
    await producer.close()

    assert (await ticket).seq_num == 0
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_cancel_resolves_every_ticket():
    transport = FakeTransport(gate=asyncio.Event())
    producer = make_producer(transport, max_batch_records=2, shutdown_grace_seconds=0.01)

    tickets = [await producer.submit(record(i)) for i in range(5)]
    await asyncio.sleep(0.01)
    await producer.cancel()

    assert len(transport.calls) == 2
    assert all(ticket.done() for ticket in tickets)
    for ticket in tickets:
        with pytest.raises(AppendCancelledError):
            await ticket
    with pytest.raises(ProducerClosedError):
        await producer.submit(record(5))


@pytest.mark.asyncio
async def test_submit_after_close_raises():
    producer = make_producer(FakeTransport())

    await producer.close()
    await producer.close()

    with pytest.raises(ProducerClosedError):
        await producer.submit(record(0))


@pytest.mark.asyncio
async def test_ledger_mismatch_fails_the_producer():
    transport = FakeTransport()
    producer = make_producer(transport, max_batch_records=10)

    ticket = await producer.submit(record(0))
    producer._accumulator._output.put_nowait(Batch(records=(record(1), record(2), record(3))))
    await asyncio.sleep(0.01)

    with pytest.raises(InternalInvariantError):
        await ticket
    with pytest.raises(ProducerClosedError):
        await producer.submit(record(4))
    with pytest.raises(InternalInvariantError):
        await producer.close()
    assert transport.calls == []


@pytest.mark.asyncio
async def test_waiter_timeout_does_not_cancel_ticket():
    gate = asyncio.Event()
    transport = FakeTransport(gate=gate)
    producer = make_producer(transport, max_batch_records=1)

    ticket = await producer.submit(record(0))
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(ticket.ack(), timeout=0.01)
    assert not ticket.done()

    gate.set()
    assert (await ticket).seq_num == 0
    await producer.close()


@pytest.mark.asyncio
async def test_async_context_manager_closes_on_exit():
    transport = FakeTransport()

    async with make_producer(transport, max_batch_records=4) as producer:
        tickets = [await producer.submit(record(i)) for i in range(6)]

    assert [ticket.result().seq_num for ticket in tickets] == list(range(6))
    assert transport.batch_sizes == [4, 2]


@pytest.mark.asyncio
async def test_async_context_manager_cancels_on_error():
    transport = FakeTransport()

    with pytest.raises(RuntimeError, match="caller failed"):
        async with make_producer(transport, max_batch_records=4) as producer:
            tickets = [await producer.submit(record(i)) for i in range(2)]
            raise RuntimeError("caller failed")

    assert transport.calls == []
    for ticket in tickets:
        assert isinstance(ticket.exception(), AppendCancelledError)


@pytest.mark.asyncio
async def test_submit_waits_while_buffer_is_full():
    gate = asyncio.Event()
    transport = FakeTransport(gate=gate)
    producer = make_producer(
        transport, max_batch_records=1, max_concurrent_batches=1, buffer_size=3
    )

    tickets = [await producer.submit(record(i)) for i in range(3)]
    blocked = asyncio.create_task(producer.submit(record(3)))
    await asyncio.sleep(0.02)

    assert not blocked.done()
    assert len(transport.calls) == 1

    gate.set()
    tickets.append(await asyncio.wait_for(blocked, timeout=1.0))
    await producer.close()

    assert [ticket.result().seq_num for ticket in tickets] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_cancel_wakes_submit_waiting_for_buffer():
    transport = FakeTransport(gate=asyncio.Event())
    producer = make_producer(
        transport, max_batch_records=1, buffer_size=2, shutdown_grace_seconds=0.01
    )

    tickets = [await producer.submit(record(i)) for i in range(2)]
    blocked = asyncio.create_task(producer.submit(record(2)))
    await asyncio.sleep(0.01)
    await producer.cancel()

    with pytest.raises(ProducerClosedError):
        await asyncio.wait_for(blocked, timeout=1.0)
    assert all(isinstance(ticket.exception(), AppendCancelledError) for ticket in tickets)


@pytest.mark.asyncio
async def test_ledger_mismatch_fails_batches_in_flight():
    gate = asyncio.Event()
    transport = FakeTransport(gate=gate)
    producer = make_producer(transport, max_batch_records=1)

    ticket = await producer.submit(record(0))
    await asyncio.sleep(0.01)
    assert len(transport.calls) == 1

    producer._accumulator._output.put_nowait(Batch(records=(record(1), record(2))))
    await asyncio.sleep(0.01)
    gate.set()

    with pytest.raises(InternalInvariantError):
        await ticket
    with pytest.raises(InternalInvariantError):
        await producer.close()
