import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from appendbatch.config import AppendRetryPolicy, ClientSettings, ProducerOptions, RetryConfig
from appendbatch.exceptions import ConfigurationError
from appendbatch.logging import logging_context, setup_logging
from appendbatch.models import AppendRecord, IndexedAppendAck
from appendbatch.producer import Producer
from appendbatch.transport import BatchTransport, HttpBatchTransport

app = typer.Typer(no_args_is_help=True)

AppendOutcome = IndexedAppendAck | BaseException


def build_transport(settings: ClientSettings) -> BatchTransport:
    return HttpBatchTransport(settings.records_url, access_token=settings.access_token)


def read_records(path: Path | None) -> list[AppendRecord]:
    """Read one text record per non-empty line of ``path``, or of stdin."""
    if path is None or path.as_posix() == "-":
        lines = sys.stdin.read().splitlines()
    else:
        lines = path.read_text(encoding="utf-8").splitlines()
    return [AppendRecord.text(line) for line in lines if line.strip()]


async def append_records(
    transport: BatchTransport,
    records: list[AppendRecord],
    options: ProducerOptions,
) -> tuple[list[AppendOutcome], BaseException | None]:
    """
    Append records through a producer and collect one outcome per record.

    Returns
    -------
    tuple[list[AppendOutcome], BaseException | None]
        Per-record acknowledgment or error, and the error raised by ``close()``.
    """
    producer = Producer(transport=transport, options=options)
    close_error: BaseException | None = None
    try:
        try:
            tickets = [await producer.submit(record) for record in records]
        except Exception:
            await producer.cancel()
            raise
        try:
            await producer.close()
        except Exception as error:
            close_error = error
    finally:
        aclose = getattr(transport, "aclose", None)
        if aclose is not None:
            await aclose()

    outcomes: list[AppendOutcome] = []
    for ticket in tickets:
        error = ticket.exception()
        outcomes.append(error if error is not None else ticket.result())
    return outcomes, close_error


def print_summary(outcomes: list[AppendOutcome], console: Console) -> None:
    acks = [outcome for outcome in outcomes if isinstance(outcome, IndexedAppendAck)]
    failures = [outcome for outcome in outcomes if not isinstance(outcome, IndexedAppendAck)]

    table = Table(title="Append summary")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Records", str(len(outcomes)))
    table.add_row("Acknowledged", f"[green]{len(acks)}[/green]")
    table.add_row("Failed", f"[red]{len(failures)}[/red]" if failures else "0")
    if acks:
        table.add_row("First seq num", str(min(ack.seq_num for ack in acks)))
        table.add_row("Last seq num", str(max(ack.seq_num for ack in acks)))
        table.add_row("Tail", str(max(ack.batch_ack.tail.seq_num for ack in acks)))
    if failures:
        table.add_row("First error", f"{type(failures[0]).__name__}: {failures[0]}")
    console.print(table)


@app.command(name="append")
def append(
    file: Annotated[
        Path | None,
        typer.Argument(help="File with one record per line. Reads stdin when omitted or '-'."),
    ] = None,
    records_url: Annotated[
        str | None,
        typer.Option("--records-url", help="Stream records endpoint", rich_help_panel="Connection"),
    ] = None,
    access_token: Annotated[
        str | None,
        typer.Option("--access-token", help="Bearer token", rich_help_panel="Connection"),
    ] = None,
    linger_seconds: Annotated[
        float, typer.Option("--linger-seconds", rich_help_panel="Batching")
    ] = 0.005,
    max_batch_records: Annotated[
        int, typer.Option("--max-batch-records", rich_help_panel="Batching")
    ] = 1000,
    max_batch_bytes: Annotated[
        int, typer.Option("--max-batch-bytes", rich_help_panel="Batching")
    ] = 1024 * 1024,
    fencing_token: Annotated[
        str | None, typer.Option("--fencing-token", rich_help_panel="Preconditions")
    ] = None,
    match_seq_num: Annotated[
        int | None, typer.Option("--match-seq-num", rich_help_panel="Preconditions")
    ] = None,
    max_concurrent_batches: Annotated[
        int, typer.Option("--max-concurrent-batches", rich_help_panel="Pipelining")
    ] = 4,
    buffer_size: Annotated[
        int,
        typer.Option(
            "--buffer-size",
            help="Records accepted before submission waits for acknowledgments",
            rich_help_panel="Pipelining",
        ),
    ] = 10_000,
    max_attempts: Annotated[int, typer.Option("--max-attempts", rich_help_panel="Retry")] = 3,
    retry_policy: Annotated[
        AppendRetryPolicy, typer.Option("--retry-policy", rich_help_panel="Retry")
    ] = AppendRetryPolicy.ALL,
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Log pipeline events")] = False,
    log_json: Annotated[bool, typer.Option("--log-json", help="Log events as JSON lines")] = False,
):
    """Append newline-delimited records to a stream."""
    if verbose or log_json:
        setup_logging(level=logging.DEBUG if verbose else logging.INFO, json_output=log_json)
    console = Console()
    try:
        settings = ClientSettings.from_env(access_token=access_token, records_url=records_url)
        options = ProducerOptions(
            linger_seconds=linger_seconds,
            max_batch_records=max_batch_records,
            max_batch_bytes=max_batch_bytes,
            fencing_token=fencing_token,
            match_seq_num=match_seq_num,
            max_concurrent_batches=max_concurrent_batches,
            buffer_size=buffer_size,
            retry=RetryConfig(max_attempts=max_attempts, append_retry_policy=retry_policy),
        )
    except ConfigurationError as error:
        console.print(f"[red]Configuration error:[/red] {error}")
        raise typer.Exit(code=2) from error

    records = read_records(path=file)
    if not records:
        console.print("[yellow]No records to append[/yellow]")
        return

    with logging_context(command="append", records_url=settings.records_url):
        try:
            outcomes, close_error = asyncio.run(
                append_records(
                    transport=build_transport(settings=settings),
                    records=records,
                    options=options,
                )
            )
        except ConfigurationError as error:
            console.print(f"[red]Rejected record:[/red] {error}")
            raise typer.Exit(code=2) from error

    print_summary(outcomes=outcomes, console=console)
    if close_error is not None:
        raise typer.Exit(code=1)


@app.callback()
def main() -> None:
    """Batch and append records to a stream."""
