"""
Batch transport contract and the httpx implementation of it.
"""

from __future__ import annotations

import base64
import typing as t

import httpx
import pydantic
import structlog

from appendbatch.exceptions import (
    AuthenticationError,
    ConnectionFailedError,
    FencingTokenMismatchError,
    NotFoundError,
    RateLimitedError,
    SeqNumMismatchError,
    ServerError,
    TransportError,
)
from appendbatch.models import AppendAck, AppendRecord

log = structlog.get_logger(__name__)


class BatchTransport(t.Protocol):
    """
    Anything able to append one batch of records and acknowledge it.

    Implementations raise a ``TransportError`` subclass on failure so the
    retry executor can classify it.
    """

    async def send_batch(
        self,
        records: t.Sequence[AppendRecord],
        *,
        fencing_token: str | None = None,
        match_seq_num: int | None = None,
    ) -> AppendAck: ...


def _b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def encode_append_input(
    records: t.Sequence[AppendRecord],
    *,
    fencing_token: str | None = None,
    match_seq_num: int | None = None,
) -> dict[str, t.Any]:
    """
    Build the JSON body of an append request.

    Parameters
    ----------
    records : typing.Sequence[AppendRecord]
        Records of the batch.
    fencing_token : str | None, optional
        Fencing token to enforce.
    match_seq_num : int | None, optional
        Expected stream tail.

    Returns
    -------
    dict[str, typing.Any]
        JSON-serializable payload. Bodies and headers are base64 encoded.
    """
    encoded_records: list[dict[str, t.Any]] = []
    for record in records:
        item: dict[str, t.Any] = {"body": _b64(record.body)}
        if record.headers:
            item["headers"] = [[_b64(name), _b64(value)] for name, value in record.headers]
        if record.timestamp is not None:
            item["timestamp"] = record.timestamp
        encoded_records.append(item)

    payload: dict[str, t.Any] = {"records": encoded_records}
    if fencing_token is not None:
        payload["fencing_token"] = fencing_token
    if match_seq_num is not None:
        payload["match_seq_num"] = match_seq_num
    return payload


def _parse_retry_after(*, response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_append_response(*, response: httpx.Response) -> None:
    """
    Map an unsuccessful append response onto the transport error taxonomy.

    Parameters
    ----------
    response : httpx.Response
        Response to inspect.

    Raises
    ------
    TransportError
        Subclass matching the status code, for any non-2xx response.
    """
    if response.is_success:
        return

    status_code = response.status_code
    text = response.text
    if status_code == 404:
        raise NotFoundError(f"Not found: {text}")
    if status_code in (401, 403):
        raise AuthenticationError(
            "Access denied" if status_code == 403 else "Authentication failed",
            status_code=status_code,
        )
    if status_code == 412:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if isinstance(payload, dict) and "fencing_token_mismatch" in payload:
            raise FencingTokenMismatchError(expected_token=payload["fencing_token_mismatch"])
        expected = payload.get("seq_num_mismatch") if isinstance(payload, dict) else None
        raise SeqNumMismatchError(expected_seq_num=expected)
    if status_code == 429:
        raise RateLimitedError(retry_after=_parse_retry_after(response=response))
    if status_code >= 500:
        raise ServerError(f"HTTP {status_code}: {text}", status_code=status_code)
    raise TransportError(f"HTTP {status_code}: {text}", status_code=status_code)


class HttpBatchTransport:
    """
    Append batches with ``POST <records_url>``.

    Parameters
    ----------
    records_url : str
        Absolute URL of the stream records endpoint.
    access_token : str | None, optional
        Bearer token sent with every request.
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Factory for the shared client, replaceable in tests.
    """

    def __init__(
        self,
        records_url: str,
        *,
        access_token: str | None = None,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._records_url = records_url
        self._headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=30.0))
        self._client: httpx.AsyncClient | None = None

    @property
    def records_url(self) -> str:
        return self._records_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def send_batch(
        self,
        records: t.Sequence[AppendRecord],
        *,
        fencing_token: str | None = None,
        match_seq_num: int | None = None,
    ) -> AppendAck:
        """
        Append one batch and return its acknowledgment.

        Parameters
        ----------
        records : typing.Sequence[AppendRecord]
            Records of the batch, in order.
        fencing_token : str | None, optional
            Fencing token to enforce.
        match_seq_num : int | None, optional
            Expected stream tail.

        Returns
        -------
        AppendAck
            Positions assigned by the server.
        """
        payload = encode_append_input(
            records, fencing_token=fencing_token, match_seq_num=match_seq_num
        )
        try:
            response = await self._get_client().post(
                url=self._records_url,
                json=payload,
                headers=self._headers,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as error:
            raise ConnectionFailedError(str(object=error), request_sent=False) from error
        except httpx.TransportError as error:
            raise ConnectionFailedError(str(object=error), request_sent=True) from error

        raise_for_append_response(response=response)
        try:
            ack = AppendAck.model_validate(response.json())
        except (ValueError, pydantic.ValidationError) as error:
            raise TransportError(
                f"Malformed append acknowledgment: {error}",
                status_code=response.status_code,
            ) from error

        log.debug(
            event="Batch appended",
            record_count=len(records),
            start_seq_num=ack.start.seq_num,
            end_seq_num=ack.end.seq_num,
            tail_seq_num=ack.tail.seq_num,
        )
        return ack

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
