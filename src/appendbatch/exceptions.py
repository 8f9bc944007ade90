"""
Appendbatch runtime exceptions and the transport error classifier.
"""

from __future__ import annotations


class AppendBatchError(Exception):
    """Base class for every error raised by appendbatch."""


class ConfigurationError(AppendBatchError):
    """
    Invalid option values or input that can never fit in a batch.

    Notes
    -----
    Reported synchronously to the caller; the offending record never enters
    a batch.
    """


class RecordTooLargeError(ConfigurationError):
    """A single record is larger than ``max_batch_bytes``."""

    def __init__(self, *, record_bytes: int, max_batch_bytes: int) -> None:
        super().__init__(
            f"Record size {record_bytes} bytes exceeds maximum batch size of "
            f"{max_batch_bytes} bytes"
        )
        self.record_bytes = record_bytes
        self.max_batch_bytes = max_batch_bytes


class TransportError(AppendBatchError):
    """
    Failure reported by a batch transport.

    Parameters
    ----------
    message : str
        Human readable description.
    status_code : int | None, optional
        HTTP-equivalent status code, if the failure came from a response.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether the executor may try the operation again."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500

    @property
    def side_effect_free(self) -> bool:
        """Whether the server is known not to have applied the request."""
        return False


class NotFoundError(TransportError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message, status_code=404)


class AuthenticationError(TransportError):
    def __init__(self, message: str = "Authentication failed", *, status_code: int = 401) -> None:
        super().__init__(message, status_code=status_code)


class RateLimitedError(TransportError):
    """
    The server refused the request because of rate limiting.

    Parameters
    ----------
    retry_after : float | None, optional
        Seconds the server asked us to wait before retrying.
    """

    def __init__(self, *, retry_after: float | None = None) -> None:
        super().__init__("Rate limit exceeded", status_code=429)
        self.retry_after = retry_after

    @property
    def side_effect_free(self) -> bool:
        return True


class ServerError(TransportError):
    def __init__(self, message: str, *, status_code: int = 500) -> None:
        super().__init__(message, status_code=status_code)


class ConnectionFailedError(TransportError):
    """
    The transport could not complete the exchange with the server.

    Parameters
    ----------
    message : str
        Human readable description.
    request_sent : bool, optional
        ``False`` when the connection failed before any byte of the request
        left the client.
    """

    def __init__(self, message: str, *, request_sent: bool = True) -> None:
        super().__init__(message)
        self.request_sent = request_sent

    @property
    def retryable(self) -> bool:
        return True

    @property
    def side_effect_free(self) -> bool:
        return not self.request_sent


class RequestTimeoutError(ConnectionFailedError):
    """The request timed out after it may already have been applied."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Request timed out after {timeout_seconds}s", request_sent=True)
        self.timeout_seconds = timeout_seconds


class ConditionFailedError(TransportError):
    """An append precondition (fencing token or match sequence) was false."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=412)

    @property
    def retryable(self) -> bool:
        return False


class FencingTokenMismatchError(ConditionFailedError):
    def __init__(self, *, expected_token: str | None = None) -> None:
        super().__init__(f"Fencing token mismatch (current token: {expected_token!r})")
        self.expected_token = expected_token


class SeqNumMismatchError(ConditionFailedError):
    def __init__(self, *, expected_seq_num: int | None = None) -> None:
        super().__init__(f"Sequence number mismatch (stream tail: {expected_seq_num})")
        self.expected_seq_num = expected_seq_num


class AppendCancelledError(AppendBatchError):
    """The record was still unresolved when the pipeline was cancelled."""


class InternalInvariantError(AppendBatchError):
    """The ledger no longer matches the batches it must acknowledge."""


class ProducerClosedError(AppendBatchError):
    """The producer or session is closed, or closed with pending records."""


def is_retryable_error(*, error: BaseException) -> bool:
    """
    Classify an exception raised by a transport call.

    Parameters
    ----------
    error : BaseException
        Exception raised by one attempt.

    Returns
    -------
    bool
        ``True`` for rate limiting, 5xx responses and connectivity failures.
    """
    if isinstance(error, TransportError):
        return error.retryable
    return False
