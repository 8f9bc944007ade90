"""
Option models for the accumulator, the append session, retries and the producer.
"""

from __future__ import annotations

import os
from enum import StrEnum

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

from appendbatch.exceptions import ConfigurationError

MAX_BATCH_RECORDS = 1000
MAX_BATCH_BYTES = 1024 * 1024

ACCESS_TOKEN_ENV_VAR = "APPENDBATCH_ACCESS_TOKEN"
RECORDS_URL_ENV_VAR = "APPENDBATCH_RECORDS_URL"


class AppendRetryPolicy(StrEnum):
    """
    Which append failures may be retried automatically.

    ``ALL`` retries every retryable failure. ``NO_SIDE_EFFECTS`` only retries
    failures where the server is known not to have applied the append, so an
    ambiguous failure surfaces instead of risking a duplicate.
    """

    ALL = "all"
    NO_SIDE_EFFECTS = "no_side_effects"


class RetryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    min_delay_seconds: float = 0.1
    max_delay_seconds: float = 1.0
    append_retry_policy: AppendRetryPolicy = AppendRetryPolicy.ALL

    @model_validator(mode="after")
    def _check_ranges(self) -> RetryConfig:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.min_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigurationError("retry delays cannot be negative")
        if self.max_delay_seconds < self.min_delay_seconds:
            raise ConfigurationError("max_delay_seconds must be >= min_delay_seconds")
        return self


class BatchOptions(BaseModel):
    """
    Batching limits for ``BatchAccumulator``.

    Attributes
    ----------
    linger_seconds : float
        Longest time an open, non-full batch waits before it is flushed.
        ``0`` disables the timer.
    max_batch_records : int
        Record count limit, between 1 and 1000.
    max_batch_bytes : int
        Metered byte limit, between 1 and 1 MiB.
    fencing_token : str | None
        Token attached unchanged to every batch.
    match_seq_num : int | None
        Expected tail for the first batch; advanced by each batch's size.
    """

    model_config = ConfigDict(frozen=True)

    linger_seconds: float = 0.005
    max_batch_records: int = MAX_BATCH_RECORDS
    max_batch_bytes: int = MAX_BATCH_BYTES
    fencing_token: str | None = None
    match_seq_num: int | None = None

    @model_validator(mode="after")
    def _check_ranges(self) -> BatchOptions:
        if not 1 <= self.max_batch_records <= MAX_BATCH_RECORDS:
            raise ConfigurationError(
                f"max_batch_records must be between 1 and {MAX_BATCH_RECORDS}"
            )
        if not 1 <= self.max_batch_bytes <= MAX_BATCH_BYTES:
            raise ConfigurationError("max_batch_bytes must be between 1 and 1 MiB")
        if self.linger_seconds < 0:
            raise ConfigurationError("linger_seconds cannot be negative")
        if self.match_seq_num is not None and self.match_seq_num < 0:
            raise ConfigurationError("match_seq_num cannot be negative")
        return self


class AppendSessionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_size: int = 100
    batch_timeout_seconds: float = 0.05
    max_concurrent_batches: int = 4
    buffer_size: int = 10_000
    request_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 5.0

    @model_validator(mode="after")
    def _check_ranges(self) -> AppendSessionOptions:
        if not 1 <= self.batch_size <= MAX_BATCH_RECORDS:
            raise ConfigurationError(f"batch_size must be between 1 and {MAX_BATCH_RECORDS}")
        if self.max_concurrent_batches < 1:
            raise ConfigurationError("max_concurrent_batches must be at least 1")
        if self.buffer_size < 1:
            raise ConfigurationError("buffer_size must be at least 1")
        if self.batch_timeout_seconds < 0:
            raise ConfigurationError("batch_timeout_seconds cannot be negative")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request_timeout_seconds must be positive")
        return self


class ProducerOptions(BatchOptions):
    """
    Batching limits plus the pipelining and retry settings of the producer.

    ``buffer_size`` bounds the records submitted but not yet resolved;
    ``submit()`` waits while it is reached. It cannot be lower than
    ``max_batch_records``, otherwise a batch could never fill up.
    """

    max_concurrent_batches: int = 4
    buffer_size: int = 10_000
    request_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 5.0
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @model_validator(mode="after")
    def _check_pipeline(self) -> ProducerOptions:
        if self.max_concurrent_batches < 1:
            raise ConfigurationError("max_concurrent_batches must be at least 1")
        if self.buffer_size < self.max_batch_records:
            raise ConfigurationError("buffer_size must be at least max_batch_records")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request_timeout_seconds must be positive")
        return self

    def batch_options(self) -> BatchOptions:
        return BatchOptions(
            linger_seconds=self.linger_seconds,
            max_batch_records=self.max_batch_records,
            max_batch_bytes=self.max_batch_bytes,
            fencing_token=self.fencing_token,
            match_seq_num=self.match_seq_num,
        )

    def session_options(self) -> AppendSessionOptions:
        return AppendSessionOptions(
            batch_size=self.max_batch_records,
            batch_timeout_seconds=self.linger_seconds,
            max_concurrent_batches=self.max_concurrent_batches,
            buffer_size=self.buffer_size,
            request_timeout_seconds=self.request_timeout_seconds,
            shutdown_grace_seconds=self.shutdown_grace_seconds,
        )


class ClientSettings(BaseModel):
    """Connection settings read from the environment."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    records_url: str

    @classmethod
    def from_env(
        cls,
        *,
        access_token: str | None = None,
        records_url: str | None = None,
    ) -> ClientSettings:
        """
        Read settings from the environment, loading a ``.env`` file first.

        Parameters
        ----------
        access_token : str | None, optional
            Explicit token, used instead of ``APPENDBATCH_ACCESS_TOKEN``.
        records_url : str | None, optional
            Explicit endpoint, used instead of ``APPENDBATCH_RECORDS_URL``.

        Returns
        -------
        ClientSettings
            Parsed settings.

        Raises
        ------
        ConfigurationError
            If a required variable is missing.
        """
        load_dotenv(override=False)
        values: dict[str, str] = {}
        for field_name, env_var, explicit in (
            ("access_token", ACCESS_TOKEN_ENV_VAR, access_token),
            ("records_url", RECORDS_URL_ENV_VAR, records_url),
        ):
            value = explicit or os.getenv(env_var)
            if not value:
                raise ConfigurationError(
                    f"Environment variable {env_var} is required but not set."
                )
            values[field_name] = value
        return cls(**values)
