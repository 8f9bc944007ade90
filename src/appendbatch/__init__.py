from .accumulator import BatchAccumulator as BatchAccumulator
from .config import AppendRetryPolicy as AppendRetryPolicy
from .config import AppendSessionOptions as AppendSessionOptions
from .config import BatchOptions as BatchOptions
from .config import ProducerOptions as ProducerOptions
from .config import RetryConfig as RetryConfig
from .models import AppendAck as AppendAck
from .models import AppendRecord as AppendRecord
from .models import Batch as Batch
from .models import IndexedAppendAck as IndexedAppendAck
from .producer import Producer as Producer
from .producer import RecordSubmitTicket as RecordSubmitTicket
from .retry import RetryingRequestExecutor as RetryingRequestExecutor
from .session import AppendSession as AppendSession
from .transport import HttpBatchTransport as HttpBatchTransport

__all__ = [
    "AppendAck",
    "AppendRecord",
    "AppendRetryPolicy",
    "AppendSession",
    "AppendSessionOptions",
    "Batch",
    "BatchAccumulator",
    "BatchOptions",
    "HttpBatchTransport",
    "IndexedAppendAck",
    "Producer",
    "ProducerOptions",
    "RecordSubmitTicket",
    "RetryConfig",
    "RetryingRequestExecutor",
]
