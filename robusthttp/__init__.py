'''
**robusthttp**
---------

Uploads and downloads over HTTP that survive transient failures: every
attempt runs on a shared pool with its own deadline, 5xx responses and
network errors are retried with exponential backoff, and anything a retry
cannot fix fails straight away. Built on httpx.
'''
from robusthttp._client import (
    LoggerSink,
    LogSink,
    RobustHTTPClient,
    describe_error,
)
from robusthttp._errors import (
    AttemptTimeoutError,
    FatalProtocolError,
    RetryableStatusError,
    StatusError,
    TransferError,
    TransportError,
)
from robusthttp._policy import Attempt, Outcome, TransferPolicy, classify_status
from robusthttp._pool import HttpOptions, TransferPool, default_pool
from robusthttp._sanitize import URLRejectedError, sanitize
from robusthttp._transport import HttpTransport
from robusthttp._version import __version__

__all__ = [
    'RobustHTTPClient',
    'LoggerSink',
    'LogSink',
    'describe_error',
    'TransferPolicy',
    'Attempt',
    'Outcome',
    'classify_status',
    'HttpOptions',
    'TransferPool',
    'default_pool',
    'HttpTransport',
    'sanitize',
    'URLRejectedError',
    'TransferError',
    'StatusError',
    'FatalProtocolError',
    'RetryableStatusError',
    'TransportError',
    'AttemptTimeoutError',
    '__version__',
]
