'''
error types raised by the robusthttp client

Only the terminal error of a `connect` call ever reaches the caller;
intermediate attempt failures are reported to the log sink instead.
'''


class TransferError(Exception):
    '''
    Base class for every error raised by a transfer.
    '''


class StatusError(TransferError):
    '''
    The server answered, but not with a 2xx status.

    Parent: TransferError
    '''

    def __init__(
        self,
        message: str,
        *,
        status: int,
        reason: str = '?',
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status: int = status
        self.reason: str = reason
        self.body: str | None = body


class FatalProtocolError(StatusError):
    '''
    A 1xx, 3xx or 4xx response, or a redirect loop. Retrying cannot fix
    it, so it is raised on the attempt that saw it. A redirect loop has no
    final status and carries ``status`` 0.
    '''


class RetryableStatusError(StatusError):
    '''
    A 5xx response, presumed transient.
    '''


class TransportError(TransferError, OSError):
    '''
    No usable response was obtained (DNS, connect, read or protocol failure).
    The originating httpx/httpcore error is kept as ``__cause__``.
    '''


class AttemptTimeoutError(TransportError, TimeoutError):
    '''
    A single attempt ran past ``TransferPolicy.attempt_timeout``.
    ``__cause__`` is always a builtin ``TimeoutError``.
    '''
