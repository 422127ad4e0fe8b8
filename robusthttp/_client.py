'''
HTTP transfers with protection against transient failures.

Raises
------
FatalProtocolError
    _the server answered with a status a retry cannot fix (1xx, 3xx, 4xx)_
RetryableStatusError
    _the server kept answering 5xx until the attempts ran out_
TransportError
    _no response could be obtained on the last permitted attempt_
AttemptTimeoutError
    _the last permitted attempt did not finish within the attempt timeout_
'''
import asyncio
import contextlib
import logging
import os
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Protocol, TypeVar

import aiofiles
import aiofiles.os
import httpcore
import httpx

from robusthttp._errors import (
    AttemptTimeoutError,
    FatalProtocolError,
    RetryableStatusError,
    StatusError,
    TransportError,
)
from robusthttp._policy import Attempt, Outcome, TransferPolicy, classify_status
from robusthttp._pool import TransferPool, default_pool
from robusthttp._sanitize import URLRejectedError, sanitize
from robusthttp._transport import display_url

logger = logging.getLogger(__name__)

R = TypeVar("R")

Establish = Callable[[httpx.AsyncClient], Awaitable[httpx.Response]]
Consume = Callable[[httpx.Response], Awaitable[R]]

CHUNK_SIZE = 64 * 1024
MAX_DIAGNOSTIC_BODY = 2048

_TRANSPORT_ERRORS = (
    ConnectionError,
    httpx.TransportError,
    httpcore.NetworkError,
    httpcore.ProtocolError,
    httpcore.TimeoutException,
)


class LogSink(Protocol):
    def write(self, text: str, /) -> object: ...

    def flush(self) -> None: ...


class LoggerSink:
    '''
    A log sink that turns every line written to it into one log record.
    Used when a transfer is started without a sink of its own.
    '''
    __slots__ = ('_logger', '_level', '_buffer')

    def __init__(
        self,
        target: logging.Logger | None = None,
        level: int = logging.INFO,
    ) -> None:
        self._logger: logging.Logger = target or logger
        self._level: int = level
        self._buffer: str = ''

    def write(self, text: str) -> int:
        self._buffer += text
        while '\n' in self._buffer:
            line, self._buffer = self._buffer.split('\n', 1)
            if line:
                self._logger.log(self._level, line)
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._logger.log(self._level, self._buffer)
            self._buffer = ''


def describe_error(exc: BaseException) -> str:
    '''
    Text used for an error in a retry notice. Status errors already carry a
    complete message; anything else is prefixed with its type.
    '''
    if isinstance(exc, StatusError):
        return str(exc)
    return f'{type(exc).__name__}: {exc}'


async def _status_error(
    response: httpx.Response,
    what_verbose: str,
    outcome: Outcome,
) -> StatusError:
    await response.aread()
    body = response.text.strip() or None
    if body is not None and len(body) > MAX_DIAGNOSTIC_BODY:
        body = body[:MAX_DIAGNOSTIC_BODY] + '…'

    reason = response.reason_phrase or '?'
    message = f'Failed to {what_verbose}, response: {response.status_code} {reason}'
    if body is not None:
        message += f', body: {body}'

    error_cls = FatalProtocolError if outcome is Outcome.FATAL_STATUS else RetryableStatusError
    return error_cls(message, status=response.status_code, reason=reason, body=body)


def _parse_url(url: str | httpx.URL) -> httpx.URL:
    try:
        return httpx.URL(str(url))
    except httpx.InvalidURL as exc:
        raise URLRejectedError(f'Invalid URL {str(url)!r}: {exc}') from exc


async def _iter_file(path: Path) -> AsyncIterator[bytes]:
    async with aiofiles.open(path, 'rb') as fh:
        while chunk := await fh.read(CHUNK_SIZE):
            yield chunk


async def _stream_to_file(response: httpx.Response, path: Path) -> Path:
    '''
    Write the response body next to ``path`` and move it into place once
    the whole body has arrived. A failed attempt leaves ``path`` untouched.

    The partial file is created exclusively with the default permissions,
    so the finished file gets the mode the process umask allows.
    '''
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f'.{path.name}.{secrets.token_hex(6)}.part')
    try:
        async with aiofiles.open(tmp_path, 'xb') as fh:
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                await fh.write(chunk)
        await aiofiles.os.replace(tmp_path, path)
    except BaseException:
        # unlinked synchronously so a second cancellation cannot skip it
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise
    return path


class RobustHTTPClient:
    '''
    Runs HTTP network operations with per-attempt timeouts and retries.

    2xx responses are successful. Low-level network errors (DNS failures,
    refused connections, resets), 5xx responses and attempts that run past
    ``policy.attempt_timeout`` are retried with exponential backoff until
    ``policy.max_attempts`` is reached. Any other status is a failure
    straight away.

    Parameters
    ----------
    policy : TransferPolicy | None, optional
        Retry tunables, by default ``TransferPolicy.from_env()``
    pool : TransferPool | None, optional
        Pool the attempts run on, by default the process-wide pool
    '''
    __slots__ = ('policy', '_pool')

    sanitize = staticmethod(sanitize)

    def __init__(
        self,
        policy: TransferPolicy | None = None,
        pool: TransferPool | None = None,
    ) -> None:
        self.policy: TransferPolicy = policy or TransferPolicy.from_env()
        self._pool: TransferPool = pool or default_pool()

    async def _attempt(
        self,
        attempt: Attempt,
        what_verbose: str,
        establish: Establish,
        consume: Consume[R],
    ) -> R:
        try:
            async with self._pool.client() as client:
                response = await establish(client)
                try:
                    attempt.status = response.status_code
                    outcome = classify_status(response.status_code)
                    if outcome is not Outcome.SUCCESS:
                        raise await _status_error(response, what_verbose, outcome)
                    return await consume(response)
                finally:
                    await response.aclose()
        except httpx.TooManyRedirects as exc:
            raise FatalProtocolError(
                f'Failed to {what_verbose}: {exc}',
                status=attempt.status,
                reason='Too Many Redirects',
            ) from exc
        except _TRANSPORT_ERRORS as exc:
            raise TransportError(
                f'Failed to {what_verbose}: {describe_error(exc)}'
            ) from exc

    async def _run_attempt(
        self,
        attempt: Attempt,
        what: str,
        what_verbose: str,
        establish: Establish,
        consume: Consume[R],
    ) -> R:
        timeout = self.policy.attempt_timeout
        task = self._pool.submit(
            self._attempt,
            attempt,
            what_verbose,
            establish,
            consume,
            name=f'robusthttp-{what}-{attempt.ordinal}',
        )
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            self._pool.abandon(task)
            raise

        if task not in done:
            self._pool.abandon(task)
            raise AttemptTimeoutError(
                f'Failed to {what_verbose}: no response within {timeout}s'
            ) from TimeoutError(f'attempt {attempt.ordinal} timed out after {timeout}s')

        return task.result()

    async def connect(
        self,
        what: str,
        what_verbose: str,
        establish: Establish,
        consume: Consume[R],
        sink: LogSink | None = None,
    ) -> R:
        '''
        Perform an HTTP network operation with timeouts and retries.

        Parameters
        ----------
        what : str
            Short description of the operation, like ``upload``, used in
            retry notices
        what_verbose : str
            Longer description, like ``upload … to …``, used in error
            messages; pass URLs through ``sanitize`` first
        establish : Establish
            Given a fresh client, sends the request and returns the response.
            Called again from scratch on every attempt
        consume : Consume[R]
            Called with the response only after a 2xx status
        sink : LogSink | None, optional
            Where retry notices are written, by default the module logger

        Returns
        -------
        R
            Whatever ``consume`` returned

        Raises
        ------
        FatalProtocolError
            On a 1xx, 3xx or 4xx response, without retrying
        TransportError | RetryableStatusError
            The error of the last attempt once ``max_attempts`` is reached
        asyncio.CancelledError
            If the caller is cancelled, including during the backoff sleep
        '''
        if sink is None:
            sink = LoggerSink()
        policy = self.policy
        policy.validate()

        attempt_no = 1
        try:
            while True:
                attempt = Attempt(attempt_no)
                logger.debug(f'Attempt {attempt_no}/{policy.max_attempts} to {what_verbose}')
                try:
                    result = await self._run_attempt(
                        attempt, what, what_verbose, establish, consume,
                    )
                except (TransportError, RetryableStatusError) as exc:
                    attempt.error = exc
                    if attempt_no >= policy.max_attempts:
                        logger.debug(
                            f'Giving up on {what} after {attempt_no} attempt(s), '
                            f'last status {attempt.status}'
                        )
                        raise
                    sink.write(f'Retrying {what} after: {describe_error(exc)}\n')
                    await asyncio.sleep(policy.backoff(attempt_no))
                    attempt_no += 1
                    continue

                logger.debug(f'{what} succeeded on attempt {attempt_no} ({attempt.status})')
                return result
        finally:
            sink.flush()

    async def upload_file(
        self,
        path: str | os.PathLike,
        url: str | httpx.URL,
        content_type: str | None = None,
        sink: LogSink | None = None,
    ) -> None:
        '''
        Upload a file to a URL with a PUT request.

        Parameters
        ----------
        path : str | os.PathLike
            The file to upload; it must exist before the first attempt
        url : str | httpx.URL
        content_type : str | None, optional
            Sent as the ``Content-Type`` header when given
        sink : LogSink | None, optional

        Raises
        ------
        FileNotFoundError
            If ``path`` does not exist; nothing is sent
        URLRejectedError
            If ``url`` cannot be parsed
        '''
        path = Path(path)
        url = _parse_url(url)
        headers = {'Content-Length': str(path.stat().st_size)}
        if content_type is not None:
            headers['Content-Type'] = content_type

        async def establish(client: httpx.AsyncClient) -> httpx.Response:
            request = client.build_request(
                'PUT', url, content=_iter_file(path), headers=headers,
            )
            return await client.send(request)

        async def consume(response: httpx.Response) -> None:
            return None

        await self.connect(
            'upload',
            f'upload {path} to {display_url(url)}',
            establish,
            consume,
            sink,
        )

    async def download_file(
        self,
        path: str | os.PathLike,
        url: str | httpx.URL,
        sink: LogSink | None = None,
    ) -> Path:
        '''
        Download a URL to a file, replacing the file only once the whole
        body has been received.

        Parameters
        ----------
        path : str | os.PathLike
            Destination; missing parent directories are created
        url : str | httpx.URL
        sink : LogSink | None, optional

        Returns
        -------
        Path
        '''
        path = Path(path)
        url = _parse_url(url)

        async def establish(client: httpx.AsyncClient) -> httpx.Response:
            return await client.send(client.build_request('GET', url), stream=True)

        async def consume(response: httpx.Response) -> Path:
            return await _stream_to_file(response, path)

        return await self.connect(
            'download',
            f'download {display_url(url)} to {path}',
            establish,
            consume,
            sink,
        )
