import asyncio
import dataclasses as dc
import logging
import weakref
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import httpx

from robusthttp._transport import HttpTransport
from robusthttp._version import __version__

logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_MAX_WORKERS = 32


def _base_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=10,
        max_keepalive_connections=0,
        keepalive_expiry=15,
    )


def _base_timeouts() -> httpx.Timeout:
    return httpx.Timeout(
        connect=10.0,
        read=60.0,
        write=60.0,
        pool=10.0,
    )


def _default_headers() -> dict[str, str]:
    return {
        'User-Agent': f'robusthttp/{__version__}',
        'Accept-Encoding': 'identity',
    }


@dc.dataclass(slots=True)
class HttpOptions:
    '''
    Options for the httpx client opened for each transfer attempt.

    ``transport_factory`` replaces the network transport, it is called
    once per attempt and its result is wrapped in ``HttpTransport``.
    '''
    timeout: httpx.Timeout = dc.field(default_factory=_base_timeouts)
    limits: httpx.Limits = dc.field(default_factory=_base_limits)
    http2: bool = True
    follow_redirects: bool = True
    trust_env: bool = True
    max_workers: int = DEFAULT_MAX_WORKERS
    transport_factory: Callable[[], httpx.AsyncBaseTransport] | None = None


class TransferPool:
    '''
    Process-wide pool that runs transfer attempts.

    Every attempt is a task bounded by ``max_workers`` and gets its own
    client and transport, so a broken connection from a failed attempt is
    never reused. Tasks the caller stopped waiting for (timed out or
    cancelled) are kept referenced here until they finish unwinding.
    '''
    __slots__ = (
        '_options',
        '_headers',
        '_semaphores',
        '_tasks',
    )

    def __init__(self, options: HttpOptions | None = None) -> None:
        self._options: HttpOptions = options or HttpOptions()
        if self._options.max_workers < 1:
            raise ValueError(
                f'max_workers must be at least 1, got {self._options.max_workers}'
            )
        self._headers = _default_headers()
        self._semaphores: weakref.WeakKeyDictionary[
            asyncio.AbstractEventLoop, asyncio.Semaphore
        ] = weakref.WeakKeyDictionary()
        self._tasks: set[asyncio.Task] = set()

    @property
    def options(self) -> HttpOptions:
        return self._options

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def create_transport(self) -> HttpTransport:
        inner = None
        if self._options.transport_factory is not None:
            inner = self._options.transport_factory()

        return HttpTransport(
            http2=self._options.http2,
            trust_env=self._options.trust_env,
            limits=self._options.limits,
            inner=inner,
        )

    def create_client(self, headers: dict[str, str] | None = None) -> httpx.AsyncClient:
        all_headers = self._headers.copy()
        if headers:
            all_headers.update(headers)

        return httpx.AsyncClient(
            transport=self.create_transport(),
            timeout=self._options.timeout,
            headers=all_headers,
            follow_redirects=self._options.follow_redirects,
            trust_env=self._options.trust_env,
        )

    @asynccontextmanager
    async def client(self, headers: dict[str, str] | None = None):
        async with self.create_client(headers) as client:
            yield client

    def _semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        semaphore = self._semaphores.get(loop)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self._options.max_workers)
            self._semaphores[loop] = semaphore
        return semaphore

    async def _run(self, func: Callable[..., Awaitable[R]], *args) -> R:
        async with self._semaphore():
            return await func(*args)

    def submit(
        self,
        func: Callable[..., Awaitable[R]],
        *args,
        name: str | None = None,
    ) -> 'asyncio.Task[R]':
        '''
        Schedule ``func(*args)`` on the pool.

        Parameters
        ----------
        func : Callable[..., Awaitable[R]]
        name : str | None, optional
            Task name, useful when debugging stuck attempts

        Returns
        -------
        asyncio.Task[R]
        '''
        task = asyncio.get_running_loop().create_task(
            self._run(func, *args),
            name=name,
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def abandon(self, task: asyncio.Task) -> None:
        '''
        Cancel an attempt nobody is waiting for anymore. Whatever it ends
        with is discarded.
        '''
        task.cancel()
        task.add_done_callback(_discard_result)

    async def aclose(self) -> None:
        loop = asyncio.get_running_loop()
        pending = [
            task for task in self._tasks
            if not task.done() and task.get_loop() is loop
        ]
        for task in pending:
            task.cancel()
        if pending:
            logger.debug(f'Cancelling {len(pending)} outstanding transfer attempt(s)')
            await asyncio.gather(*pending, return_exceptions=True)


def _discard_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f'Abandoned attempt {task.get_name()} ended with {exc!r}')


_default_pool: TransferPool | None = None


def default_pool() -> TransferPool:
    '''
    The pool shared by every client created without an explicit one.
    '''
    global _default_pool
    if _default_pool is None:
        _default_pool = TransferPool()
    return _default_pool
