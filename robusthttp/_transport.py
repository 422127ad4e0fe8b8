import contextlib
import logging
import socket
import ssl

import httpx

from robusthttp._sanitize import URLRejectedError, sanitize

logger = logging.getLogger(__name__)

# (level, option, value); keepalive probes start after 60s of silence so a
# peer that vanished mid-transfer is dropped well before the attempt timeout
_KEEPALIVE = (
    ('IPPROTO_TCP', 'TCP_NODELAY', 1),
    ('SOL_SOCKET', 'SO_KEEPALIVE', 1),
    ('IPPROTO_TCP', 'TCP_KEEPIDLE', 60),
    ('IPPROTO_TCP', 'TCP_KEEPINTVL', 10),
    ('IPPROTO_TCP', 'TCP_KEEPCNT', 5),
)


def keepalive_socket_options() -> list[tuple[int, int, int]]:
    '''
    The subset of ``_KEEPALIVE`` this platform supports, resolved to the
    numeric constants httpx expects.
    '''
    return [
        (getattr(socket, level), getattr(socket, option), value)
        for level, option, value in _KEEPALIVE
        if hasattr(socket, level) and hasattr(socket, option)
    ]


def transfer_ssl_context(http2: bool = True) -> ssl.SSLContext:
    '''
    Verifying TLS 1.2+ context for transfers.

    Parameters
    ----------
    http2 : bool, optional
        Offer ``h2`` through ALPN before ``http/1.1``, by default True

    Returns
    -------
    ssl.SSLContext
    '''
    ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.options |= ssl.OP_NO_COMPRESSION

    protocols = ['h2', 'http/1.1'] if http2 else ['http/1.1']
    with contextlib.suppress(NotImplementedError):
        ctx.set_alpn_protocols(protocols)

    return ctx


def display_url(url: httpx.URL) -> str:
    '''
    ``sanitize(url)``, or just the scheme and host when the URL is outside
    the URI grammar (httpx leaves brackets in paths, for one).
    '''
    try:
        return sanitize(url)
    except URLRejectedError:
        return f'{url.scheme}://{url.netloc.decode("ascii")}/…'


class HttpTransport(httpx.AsyncBaseTransport):
    '''
    httpx transport used for every transfer attempt. Wraps either a real
    ``httpx.AsyncHTTPTransport`` or, when ``inner`` is given, any other
    transport (``httpx.MockTransport`` in tests), in which case ``limits``
    and the socket and TLS settings do not apply.
    '''
    def __init__(
        self,
        *,
        http2: bool = True,
        trust_env: bool = False,
        limits: httpx.Limits | None = None,
        inner: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if inner is None:
            kwargs = {} if limits is None else {'limits': limits}
            inner = httpx.AsyncHTTPTransport(
                http2=http2,
                socket_options=keepalive_socket_options(),
                verify=transfer_ssl_context(http2),
                trust_env=trust_env,
                **kwargs,
            )
        self._inner: httpx.AsyncBaseTransport = inner

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        logger.debug(f'Sending request: {request.method} {display_url(request.url)}')
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()
