import re
import string

import httpx

REDACTED = '…'

# RFC 3986 appendix B, with the delimiters kept so that an empty query
# ("http://host/path?") can be told apart from a missing one.
_URI_PARTS = re.compile(
    r'^(?:(?P<scheme>[^:/?#]+):)?'
    r'(?://(?P<authority>[^/?#]*))?'
    r'(?P<path>[^?#]*)'
    r'(?:\?(?P<query>[^#]*))?'
    r'(?:#(?P<fragment>.*))?$',
    re.DOTALL,
)
_SCHEME = re.compile(r'^[A-Za-z][A-Za-z0-9+.\-]*$')
_BAD_ESCAPE = re.compile(r'%(?![0-9A-Fa-f]{2})')
_IP_LITERAL = re.compile(
    r'^\[(?:[0-9A-Fa-f:.]+|v[0-9A-Fa-f]+\.[A-Za-z0-9._~!$&\'()*+,;=:-]+)\](?::[0-9]*)?$'
)

_URI_ASCII = frozenset(
    string.ascii_letters + string.digits + "-._~:/?#[]@!$&'()*+,;=%"
)
# square brackets are reserved for IP literal hosts, the query and the fragment
_NO_BRACKETS = frozenset('[]')


class URLRejectedError(ValueError):
    '''
    Raised when a URL cannot be parsed under the URI grammar.

    Parent: ValueError
    '''


def _check_characters(url: str) -> None:
    for ch in url:
        if ch.isascii():
            if ch not in _URI_ASCII:
                raise URLRejectedError(f'Illegal character {ch!r} in URL: {url!r}')
        elif not ch.isprintable() or ch.isspace():
            raise URLRejectedError(f'Illegal character {ch!r} in URL: {url!r}')

    if _BAD_ESCAPE.search(url):
        raise URLRejectedError(f'Malformed percent escape in URL: {url!r}')


def _check_component(url: str, name: str, value: str, illegal: frozenset) -> None:
    bad = illegal.intersection(value)
    if bad:
        raise URLRejectedError(
            f'Illegal character {min(bad)!r} in {name} of URL: {url!r}'
        )


def sanitize(url: str | httpx.URL) -> str:
    '''
    Mask out the query string and any user info in a URL so it can be
    written to a log.

    Parameters
    ----------
    url : str | httpx.URL

    Returns
    -------
    str
        The same URL with the query and/or user info replaced by ``…``;
        every other component is passed through untouched.

    Raises
    ------
    URLRejectedError
        If the URL has no scheme, contains characters that are not
        legal in a URI (an unencoded space, for example) or puts one
        where its component does not allow it (a bracket in the path,
        a second ``#``).
    '''
    url = str(url)
    _check_characters(url)

    match = _URI_PARTS.match(url)
    if match is None or not match['scheme'] or not _SCHEME.match(match['scheme']):
        raise URLRejectedError(f'Not an absolute URL: {url!r}')

    result = f"{match['scheme']}:"

    authority = match['authority']
    if authority is not None:
        userinfo, at, hostport = authority.rpartition('@')
        _check_component(url, 'user info', userinfo, _NO_BRACKETS)
        if ('[' in hostport or ']' in hostport) and not _IP_LITERAL.match(hostport):
            raise URLRejectedError(f'Malformed IP literal host in URL: {url!r}')
        result += f'//{REDACTED}@{hostport}' if at else f'//{hostport}'

    _check_component(url, 'path', match['path'], _NO_BRACKETS)
    result += match['path']

    if match['query'] is not None:
        result += f'?{REDACTED}'

    if match['fragment'] is not None:
        _check_component(url, 'fragment', match['fragment'], frozenset('#'))
        result += f"#{match['fragment']}"

    return result
