'''
Command line entry point, meant to be run by a build worker on behalf of a
controller that has no network access of its own:

    robusthttp download https://example.com/artifact.tar.gz out/artifact.tar.gz
    robusthttp upload out/report.xml https://example.com/reports/1 --content-type application/xml

Retry notices go to stderr. Policy defaults come from the ROBUSTHTTP_*
environment variables.
'''
import asyncio
import functools
import logging
import sys

import click
import httpx

from robusthttp._client import RobustHTTPClient
from robusthttp._errors import TransferError
from robusthttp._policy import TransferPolicy
from robusthttp._sanitize import URLRejectedError
from robusthttp._version import __version__


def _policy_options(func):
    @click.option('--max-attempts', type=click.IntRange(min=1), default=None,
                  help='Attempts before giving up on retryable failures.')
    @click.option('--backoff-base', type=click.FloatRange(min=0), default=None,
                  help='Base of the exponential backoff, in seconds.')
    @click.option('--backoff-cap', type=click.FloatRange(min=0), default=None,
                  help='Longest wait between attempts, in seconds.')
    @click.option('--attempt-timeout', type=click.FloatRange(min=0, min_open=True),
                  default=None, help='Time a single attempt may take, in seconds.')
    @functools.wraps(func)
    def wrapper(*args, max_attempts, backoff_base, backoff_cap, attempt_timeout, **kwargs):
        try:
            policy = TransferPolicy.from_env()
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc

        if max_attempts is not None:
            policy.max_attempts = max_attempts
        if backoff_base is not None:
            policy.backoff_base = backoff_base
        if backoff_cap is not None:
            policy.backoff_cap = backoff_cap
        if attempt_timeout is not None:
            policy.attempt_timeout = attempt_timeout
        return func(*args, policy=policy, **kwargs)

    return wrapper


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except (TransferError, URLRejectedError, httpx.InvalidURL, OSError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version=__version__, prog_name='robusthttp')
@click.option('-v', '--verbose', is_flag=True, help='Log every attempt.')
def main(verbose: bool) -> None:
    '''Resilient HTTP uploads and downloads.'''
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )


@main.command()
@click.argument('url')
@click.argument('dest', type=click.Path(dir_okay=False, writable=True))
@_policy_options
def download(url: str, dest: str, policy: TransferPolicy) -> None:
    '''Download URL to DEST.'''
    client = RobustHTTPClient(policy)
    _run(client.download_file(dest, url, sink=click.get_text_stream('stderr')))


@main.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False, readable=True))
@click.argument('url')
@click.option('--content-type', default=None, help='Content-Type header to send.')
@_policy_options
def upload(file: str, url: str, content_type: str | None, policy: TransferPolicy) -> None:
    '''Upload FILE to URL with a PUT request.'''
    client = RobustHTTPClient(policy)
    _run(client.upload_file(file, url, content_type, sink=click.get_text_stream('stderr')))
