'''
retry policy for robusthttp transfers

The policy is a plain dataclass so it can be built by the process that asks
for a transfer and pickled over to the process that performs it.
'''
import dataclasses as dc
import enum
import os
from collections.abc import Mapping

ENV_PREFIX = 'ROBUSTHTTP_'


class Outcome(enum.Enum):
    SUCCESS = 'success'
    FATAL_STATUS = 'fatal_status'
    RETRYABLE_STATUS = 'retryable_status'
    CANCELLED = 'cancelled'


def classify_status(status: int) -> Outcome:
    '''
    Classify an HTTP status code.

    A status of 0 means no response was obtained at all and is always
    retryable, as is anything in the 5xx band.

    Parameters
    ----------
    status : int

    Returns
    -------
    Outcome
    '''
    if 200 <= status < 300:
        return Outcome.SUCCESS
    if 100 <= status < 200 or 300 <= status < 500:
        return Outcome.FATAL_STATUS
    return Outcome.RETRYABLE_STATUS


@dc.dataclass(slots=True)
class Attempt:
    ordinal: int
    status: int = 0
    error: BaseException | None = None

    @property
    def outcome(self) -> Outcome:
        return classify_status(self.status)


def _env_value(environ: Mapping[str, str], name: str, cast):
    key = f'{ENV_PREFIX}{name}'
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f'Invalid value for {key}: {raw!r}') from exc


@dc.dataclass(slots=True)
class TransferPolicy:
    '''
    Retry tunables for a transfer. All durations are in seconds.

    Parameters
    ----------
    max_attempts : int, optional
        Attempts made for retryable failures before giving up, by default 10
    backoff_base : float, optional
        Wait between the first and second attempts is ``2 * backoff_base``;
        it doubles with each further attempt, by default 0.1
    backoff_cap : float, optional
        Ceiling applied to the computed wait, by default 300 (5 minutes)
    attempt_timeout : float, optional
        Wall-clock time a single attempt may take, by default 900 (15 minutes)
    '''
    max_attempts: int = 10
    backoff_base: float = 0.1
    backoff_cap: float = 300.0
    attempt_timeout: float = 900.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f'max_attempts must be at least 1, got {self.max_attempts}')
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError('backoff_base and backoff_cap must not be negative')
        if self.attempt_timeout <= 0:
            raise ValueError(f'attempt_timeout must be positive, got {self.attempt_timeout}')

    def backoff(self, attempt: int) -> float:
        '''
        Seconds to wait after failed attempt number ``attempt`` (1-based).
        Not randomized; the exponent base is fixed at 2.
        '''
        return min(self.backoff_cap, (2 ** attempt) * self.backoff_base)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> 'TransferPolicy':
        '''
        Build a policy whose defaults can be overridden through
        ``ROBUSTHTTP_MAX_ATTEMPTS``, ``ROBUSTHTTP_BACKOFF_BASE``,
        ``ROBUSTHTTP_BACKOFF_CAP`` and ``ROBUSTHTTP_ATTEMPT_TIMEOUT``.

        Parameters
        ----------
        environ : Mapping[str, str] | None, optional
            Defaults to ``os.environ``

        Returns
        -------
        TransferPolicy

        Raises
        ------
        ValueError
            If a variable is set but cannot be parsed.
        '''
        if environ is None:
            environ = os.environ

        overrides = {
            'max_attempts': _env_value(environ, 'MAX_ATTEMPTS', int),
            'backoff_base': _env_value(environ, 'BACKOFF_BASE', float),
            'backoff_cap': _env_value(environ, 'BACKOFF_CAP', float),
            'attempt_timeout': _env_value(environ, 'ATTEMPT_TIMEOUT', float),
        }
        return cls(**{k: v for k, v in overrides.items() if v is not None})
