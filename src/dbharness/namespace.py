"""
Time-ordered namespace identifiers for isolated test schemas.

A namespace is a 26 character lowercase Crockford base32 token: 48 bits of
Unix time in milliseconds followed by 80 random bits. Tokens sort by creation
time, and within one process they are strictly increasing even when several
are generated in the same millisecond.
"""
import datetime
import logging
import os
import re
import threading
import time
from collections.abc import Callable

from dbharness.exceptions import NamespaceError

__all__ = [
    'SCHEMA_PREFIX',
    'new_namespace',
    'schema_name',
    'is_valid_namespace',
    'namespace_from_schema',
    'namespace_timestamp',
]

logger = logging.getLogger(__name__)

SCHEMA_PREFIX = 'test_'

ALPHABET = '0123456789abcdefghjkmnpqrstvwxyz'
TOKEN_LENGTH = 26
TIME_BITS = 48
RANDOM_BITS = 80

_DECODE = {c: i for i, c in enumerate(ALPHABET)}
_TOKEN_RE = re.compile(r'[0-7][0-9a-hjkmnp-tv-z]{25}')

_MAX_TIME = (1 << TIME_BITS) - 1
_MAX_RANDOM = (1 << RANDOM_BITS) - 1


def _encode(value: int) -> str:
    chars = []
    for _ in range(TOKEN_LENGTH):
        chars.append(ALPHABET[value & 0x1f])
        value >>= 5
    return ''.join(reversed(chars))


def _decode(token: str) -> int:
    value = 0
    for c in token:
        value = (value << 5) | _DECODE[c]
    return value


class NamespaceGenerator:
    """Thread-safe monotonic generator of namespace tokens.

    The clock and randomness source are injectable for testing.
    """

    def __init__(self, clock: Callable[[], int] | None = None,
                 randbytes: Callable[[int], bytes] = os.urandom) -> None:
        self._clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._randbytes = randbytes
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def _random(self) -> int:
        try:
            return int.from_bytes(self._randbytes(RANDOM_BITS // 8), 'big')
        except NotImplementedError as e:
            raise NamespaceError(f'no randomness source available: {e}') from e

    def __call__(self) -> str:
        try:
            now = int(self._clock())
        except (OSError, OverflowError, ValueError) as e:
            raise NamespaceError(f'clock unavailable: {e}') from e
        if not 0 <= now <= _MAX_TIME:
            raise NamespaceError(f'clock value out of range: {now}')

        with self._lock:
            if now > self._last_ms:
                ms, rand = now, self._random()
            else:
                # same millisecond or clock stepped back: stay ordered
                ms, rand = self._last_ms, self._last_random + 1
                if rand > _MAX_RANDOM:
                    ms, rand = ms + 1, self._random()
                    if ms > _MAX_TIME:
                        raise NamespaceError('namespace space exhausted')
            self._last_ms, self._last_random = ms, rand

        return _encode((ms << RANDOM_BITS) | rand)


new_namespace = NamespaceGenerator()


def is_valid_namespace(token: str) -> bool:
    """Whether `token` is a well formed namespace token.
    """
    return isinstance(token, str) and bool(_TOKEN_RE.fullmatch(token))


def schema_name(namespace: str) -> str:
    """Name of the isolated schema for a namespace.

    Raises ValueError for anything the generator could not have produced, so
    no untrusted text ever reaches a DDL statement.
    """
    if not is_valid_namespace(namespace):
        raise ValueError(f'Invalid namespace: {namespace!r}')
    return f'{SCHEMA_PREFIX}{namespace}'


def namespace_from_schema(name: str) -> str | None:
    """Namespace token of a harness schema name, or None for any other schema.
    """
    if not name.startswith(SCHEMA_PREFIX):
        return None
    token = name[len(SCHEMA_PREFIX):]
    return token if is_valid_namespace(token) else None


def namespace_timestamp(namespace: str) -> datetime.datetime:
    """Creation time (UTC) encoded in a namespace token.
    """
    if not is_valid_namespace(namespace):
        raise ValueError(f'Invalid namespace: {namespace!r}')
    ms = _decode(namespace) >> RANDOM_BITS
    return datetime.datetime.fromtimestamp(ms / 1000, tz=datetime.timezone.utc)
