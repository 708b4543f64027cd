"""
Recovery of isolated schemas left behind by crashed or aborted test runs.

The creation time of each schema is read from its namespace token, so no
bookkeeping outside the server is needed. How old a schema must be before it
counts as an orphan is operational policy and always passed in.
"""
import datetime
import logging
from collections.abc import Iterable

from dbharness.namespace import namespace_from_schema, namespace_timestamp
from dbharness.schema import drop_schema, list_test_schemas, terminate_backends
from sqlalchemy.engine import Engine

__all__ = [
    'expired_schemas',
    'sweep_orphans',
]

logger = logging.getLogger(__name__)


def _as_timedelta(retention: datetime.timedelta | float) -> datetime.timedelta:
    if isinstance(retention, datetime.timedelta):
        return retention
    return datetime.timedelta(seconds=retention)


def expired_schemas(names: Iterable[str], retention: datetime.timedelta | float,
                    now: datetime.datetime | None = None) -> list[str]:
    """Harness schemas among `names` created more than `retention` ago.

    Names that are not harness schemas are ignored.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    cutoff = now - _as_timedelta(retention)
    expired = []
    for name in names:
        namespace = namespace_from_schema(name)
        if namespace is None:
            continue
        if namespace_timestamp(namespace) < cutoff:
            expired.append(name)
    return sorted(expired)


def sweep_orphans(admin: Engine, retention: datetime.timedelta | float,
                  now: datetime.datetime | None = None, dry_run: bool = False,
                  lock_timeout: float = 10) -> list[str]:
    """Drop harness schemas older than `retention`.

    Returns the schemas dropped, or the ones that would be with `dry_run`.
    A schema that fails to drop is logged and skipped.
    """
    candidates = expired_schemas(list_test_schemas(admin), retention, now)
    if dry_run:
        logger.info(f'Orphan sweep (dry run): {len(candidates)} schemas expired')
        return candidates

    dropped = []
    for schema in candidates:
        try:
            terminate_backends(admin, schema)
            drop_schema(admin, schema, lock_timeout=lock_timeout)
        except Exception as e:
            logger.warning(f'Orphan sweep could not drop {schema}: {e}')
            continue
        dropped.append(schema)

    logger.info(f'Orphan sweep dropped {len(dropped)} of {len(candidates)} expired schemas')
    return dropped
