"""
Administrative connection handling with SQLAlchemy.

This module provides:
1. SQLAlchemy URL generation from HarnessOptions
2. The bounded administrative engine used for schema create/drop
3. A retry decorator for transient connection failures

The administrative engine is the only resource shared between tests. Its pool
is bounded with no overflow, so under high parallelism only the brief
create/drop round trips queue for it, never a test body.
"""
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from typing import Any, TypeVar

import sqlalchemy as sa
from dbharness.exceptions import DbConnectionError
from dbharness.options import HarnessOptions
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

__all__ = [
    'create_url_from_options',
    'check_connection',
    'create_admin_engine',
    'admin_connection',
    'NO_PARAMETERS',
]

logger = logging.getLogger(__name__)

T = TypeVar('T')

# psycopg reads every % as a placeholder once any parameters are passed
NO_PARAMETERS = {'no_parameters': True}


def create_url_from_options(options: HarnessOptions,
                            url_creator: Callable[..., sa.URL] = sa.URL.create) -> sa.URL:
    """Convert HarnessOptions to SQLAlchemy URL.
    """
    if options.drivername == 'postgresql':
        query = {}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)

        return url_creator(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port,
            database=options.database,
            query=query
        )

    raise ValueError(f'Unsupported database type: {options.drivername}')


def check_connection(func: Callable[..., T] | None = None, *, max_retries: int = 3,
                     retry_delay: float = 1, retry_errors: type | tuple[type, ...] | None = None,
                     retry_backoff: float = 1.5,
                     sleep_func: Callable[[float], None] = time.sleep) -> Callable[..., T]:
    """Connection retry decorator with backoff.

    Only wrap calls that establish a connection. Schema creation and
    migrations are never retried: a second attempt would hide a real defect.

    Supports both @check_connection and @check_connection() syntax.
    """
    def decorator(f: Callable[..., T]) -> Callable[..., T]:
        @wraps(f)
        def inner(*args: Any, **kwargs: Any) -> T:
            error_types = retry_errors if retry_errors is not None else DbConnectionError

            tries = 0
            delay = retry_delay
            while tries < max_retries:
                try:
                    return f(*args, **kwargs)
                except error_types as err:
                    tries += 1
                    if tries >= max_retries:
                        logger.error(f'Maximum retries ({max_retries}) exceeded: {err}')
                        raise
                    logger.warning(f'Connection error (attempt {tries}/{max_retries}): {err}')
                    sleep_func(delay)
                    delay *= retry_backoff

        return inner

    if func is None:
        return decorator
    return decorator(func)


def create_admin_engine(options: HarnessOptions,
                        engine_factory: Callable[..., Engine] = sa.create_engine,
                        **kwargs: Any) -> Engine:
    """Create the bounded administrative engine for schema create/drop.
    """
    url = create_url_from_options(options)

    engine_kwargs: dict[str, Any] = {
        'echo': False,
        'poolclass': QueuePool,
        'pool_size': options.admin_pool_size,
        'max_overflow': 0,
        'pool_timeout': options.admin_pool_timeout,
        'pool_pre_ping': True,
        'isolation_level': 'AUTOCOMMIT',
        'connect_args': {'application_name': f'{options.appname}:admin'},
        }
    engine_kwargs.update(kwargs)

    engine = engine_factory(url, **engine_kwargs)
    logger.debug(f'Created admin engine for {options.hostname}:{options.port}/{options.database} '
                 f'(pool size {options.admin_pool_size})')
    return engine


@check_connection
def _checkout(engine: Engine) -> sa.Connection:
    return engine.connect()


@contextmanager
def admin_connection(engine: Engine) -> Iterator[sa.Connection]:
    """Borrow an autocommit connection from the administrative engine.

    The connection goes back to the pool as soon as the block exits, so the
    pool serializes only the statements issued inside the block.
    """
    cn = _checkout(engine)
    try:
        yield cn
    finally:
        cn.close()
