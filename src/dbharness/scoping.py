"""
Connections scoped to one isolated schema.

Scoping happens when a DBAPI connection is opened: every connection of a
scoped engine starts with `search_path` set to the isolated schema only and
carries the schema name as its `application_name`. Plain statements,
parameterized queries, ORM sessions and transactions therefore resolve
against the isolated schema without rewriting any SQL.

The ScopedConnection is the client test code normally uses:
- execute(sql, *args) - Execute SQL and return affected row count
- select(sql, *args) - Execute SELECT and return rows as attribute dicts
- select_row(sql, *args) - Execute SELECT expecting exactly 1 row
- select_scalar(sql, *args) - Execute SELECT expecting exactly 1 value
- transaction() - Group statements into one transaction
"""
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Self

import sqlalchemy as sa
from dbharness.connection import NO_PARAMETERS, create_url_from_options
from dbharness.namespace import namespace_from_schema
from dbharness.options import HarnessOptions
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from libb import attrdict

__all__ = [
    'create_scoped_engine',
    'ScopedConnection',
    'Transaction',
]

logger = logging.getLogger(__name__)


def create_scoped_engine(options: HarnessOptions, schema: str,
                         engine_factory: Callable[..., Engine] = sa.create_engine,
                         **kwargs: Any) -> Engine:
    """Create an engine whose connections resolve unqualified names in `schema`.

    The search path holds only the isolated schema; nothing falls back to
    `public`.
    """
    if namespace_from_schema(schema) is None:
        raise ValueError(f'Not an isolated schema name: {schema!r}')

    engine_kwargs: dict[str, Any] = {
        'echo': False,
        'poolclass': QueuePool,
        'pool_size': options.scoped_pool_size,
        'max_overflow': 0,
        'pool_timeout': options.admin_pool_timeout,
        'pool_reset_on_return': 'rollback',
        'connect_args': {
            'options': f'-c search_path={schema}',
            'application_name': schema,
            },
        }
    engine_kwargs.update(kwargs)

    engine = engine_factory(create_url_from_options(options), **engine_kwargs)
    logger.debug(f'Created scoped engine for {schema}')
    return engine


class ScopedConnection:
    """Wraps a SQLAlchemy connection bound to one isolated schema.

    This class provides a thin wrapper that:
    1. Tracks query execution counts and timing
    2. Commits each statement issued outside a transaction
    3. Supports context manager protocol for explicit resource management
    4. Delegates attribute access to the SQLAlchemy connection object

    Placeholders are positional `%s`, as the psycopg driver expects.
    """

    def __init__(self, sa_connection: sa.Connection,
                 on_close: Callable[['ScopedConnection'], None] | None = None) -> None:
        self.sa_connection = sa_connection
        self.engine = sa_connection.engine
        self.calls = 0
        self.time = 0
        self.in_managed_transaction = False
        self._on_close = on_close

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def __getattr__(self, name: str) -> Any:
        """Delegate attribute access to the SQLAlchemy connection.
        """
        return getattr(self.sa_connection, name)

    @property
    def closed(self) -> bool:
        return self.sa_connection.closed

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def _run(self, sql: str, args: tuple[Any, ...]) -> sa.CursorResult:
        start = time.time()
        try:
            if args:
                return self.sa_connection.exec_driver_sql(sql, args)
            return self.sa_connection.exec_driver_sql(sql, execution_options=NO_PARAMETERS)
        finally:
            self.addcall(time.time() - start)

    def _finish(self, failed: bool = False) -> None:
        if self.in_managed_transaction:
            return
        if failed:
            self.sa_connection.rollback()
        else:
            self.sa_connection.commit()

    def execute(self, sql: str, *args: Any) -> int:
        """Execute a SQL statement with the given parameters and return affected row count.
        """
        try:
            rowcount = self._run(sql, args).rowcount
        except Exception:
            self._finish(failed=True)
            raise
        self._finish()
        return rowcount

    def select(self, sql: str, *args: Any) -> list[attrdict]:
        """Execute a SELECT query and return all rows.
        """
        try:
            rows = [attrdict(row) for row in self._run(sql, args).mappings()]
        except Exception:
            self._finish(failed=True)
            raise
        self._finish()
        logger.debug(f'Select query returned {len(rows)} rows')
        return rows

    def select_column(self, sql: str, *args: Any) -> list[Any]:
        """Execute a query and return the first column as a list.
        """
        return [next(iter(row.values())) for row in self.select(sql, *args)]

    def select_row(self, sql: str, *args: Any) -> attrdict:
        """Execute a query and return a single row.

        Raises AssertionError if the query returns zero or multiple rows.
        """
        data = self.select(sql, *args)
        assert len(data) == 1, f'Expected one row, got {len(data)}'
        return data[0]

    def select_row_or_none(self, sql: str, *args: Any) -> attrdict | None:
        """Execute a query and return a single row or None if no rows found.
        """
        data = self.select(sql, *args)
        if len(data) == 1:
            return data[0]
        return None

    def select_scalar(self, sql: str, *args: Any) -> Any:
        """Execute a query and return a single scalar value.

        Raises AssertionError if the query returns zero or multiple rows.
        """
        row = self.select_row(sql, *args)
        return next(iter(row.values()))

    def select_scalar_or_none(self, sql: str, *args: Any) -> Any | None:
        row = self.select_row_or_none(sql, *args)
        if row is None:
            return None
        return next(iter(row.values()))

    def current_schema(self) -> str:
        """Schema unqualified names resolve to on this connection.
        """
        return self.select_scalar('select current_schema()')

    def table_names(self) -> list[str]:
        """Tables in the isolated schema, sorted.
        """
        return self.select_column(
            'select table_name from information_schema.tables '
            'where table_schema = current_schema() order by table_name')

    def transaction(self) -> 'Transaction':
        return Transaction(self)

    def commit(self) -> None:
        self.sa_connection.commit()

    def rollback(self) -> None:
        self.sa_connection.rollback()

    def close(self) -> None:
        """Close the connection and return it to the scoped pool.
        """
        if self.sa_connection.closed:
            return
        try:
            if not self.in_managed_transaction:
                self.sa_connection.rollback()
            self.sa_connection.close()
            logger.debug(f'Connection closed: {self.calls} queries in {self.time:.2f}s '
                         f'(avg: {self.time/max(1,self.calls):.3f}s per query)')
        finally:
            if self._on_close is not None:
                self._on_close(self)


_local = threading.local()


class Transaction:
    """Context manager for running multiple commands in a transaction.

    Commits on success and rolls back when the block raises. Nested
    transactions on the same connection in one thread are not supported.

    Examples
        with cn.transaction() as tx:
            tx.execute('delete from ...', args)
            tx.execute('update from ...', args)
    """

    def __init__(self, cn: ScopedConnection) -> None:
        self.connection = cn

        if not hasattr(_local, 'active_transactions'):
            _local.active_transactions = set()

        if id(cn) in _local.active_transactions:
            raise RuntimeError('Nested transactions are not supported')

    def __enter__(self) -> Self:
        _local.active_transactions.add(id(self.connection))
        # close any implicit transaction left by earlier statements
        self.connection.sa_connection.commit()
        self.connection.in_managed_transaction = True
        logger.debug(f'Started transaction for connection {id(self.connection)}')
        return self

    def __exit__(self, exc_type: type | None, value: Exception | None, traceback: Any | None) -> None:
        try:
            if exc_type is not None:
                self.connection.sa_connection.rollback()
                logger.warning('Rolling back the current transaction')
            else:
                self.connection.sa_connection.commit()
                logger.debug(f'Committed transaction for connection {id(self.connection)}')
        finally:
            _local.active_transactions.discard(id(self.connection))
            self.connection.in_managed_transaction = False

    def execute(self, sql: str, *args: Any) -> int:
        return self.connection.execute(sql, *args)

    def select(self, sql: str, *args: Any) -> list[attrdict]:
        return self.connection.select(sql, *args)

    def select_row(self, sql: str, *args: Any) -> attrdict:
        return self.connection.select_row(sql, *args)

    def select_scalar(self, sql: str, *args: Any) -> Any:
        return self.connection.select_scalar(sql, *args)
