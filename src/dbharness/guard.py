"""
Scoped ownership of one isolated schema.

A SchemaHandle is created only after provisioning succeeded. Releasing it
drops the schema exactly once on every exit path: use it as a context
manager, call `release()` from a `finally` block, or rely on the process
exit hook for runs that are aborted before either happens.
"""
import atexit
import datetime
import logging
import threading
import warnings
from typing import Any, Self

from dbharness.exceptions import SchemaLeakWarning
from dbharness.namespace import namespace_timestamp, schema_name
from dbharness.schema import drop_schema, terminate_backends
from dbharness.scoping import ScopedConnection
from sqlalchemy.engine import Engine

__all__ = [
    'SchemaHandle',
    'release_all',
]

logger = logging.getLogger(__name__)

_live_handles: set['SchemaHandle'] = set()
_live_handles_lock = threading.Lock()


class SchemaHandle:
    """Binds a namespace to a ready-to-use engine scoped to its schema.

    Owned by a single test. `release()` is idempotent and thread-safe, and
    never raises: a failed drop is logged and reported as SchemaLeakWarning.
    """

    def __init__(self, namespace: str, admin: Engine, engine: Engine,
                 drop_lock_timeout: float = 10) -> None:
        self.namespace = namespace
        self.schema = schema_name(namespace)
        self.admin = admin
        self.engine = engine
        self.drop_lock_timeout = drop_lock_timeout
        self._connections: set[ScopedConnection] = set()
        self._default: ScopedConnection | None = None
        self._lock = threading.Lock()
        self._released = False
        with _live_handles_lock:
            _live_handles.add(self)

    def __repr__(self) -> str:
        state = 'released' if self._released else 'live'
        return f'<SchemaHandle {self.schema} ({state})>'

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.release()

    @property
    def released(self) -> bool:
        return self._released

    @property
    def created_at(self) -> datetime.datetime:
        return namespace_timestamp(self.namespace)

    def connect(self) -> ScopedConnection:
        """Open a new connection scoped to this schema.
        """
        if self._released:
            raise RuntimeError(f'{self.schema} has been released')
        cn = ScopedConnection(self.engine.connect(), on_close=self._forget)
        with self._lock:
            self._connections.add(cn)
        return cn

    @property
    def connection(self) -> ScopedConnection:
        """Default connection, opened on first use.
        """
        if self._default is None or self._default.closed:
            self._default = self.connect()
        return self._default

    def _forget(self, cn: ScopedConnection) -> None:
        with self._lock:
            self._connections.discard(cn)

    def _close_connections(self) -> None:
        with self._lock:
            connections = list(self._connections)
        for cn in connections:
            try:
                cn.close()
            except Exception as e:
                logger.debug(f'Error closing connection on {self.schema}: {e}')
        self._default = None
        self.engine.dispose()

    def release(self) -> None:
        """Drop the schema and everything in it. Safe to call more than once.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
        with _live_handles_lock:
            _live_handles.discard(self)

        try:
            self._close_connections()
            terminate_backends(self.admin, self.schema)
            drop_schema(self.admin, self.schema, lock_timeout=self.drop_lock_timeout)
        except Exception as e:
            logger.warning(f'Failed to drop {self.schema}; it will be left for the orphan sweep: {e}')
            _warn_leak(self.schema, e)


def _warn_leak(schema: str, error: Exception) -> None:
    """Emit a SchemaLeakWarning without ever raising it.

    Under `-W error` the warning would otherwise fail the test being torn down.
    """
    try:
        warnings.warn(f'isolated schema {schema} was not dropped: {error}',
                      SchemaLeakWarning, stacklevel=3)
    except SchemaLeakWarning:
        logger.debug(f'SchemaLeakWarning for {schema} suppressed: warnings are errors')


def release_all() -> None:
    """Release every handle still live in this process.
    """
    with _live_handles_lock:
        handles = list(_live_handles)
    for handle in handles:
        logger.warning(f'Releasing {handle.schema} at exit')
        handle.release()


atexit.register(release_all)
