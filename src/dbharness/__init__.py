"""
Isolated PostgreSQL schemas for concurrent integration tests.

Each test acquires its own schema `test_<namespace>`, migrated with the
project's migration set, through a connection scoped to it:

- Context manager: `with harness.isolated() as handle: ...`
- Explicit: `handle = harness.acquire()` then `handle.release()`
- pytest: `pytest_plugins = ['dbharness.pytest_plugin']` and the
  `isolated_db` fixture

The module functions are facades over IsolatedDatabase methods.
"""
__version__ = '0.1.0'

import datetime

from dbharness.exceptions import HarnessError, MigrationError
from dbharness.exceptions import NamespaceCollisionError, NamespaceError
from dbharness.exceptions import ProvisioningError, SchemaLeakWarning
from dbharness.exceptions import SetupError, TeardownError
from dbharness.guard import SchemaHandle
from dbharness.harness import IsolatedDatabase, connect_harness
from dbharness.migrations import Migration, load_migrations
from dbharness.namespace import new_namespace, schema_name
from dbharness.options import HarnessOptions
from dbharness.scoping import ScopedConnection, Transaction
from dbharness.sweep import sweep_orphans


def acquire(harness: IsolatedDatabase) -> SchemaHandle:
    """Provision a fresh isolated schema. The caller must release it.
    """
    return harness.acquire()


def release(handle: SchemaHandle) -> None:
    """Drop an isolated schema. Safe to call more than once.
    """
    handle.release()


def sweep(harness: IsolatedDatabase,
          retention: datetime.timedelta | float | None = None,
          dry_run: bool = False) -> list[str]:
    """Drop orphaned test schemas older than `retention`.
    """
    return harness.sweep(retention, dry_run=dry_run)


__all__ = [
    'connect_harness',
    'IsolatedDatabase',
    'HarnessOptions',
    'SchemaHandle',
    'ScopedConnection',
    'Transaction',
    'Migration',
    'load_migrations',
    'new_namespace',
    'schema_name',
    'sweep_orphans',
    'acquire',
    'release',
    'sweep',
    'HarnessError',
    'SetupError',
    'NamespaceError',
    'NamespaceCollisionError',
    'ProvisioningError',
    'MigrationError',
    'TeardownError',
    'SchemaLeakWarning',
]
