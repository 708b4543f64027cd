"""
Test runner integration: acquire an isolated schema, run, release.

The IsolatedDatabase owns the administrative engine and the migration set.
Every provisioning call goes through the engine it was given, so a test
double can stand in for the server.
"""
import datetime
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import fields
from typing import Any, Self

from dbharness.connection import create_admin_engine
from dbharness.guard import SchemaHandle
from dbharness.migrations import MigrationSet, load_migrations
from dbharness.namespace import new_namespace
from dbharness.options import HarnessOptions
from dbharness.provisioner import provision
from dbharness.sweep import sweep_orphans
from sqlalchemy.engine import Engine

from libb import load_options

__all__ = [
    'IsolatedDatabase',
    'connect_harness',
]

logger = logging.getLogger(__name__)


class IsolatedDatabase:
    """Hands out disposable, migrated schemas on one shared server.

    Examples
        with IsolatedDatabase(options) as harness:
            with harness.isolated() as handle:
                handle.connection.execute('insert into users ...')
    """

    def __init__(self, options: HarnessOptions,
                 migrations: MigrationSet | None = None,
                 admin_engine: Engine | None = None) -> None:
        self.options = options
        if migrations is None:
            migrations = load_migrations(options.migrations) if options.migrations else ()
        self.migrations = migrations
        self._owns_engine = admin_engine is None
        self.admin = admin_engine or create_admin_engine(options)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def acquire(self) -> SchemaHandle:
        """Provision a fresh isolated schema. The caller must release it.
        """
        namespace = new_namespace()
        return provision(self.admin, namespace, self.migrations, self.options)

    @contextmanager
    def isolated(self) -> Iterator[SchemaHandle]:
        """Acquire a schema for the duration of the block and always release it.
        """
        handle = self.acquire()
        try:
            yield handle
        finally:
            handle.release()

    def sweep(self, retention: datetime.timedelta | float | None = None,
              dry_run: bool = False) -> list[str]:
        """Drop orphaned schemas older than `retention` (default: the configured retention).
        """
        if retention is None:
            retention = self.options.sweep_retention
        return sweep_orphans(self.admin, retention, dry_run=dry_run,
                             lock_timeout=self.options.drop_lock_timeout)

    def close(self) -> None:
        """Dispose the administrative engine if this harness created it.
        """
        if self._owns_engine:
            self.admin.dispose()
            logger.debug('Admin engine disposed')


@load_options(cls=HarnessOptions)
def connect_harness(options: HarnessOptions | dict[str, Any] | str,
                    config: Any | None = None, **kw: Any) -> IsolatedDatabase:
    """Create an IsolatedDatabase for a shared server.

    Args:
        options: Can be:
                - HarnessOptions object
                - String naming a setting on the config object
                - Dictionary of options
                - Options specified as keyword arguments
        config: Configuration object (for loading from config files)
        **kw: Additional keyword arguments to override options
    """
    if isinstance(options, HarnessOptions):
        for field in fields(options):
            kw.pop(field.name, None)
    else:
        options_func = load_options(cls=HarnessOptions)(lambda o, c: o)
        options = options_func(options, config, **kw)

    return IsolatedDatabase(options)
