"""
Provisioning of isolated, fully migrated schemas.
"""
import logging

from dbharness.exceptions import MigrationError, ProvisioningError
from dbharness.guard import SchemaHandle
from dbharness.migrations import MigrationSet, apply_migrations
from dbharness.namespace import schema_name
from dbharness.options import HarnessOptions
from dbharness.schema import create_schema, drop_schema
from dbharness.scoping import create_scoped_engine
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

__all__ = ['provision']

logger = logging.getLogger(__name__)


def _discard(admin: Engine, engine: Engine | None, schema: str,
             options: HarnessOptions) -> None:
    """Remove a half-built schema before the setup error propagates."""
    if engine is not None:
        engine.dispose()
    try:
        drop_schema(admin, schema, lock_timeout=options.drop_lock_timeout)
    except Exception as e:
        logger.warning(f'Could not drop partially provisioned {schema}: {e}')


def provision(admin: Engine, namespace: str, migrations: MigrationSet,
              options: HarnessOptions) -> SchemaHandle:
    """Create `test_<namespace>`, migrate it and return its handle.

    The migration set is applied in full, in order, before the handle is
    returned. On any failure after the schema exists the schema is dropped
    and a SetupError is raised; a name collision leaves the existing schema
    untouched.
    """
    schema = schema_name(namespace)
    create_schema(admin, schema)

    engine = None
    try:
        engine = create_scoped_engine(options, schema)
        with engine.connect() as cn:
            apply_migrations(cn, migrations, namespace=namespace)
    except MigrationError:
        logger.error(f'Migrations failed on {schema}; dropping it')
        _discard(admin, engine, schema, options)
        raise
    except (sa_exc.SQLAlchemyError, ValueError) as e:
        logger.error(f'Provisioning {schema} failed; dropping it')
        _discard(admin, engine, schema, options)
        raise ProvisioningError(f'could not prepare schema {schema}: {e}',
                                namespace=namespace) from e
    except BaseException:
        _discard(admin, engine, schema, options)
        raise

    logger.debug(f'Provisioned {schema} with {len(migrations)} migrations')
    return SchemaHandle(namespace, admin, engine,
                        drop_lock_timeout=options.drop_lock_timeout)
