"""
Schema DDL issued through the administrative engine.
"""
import logging

from dbharness.connection import admin_connection
from dbharness.exceptions import DuplicateSchema, NamespaceCollisionError
from dbharness.exceptions import ProvisioningError, TeardownError
from dbharness.namespace import SCHEMA_PREFIX, namespace_from_schema
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

__all__ = [
    'quote_schema',
    'create_schema',
    'drop_schema',
    'terminate_backends',
    'list_test_schemas',
    'schema_exists',
]

logger = logging.getLogger(__name__)


def quote_schema(schema: str) -> str:
    """Quote an isolated schema name.

    Only names produced from a namespace token are accepted.
    """
    if namespace_from_schema(schema) is None:
        raise ValueError(f'Not an isolated schema name: {schema!r}')
    return '"' + schema.replace('"', '""') + '"'


def create_schema(admin: Engine, schema: str) -> None:
    """Create an isolated schema.

    A name collision is a generator defect, so it is reported and never
    retried; the existing schema belongs to someone else and is left alone.
    """
    quoted = quote_schema(schema)
    namespace = namespace_from_schema(schema)
    try:
        with admin_connection(admin) as cn:
            cn.exec_driver_sql(f'create schema {quoted}')
    except sa_exc.DBAPIError as e:
        if isinstance(e.orig, DuplicateSchema):
            raise NamespaceCollisionError(f'schema {schema} already exists',
                                          namespace=namespace) from e
        raise ProvisioningError(f'could not create schema {schema}: {e.orig}',
                                namespace=namespace) from e
    logger.info(f'Created schema {schema}')


def terminate_backends(admin: Engine, schema: str) -> int:
    """Terminate server sessions still tagged with the schema's application name.
    """
    sql = """
select
    count(pg_terminate_backend(pid))
from
    pg_stat_activity
where
    application_name = %s
    and datname = current_database()
    and pid <> pg_backend_pid()
"""
    with admin_connection(admin) as cn:
        count = cn.exec_driver_sql(sql, (schema,)).scalar() or 0
    if count:
        logger.debug(f'Terminated {count} lingering sessions on {schema}')
    return count


def drop_schema(admin: Engine, schema: str, lock_timeout: float = 10) -> None:
    """Drop an isolated schema and everything in it.

    Succeeds silently if the schema is already gone. Waiting on locks is
    bounded by `lock_timeout` seconds (0 waits forever).
    """
    quoted = quote_schema(schema)
    try:
        with admin_connection(admin) as cn:
            # admin connections autocommit; SET LOCAL needs a real transaction
            cn.execution_options(isolation_level='READ COMMITTED')
            with cn.begin():
                cn.exec_driver_sql(f"set local lock_timeout = '{int(lock_timeout * 1000)}ms'")
                cn.exec_driver_sql(f'drop schema if exists {quoted} cascade')
    except sa_exc.DBAPIError as e:
        raise TeardownError(f'could not drop schema {schema}: {e.orig}') from e
    logger.info(f'Dropped schema {schema}')


def schema_exists(admin: Engine, schema: str) -> bool:
    with admin_connection(admin) as cn:
        return cn.exec_driver_sql(
            'select exists (select 1 from pg_namespace where nspname = %s)',
            (schema,)).scalar()


def list_test_schemas(admin: Engine) -> list[str]:
    """All isolated schemas on the server, oldest first.
    """
    with admin_connection(admin) as cn:
        names = cn.exec_driver_sql(
            "select nspname from pg_namespace where nspname like %s",
            (SCHEMA_PREFIX.replace('_', r'\_') + '%',)).scalars().all()
    return sorted(n for n in names if namespace_from_schema(n) is not None)
