import psycopg
import pytest
from dbharness.exceptions import NamespaceCollisionError, ProvisioningError
from dbharness.exceptions import TeardownError
from dbharness.namespace import new_namespace, schema_name
from dbharness.schema import create_schema, drop_schema, quote_schema
from sqlalchemy import exc as sa_exc


def _driver_error(orig):
    return sa_exc.ProgrammingError('statement', None, orig)


def test_quote_schema():
    schema = schema_name(new_namespace())
    assert quote_schema(schema) == f'"{schema}"'


@pytest.mark.parametrize('name', ['public', 'test_', 'test_x; drop schema public', 'users'])
def test_quote_schema_rejects_foreign_names(name):
    with pytest.raises(ValueError):
        quote_schema(name)


def test_create_schema(mock_engine):
    engine = mock_engine()
    schema = schema_name(new_namespace())

    create_schema(engine, schema)

    cn = engine.connect.return_value
    cn.exec_driver_sql.assert_called_once_with(f'create schema "{schema}"')


def test_create_schema_collision_is_not_retried(mock_engine):
    engine = mock_engine()
    cn = engine.connect.return_value
    cn.exec_driver_sql.side_effect = _driver_error(psycopg.errors.DuplicateSchema('exists'))
    namespace = new_namespace()

    with pytest.raises(NamespaceCollisionError) as exc_info:
        create_schema(engine, schema_name(namespace))

    assert exc_info.value.namespace == namespace
    assert str(exc_info.value).startswith('test database setup failed:')
    assert cn.exec_driver_sql.call_count == 1


def test_create_schema_other_failure(mock_engine):
    engine = mock_engine()
    cn = engine.connect.return_value
    cn.exec_driver_sql.side_effect = _driver_error(
        psycopg.errors.InsufficientPrivilege('permission denied for database'))

    with pytest.raises(ProvisioningError, match='permission denied'):
        create_schema(engine, schema_name(new_namespace()))


def test_drop_schema_bounds_lock_wait(mock_engine):
    engine = mock_engine()
    schema = schema_name(new_namespace())

    drop_schema(engine, schema, lock_timeout=2.5)

    cn = engine.connect.return_value
    cn.execution_options.assert_called_once_with(isolation_level='READ COMMITTED')
    statements = [c.args[0] for c in cn.exec_driver_sql.call_args_list]
    assert statements == [
        "set local lock_timeout = '2500ms'",
        f'drop schema if exists "{schema}" cascade',
    ]


def test_drop_schema_failure(mock_engine):
    engine = mock_engine()
    cn = engine.connect.return_value
    cn.exec_driver_sql.side_effect = [
        None, _driver_error(psycopg.errors.LockNotAvailable('lock timeout'))]

    with pytest.raises(TeardownError, match='lock timeout'):
        drop_schema(engine, schema_name(new_namespace()))
