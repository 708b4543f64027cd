import datetime

import dbharness as dbharness_api
import pytest
from dbharness.namespace import NamespaceGenerator, schema_name
from dbharness.schema import create_schema, drop_schema, list_test_schemas
from dbharness.schema import schema_exists
from dbharness.sweep import sweep_orphans

pytestmark = pytest.mark.integration


@pytest.fixture
def orphan(admin):
    """A schema left by a run that crashed two hours ago."""
    then = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(hours=2)
    schema = schema_name(NamespaceGenerator(clock=lambda: int(then.timestamp() * 1000))())
    create_schema(admin, schema)
    yield schema
    drop_schema(admin, schema)


@pytest.fixture
def foreign_schema(admin):
    with admin.connect() as cn:
        cn.exec_driver_sql('create schema if not exists test_not_ours')
    yield 'test_not_ours'
    with admin.connect() as cn:
        cn.exec_driver_sql('drop schema if exists test_not_ours cascade')


def test_acquire_insert_release_then_sweep_finds_nothing(dbharness, admin):
    """acquire, insert one row, count it, release; no schema remains for the namespace"""
    handle = dbharness.acquire()
    handle.connection.execute('insert into users (name, age) values (%s, %s)', 'Ann', 30)
    assert handle.connection.select_scalar('select count(*) from users') == 1

    handle.release()

    found = sweep_orphans(admin, retention=0, dry_run=True)
    assert handle.schema not in found
    assert handle.schema not in list_test_schemas(admin)


def test_sweep_drops_orphans_only(dbharness, admin, orphan, foreign_schema):
    """Old harness schemas go; live tests and foreign schemas stay"""
    with dbharness.isolated() as live:
        dropped = dbharness.sweep(retention=datetime.timedelta(hours=1))

        assert orphan in dropped
        assert live.schema not in dropped
        assert not schema_exists(admin, orphan)
        assert schema_exists(admin, live.schema)
        assert schema_exists(admin, foreign_schema)


def test_sweep_dry_run_keeps_schemas(dbharness, admin, orphan):
    found = dbharness.sweep(retention=3600, dry_run=True)

    assert orphan in found
    assert schema_exists(admin, orphan)


def test_module_facades(dbharness, admin, orphan):
    handle = dbharness_api.acquire(dbharness)
    assert schema_exists(admin, handle.schema)

    dbharness_api.release(handle)
    dbharness_api.release(handle)
    assert not schema_exists(admin, handle.schema)

    assert orphan in dbharness_api.sweep(dbharness, retention=3600)
    assert not schema_exists(admin, orphan)
