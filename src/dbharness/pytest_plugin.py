"""
pytest integration.

Enable in a conftest.py:

    pytest_plugins = ['dbharness.pytest_plugin']

Then request `isolated_db` (a SchemaHandle) or `isolated_connection` (its
default ScopedConnection) in a test. Each test gets its own migrated schema,
dropped after the test whatever its outcome. Provisioning failures are
reported as setup errors, never as test failures.
"""
import logging

import pytest
from dbharness.exceptions import ProvisioningError
from dbharness.harness import IsolatedDatabase
from dbharness.options import HarnessOptions

logger = logging.getLogger(__name__)


def pytest_addoption(parser):
    group = parser.getgroup('dbharness', 'isolated test schemas')
    group.addoption('--dbharness-url', dest='dbharness_url', default=None,
                    help='database server to provision test schemas on (default: $DATABASE_URL)')
    group.addoption('--dbharness-migrations', dest='dbharness_migrations', default=None,
                    help='directory holding the migration set')
    group.addoption('--dbharness-sweep', dest='dbharness_sweep', action='store_true',
                    default=False, help='drop orphaned test schemas when the session starts')
    group.addoption('--dbharness-sweep-retention', dest='dbharness_sweep_retention',
                    type=float, default=None,
                    help='age in seconds after which a test schema is an orphan')
    parser.addini('dbharness_url', 'database server to provision test schemas on')
    parser.addini('dbharness_migrations', 'directory holding the migration set')
    parser.addini('dbharness_sweep_retention', 'age in seconds after which a test schema is an orphan')


def _setting(config, name):
    """Command line value, else ini value, else None. Falsy values like 0 are kept.
    """
    value = config.getoption(name)
    if value is None:
        value = config.getini(name)
    return None if value == '' else value


def options_from_config(config) -> HarnessOptions:
    """Harness options from the command line, ini file or environment.
    """
    overrides = {}
    migrations = _setting(config, 'dbharness_migrations')
    if migrations is not None:
        overrides['migrations'] = str(config.rootpath / migrations)
    retention = _setting(config, 'dbharness_sweep_retention')
    if retention is not None:
        overrides['sweep_retention'] = float(retention)

    url = _setting(config, 'dbharness_url')
    try:
        if url is not None:
            return HarnessOptions.from_url(url, **overrides)
        return HarnessOptions.from_env(**overrides)
    except ValueError as e:
        raise ProvisioningError(f'no usable database configuration: {e}') from e


@pytest.fixture(scope='session')
def dbharness_options(pytestconfig) -> HarnessOptions:
    """Harness options from the command line, ini file or environment.

    Override this fixture to point the harness at a server started by the
    test session itself.
    """
    return options_from_config(pytestconfig)


@pytest.fixture(scope='session')
def dbharness(pytestconfig, dbharness_options):
    """Session-wide IsolatedDatabase; disposes its admin engine at the end.
    """
    harness = IsolatedDatabase(dbharness_options)
    try:
        if pytestconfig.getoption('dbharness_sweep'):
            dropped = harness.sweep()
            logger.info(f'Dropped {len(dropped)} orphaned test schemas')
        yield harness
    finally:
        harness.close()


@pytest.fixture
def isolated_db(dbharness):
    """A migrated schema owned by this test, dropped afterwards.
    """
    handle = dbharness.acquire()
    try:
        yield handle
    finally:
        handle.release()


@pytest.fixture
def isolated_connection(isolated_db):
    """Default connection scoped to this test's schema.
    """
    return isolated_db.connection
