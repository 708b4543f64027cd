import pathlib
import site

import pytest
from dbharness import connect_harness

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)

import config

pytest_plugins = [
    'dbharness.pytest_plugin',
    'tests.fixtures.mocks',
    'tests.fixtures.postgres',
]


@pytest.fixture(scope='session')
def dbharness(psql_docker):
    """Session harness bound to the test container instead of $DATABASE_URL."""
    harness = connect_harness('postgresql', config=config)
    yield harness
    harness.close()


@pytest.fixture
def admin(dbharness):
    """Administrative engine of the session harness."""
    return dbharness.admin
