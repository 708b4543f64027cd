import pytest

pytestmark = pytest.mark.integration


def test_isolated_connection_is_scoped(isolated_db, isolated_connection):
    assert isolated_connection is isolated_db.connection
    assert isolated_connection.current_schema() == isolated_db.schema


@pytest.mark.parametrize('name', ['Ann', 'Bob', 'Cy'])
def test_each_test_starts_empty(isolated_connection, name):
    """Writes from earlier parametrized runs never leak into later ones"""
    assert isolated_connection.select_scalar('select count(*) from users') == 0

    isolated_connection.execute('insert into users (name, age) values (%s, %s)', name, 30)

    assert isolated_connection.select_column('select name from users') == [name]
