from unittest.mock import patch

import pytest
import sqlalchemy as sa
from dbharness.exceptions import MigrationError, NamespaceCollisionError
from dbharness.exceptions import ProvisioningError, SetupError
from dbharness.guard import SchemaHandle
from dbharness.namespace import new_namespace, schema_name
from dbharness.provisioner import provision


@pytest.fixture
def namespace():
    return new_namespace()


@patch('dbharness.provisioner.apply_migrations')
@patch('dbharness.provisioner.create_scoped_engine')
@patch('dbharness.provisioner.create_schema')
def test_provision_returns_ready_handle(mock_create, mock_scoped, mock_apply,
                                       namespace, harness_options, mock_engine):
    admin, engine = mock_engine(), mock_engine()
    mock_scoped.return_value = engine

    handle = provision(admin, namespace, (), harness_options)

    try:
        assert isinstance(handle, SchemaHandle)
        assert handle.schema == schema_name(namespace)
        assert handle.engine is engine
        mock_create.assert_called_once_with(admin, schema_name(namespace))
        mock_scoped.assert_called_once_with(harness_options, schema_name(namespace))
        mock_apply.assert_called_once()
    finally:
        with patch('dbharness.guard.drop_schema'), patch('dbharness.guard.terminate_backends'):
            handle.release()


@patch('dbharness.provisioner.drop_schema')
@patch('dbharness.provisioner.apply_migrations')
@patch('dbharness.provisioner.create_scoped_engine')
@patch('dbharness.provisioner.create_schema')
def test_migration_failure_drops_schema(mock_create, mock_scoped, mock_apply, mock_drop,
                                        namespace, harness_options, mock_engine):
    """A broken migration leaves nothing behind"""
    admin, engine = mock_engine(), mock_engine()
    mock_scoped.return_value = engine
    mock_apply.side_effect = MigrationError('migration 2 failed', namespace=namespace, version=2)

    with pytest.raises(MigrationError):
        provision(admin, namespace, (), harness_options)

    mock_drop.assert_called_once_with(admin, schema_name(namespace),
                                      lock_timeout=harness_options.drop_lock_timeout)
    engine.dispose.assert_called_once()


@patch('dbharness.provisioner.drop_schema')
@patch('dbharness.provisioner.create_scoped_engine')
@patch('dbharness.provisioner.create_schema')
def test_scoping_failure_drops_schema(mock_create, mock_scoped, mock_drop,
                                      namespace, harness_options, mock_engine):
    mock_scoped.return_value.connect.side_effect = sa.exc.OperationalError(
        'connect', None, Exception('too many connections'))

    with pytest.raises(ProvisioningError, match='test database setup failed'):
        provision(mock_engine(), namespace, (), harness_options)

    mock_drop.assert_called_once()


@patch('dbharness.provisioner.drop_schema')
@patch('dbharness.provisioner.create_scoped_engine')
@patch('dbharness.provisioner.create_schema')
def test_collision_leaves_existing_schema(mock_create, mock_scoped, mock_drop,
                                          namespace, harness_options, mock_engine):
    """A colliding name is fatal and the other schema is not touched"""
    mock_create.side_effect = NamespaceCollisionError('schema exists', namespace=namespace)

    with pytest.raises(SetupError):
        provision(mock_engine(), namespace, (), harness_options)

    mock_scoped.assert_not_called()
    mock_drop.assert_not_called()


@patch('dbharness.provisioner.drop_schema')
@patch('dbharness.provisioner.apply_migrations')
@patch('dbharness.provisioner.create_scoped_engine')
@patch('dbharness.provisioner.create_schema')
def test_interrupt_during_migration_drops_schema(mock_create, mock_scoped, mock_apply, mock_drop,
                                                 namespace, harness_options, mock_engine):
    """Cancellation while provisioning still cleans up"""
    mock_apply.side_effect = KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        provision(mock_engine(), namespace, (), harness_options)

    mock_drop.assert_called_once()


@patch('dbharness.provisioner.drop_schema')
@patch('dbharness.provisioner.apply_migrations')
@patch('dbharness.provisioner.create_scoped_engine')
@patch('dbharness.provisioner.create_schema')
def test_cleanup_failure_keeps_setup_error(mock_create, mock_scoped, mock_apply, mock_drop,
                                          namespace, harness_options, mock_engine):
    """The setup error is what the test sees, not the failed cleanup"""
    mock_apply.side_effect = MigrationError('migration 1 failed', version=1)
    mock_drop.side_effect = sa.exc.OperationalError('drop', None, Exception('lost connection'))

    with pytest.raises(MigrationError):
        provision(mock_engine(), namespace, (), harness_options)
