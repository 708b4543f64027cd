"""
Harness-specific exception classes.

Setup errors are fatal to the single test that hit them and carry a message
prefix that separates them from assertion failures in test output. Teardown
problems are never raised to the test; they surface as `SchemaLeakWarning`.
"""
import psycopg
import sqlalchemy.exc

SETUP_FAILURE_PREFIX = 'test database setup failed'


class HarnessError(Exception):
    """Base class for all harness errors.
    """


class SetupError(HarnessError):
    """Error while preparing an isolated schema for a test.
    """

    def __init__(self, message: str, namespace: str | None = None) -> None:
        self.namespace = namespace
        super().__init__(f'{SETUP_FAILURE_PREFIX}: {message}')


class NamespaceError(SetupError):
    """The namespace generator could not produce an identifier.
    """


class NamespaceCollisionError(SetupError):
    """A schema with the generated name already exists.
    """


class ProvisioningError(SetupError):
    """Creating or scoping the isolated schema failed.
    """


class MigrationError(SetupError):
    """Loading or applying the migration set failed.
    """

    def __init__(self, message: str, namespace: str | None = None,
                 version: int | None = None) -> None:
        self.version = version
        super().__init__(message, namespace)


class TeardownError(HarnessError):
    """Dropping an isolated schema failed.
    """


class SchemaLeakWarning(UserWarning):
    """An isolated schema could not be dropped and was left behind.
    """


DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    sqlalchemy.exc.OperationalError,
    sqlalchemy.exc.InterfaceError,
    )

DuplicateSchema = psycopg.errors.DuplicateSchema
