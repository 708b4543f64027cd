"""
Loading and applying the project's migration set.

Migration files follow the `<version>_<description>.sql` layout. Reversible
migrations (`<version>_<description>.up.sql` / `.down.sql`) are accepted and
only the `up` half is applied. Every isolated schema receives the complete set,
in version order, so it is schema-equivalent to production.
"""
import hashlib
import logging
import pathlib
import re
from dataclasses import dataclass

import sqlalchemy as sa
from dbharness.connection import NO_PARAMETERS
from dbharness.exceptions import MigrationError

__all__ = [
    'Migration',
    'MigrationSet',
    'load_migrations',
    'apply_migrations',
    'BOOKKEEPING_TABLE',
]

logger = logging.getLogger(__name__)

BOOKKEEPING_TABLE = '_dbharness_migrations'

_FILENAME_RE = re.compile(r'^(?P<version>\d+)_(?P<description>.+?)(?P<direction>\.up|\.down)?\.sql$')


@dataclass(frozen=True, slots=True)
class Migration:
    """One schema-definition step."""
    version: int
    description: str
    sql: str
    checksum: str
    path: pathlib.Path | None = None

    @classmethod
    def from_file(cls, path: pathlib.Path) -> 'Migration':
        match = _FILENAME_RE.match(path.name)
        if match is None:
            raise MigrationError(f'malformed migration file name: {path.name}')
        content = path.read_bytes()
        return cls(
            version=int(match['version']),
            description=match['description'].replace('_', ' '),
            sql=content.decode('utf-8'),
            checksum=hashlib.sha384(content).hexdigest(),
            path=path,
        )


MigrationSet = tuple[Migration, ...]


def load_migrations(directory: str | pathlib.Path) -> MigrationSet:
    """Load the ordered migration set from a directory.
    """
    root = pathlib.Path(directory)
    if not root.is_dir():
        raise MigrationError(f'migration directory not found: {root}')

    migrations: dict[int, Migration] = {}
    for path in sorted(root.glob('*.sql')):
        if path.name.endswith('.down.sql'):
            continue
        migration = Migration.from_file(path)
        if migration.version in migrations:
            other = migrations[migration.version].path.name
            raise MigrationError(f'duplicate migration version {migration.version}: '
                                 f'{other} and {path.name}', version=migration.version)
        migrations[migration.version] = migration

    ordered = tuple(migrations[v] for v in sorted(migrations))
    logger.debug(f'Loaded {len(ordered)} migrations from {root}')
    return ordered


def _bookkeeping_ddl() -> str:
    return f"""
create table {BOOKKEEPING_TABLE} (
    version bigint primary key,
    description text not null,
    checksum text not null,
    applied_at timestamptz not null default now()
)
"""


def apply_migrations(connection: sa.Connection, migrations: MigrationSet,
                     namespace: str | None = None) -> None:
    """Apply the migration set in order inside one transaction.

    The connection must already be scoped to the target schema; statements
    are not qualified. Raises MigrationError naming the failing version.
    """
    version = None
    try:
        with connection.begin():
            connection.exec_driver_sql(_bookkeeping_ddl(), execution_options=NO_PARAMETERS)
            for migration in migrations:
                version = migration.version
                logger.debug(f'Applying migration {migration.version} ({migration.description})')
                connection.exec_driver_sql(migration.sql, execution_options=NO_PARAMETERS)
                connection.exec_driver_sql(
                    f'insert into {BOOKKEEPING_TABLE} (version, description, checksum) '
                    'values (%s, %s, %s)',
                    (migration.version, migration.description, migration.checksum))
    except sa.exc.DBAPIError as e:
        where = f'migration {version}' if version is not None else 'migration bookkeeping'
        raise MigrationError(f'{where} failed: {e.orig}', namespace=namespace,
                             version=version) from e
