import os
from dataclasses import dataclass
from typing import Any

import sqlalchemy as sa

from libb import ConfigOptions, scriptname

__all__ = [
    'HarnessOptions',
]

SUPPORTED_DRIVERS = ('postgresql',)


@dataclass
class HarnessOptions(ConfigOptions):
    """Options

    supported driver names: `postgresql`

    Connection options describe the shared database server; the account must
    be allowed to create and drop schemas in `database`.

    Pooling options:
    - admin_pool_size: Connections used for schema create/drop (default: 5)
    - admin_pool_timeout: Seconds to wait for an admin connection (default: 30)
    - scoped_pool_size: Connections available to one test (default: 5)

    Teardown and maintenance:
    - drop_lock_timeout: Seconds a schema drop may wait on locks (default: 10)
    - sweep_retention: Age in seconds after which a test schema is an orphan (default: 3600)
    """
    drivername: str = 'postgresql'
    hostname: str = None
    username: str = None
    password: str = None
    database: str = None
    port: int = 5432
    timeout: int = 0
    appname: str = None
    migrations: str = None
    admin_pool_size: int = 5
    admin_pool_timeout: int = 30
    scoped_pool_size: int = 5
    drop_lock_timeout: float = 10
    sweep_retention: float = 3600

    def __post_init__(self):
        if self.drivername not in SUPPORTED_DRIVERS:
            raise ValueError(f'drivername must be one of: {list(SUPPORTED_DRIVERS)}')
        for name in ('hostname', 'username', 'database'):
            if not getattr(self, name):
                raise ValueError(f'{name} is required')
        if self.admin_pool_size < 1:
            raise ValueError('admin_pool_size must be at least 1')
        if self.scoped_pool_size < 1:
            raise ValueError('scoped_pool_size must be at least 1')
        if self.sweep_retention < 0:
            raise ValueError('sweep_retention must not be negative')
        self.appname = self.appname or scriptname() or 'dbharness'

    @classmethod
    def from_url(cls, url: str | sa.URL, **kw: Any) -> 'HarnessOptions':
        """Build options from a database URL such as `postgresql://u:p@host:5432/db`.
        """
        parsed = sa.make_url(url)
        if parsed.get_backend_name() not in SUPPORTED_DRIVERS:
            raise ValueError(f'Unsupported database URL: {parsed.render_as_string()}')
        values = {
            'hostname': parsed.host,
            'username': parsed.username,
            'password': parsed.password,
            'database': parsed.database,
            'port': parsed.port or 5432,
            }
        if 'connect_timeout' in parsed.query:
            values['timeout'] = int(parsed.query['connect_timeout'])
        values.update(kw)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **kw: Any) -> 'HarnessOptions':
        """Build options from `DATABASE_URL` and related environment variables.

        - DATABASE_URL: server to provision test schemas on (required)
        - DB_MAX_CONNECTIONS: admin pool size
        - DBHARNESS_MIGRATIONS: directory holding the migration set
        - DBHARNESS_SWEEP_RETENTION: orphan age in seconds
        """
        environ = os.environ if environ is None else environ
        url = environ.get('DATABASE_URL')
        if not url:
            raise ValueError('DATABASE_URL must be set')
        values: dict[str, Any] = {}
        if environ.get('DB_MAX_CONNECTIONS'):
            values['admin_pool_size'] = int(environ['DB_MAX_CONNECTIONS'])
        if environ.get('DBHARNESS_MIGRATIONS'):
            values['migrations'] = environ['DBHARNESS_MIGRATIONS']
        if environ.get('DBHARNESS_SWEEP_RETENTION'):
            values['sweep_retention'] = float(environ['DBHARNESS_SWEEP_RETENTION'])
        values.update(kw)
        return cls.from_url(url, **values)
