from dataclasses import dataclass

from libb import ConfigOptions, scriptname

__all__ = ['ConnectOptions', 'SUPPORTED_DRIVERS']

SUPPORTED_DRIVERS = ('sqlite',)


@dataclass
class ConnectOptions(ConfigOptions):
    """Options

    supported driver names: `sqlite`

    The statement endpoint runs in-process over the given database:
    - database: SQLite path, or ':memory:' (required)
    - timeout: seconds to wait on a locked database (0 uses the driver default)
    - init_command: statement run once after connecting
    - max_prepared_statements: open statements allowed at once (default: 16382)
    """
    drivername: str = 'sqlite'
    database: str = None
    timeout: int = 0
    init_command: str = None
    appname: str = None
    max_prepared_statements: int = 16382

    def __post_init__(self):
        if self.drivername not in SUPPORTED_DRIVERS:
            raise ValueError(f'drivername must be one of: {SUPPORTED_DRIVERS}')
        if not self.database:
            raise ValueError('database is required')
        if self.timeout < 0:
            raise ValueError('timeout must not be negative')
        if self.max_prepared_statements < 1:
            raise ValueError('max_prepared_statements must be at least 1')
        self.appname = self.appname or scriptname() or 'python_console'
