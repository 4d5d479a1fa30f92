"""
Provider registries.

Map a provider kind from the definition file (case-insensitive) to the class
that implements it. ``register_*`` adds new kinds without touching the
executor.
"""

from datetime import datetime
from typing import Callable, Dict, Optional

from omnibackup.utils.logsink import RunLogger
from .databases import (
    Db2Source, MsSqlSource, MySqlSource, OracleSource, PostgreSqlSource, SqliteSource
)
from .definitions import SourceConfig, StrategyConfig, TargetConfig
from .models import BackupError
from .retention import DaysStrategy, GenerationsStrategy, RetentionStrategy
from .sources import FileSource, SourceProvider
from .storage import DirectoryTarget, FtpTarget, S3Target, SftpTarget, TargetProvider


class UnknownProviderError(BackupError):
    """Raised when no provider is registered for a kind."""
    pass


SourceFactory = Callable[[SourceConfig, RunLogger], SourceProvider]
TargetFactory = Callable[[TargetConfig, RunLogger], TargetProvider]
StrategyFactory = Callable[..., RetentionStrategy]

SOURCES: Dict[str, SourceFactory] = {
    'file': FileSource,
    'directory': FileSource,
    'sqlite': SqliteSource,
    'mssql': MsSqlSource,
    'mysql': MySqlSource,
    'postgresql': PostgreSqlSource,
    'oracle': OracleSource,
    'db2': Db2Source,
}

TARGETS: Dict[str, TargetFactory] = {
    'directory': DirectoryTarget,
    's3': S3Target,
    'ftp': FtpTarget,
    'sftp': SftpTarget,
}

STRATEGIES: Dict[str, StrategyFactory] = {
    'days': DaysStrategy,
    'generations': GenerationsStrategy,
}


def _key(kind: Optional[str]) -> str:
    return (kind or '').strip().lower()


def _lookup(registry: Dict[str, Callable], kind: Optional[str], what: str) -> Callable:
    factory = registry.get(_key(kind))
    if factory is None:
        raise UnknownProviderError(f"Unknown {what} provider: {kind!r}")
    return factory


def register_source(kind: str, factory: SourceFactory):
    SOURCES[_key(kind)] = factory


def register_target(kind: str, factory: TargetFactory):
    TARGETS[_key(kind)] = factory


def register_strategy(kind: str, factory: StrategyFactory):
    STRATEGIES[_key(kind)] = factory


def create_source(config: SourceConfig, logger: RunLogger) -> SourceProvider:
    """
    Factory function to create the source provider for a configuration.

    Raises:
        UnknownProviderError: If the provider kind is not registered
        ProviderConfigError: If the provider rejects the configuration
    """
    return _lookup(SOURCES, config.provider, 'source')(config, logger)


def create_target(config: TargetConfig, logger: RunLogger) -> TargetProvider:
    """
    Factory function to create the target provider for a configuration.

    Raises:
        UnknownProviderError: If the provider kind is not registered
        ProviderConfigError: If the provider rejects the configuration
    """
    return _lookup(TARGETS, config.provider, 'target')(config, logger)


def create_strategy(config: StrategyConfig, target: TargetProvider, logger: RunLogger,
                    timestamp: Optional[datetime] = None) -> RetentionStrategy:
    """
    Factory function to create the retention strategy wrapping a target.

    Raises:
        UnknownProviderError: If the strategy kind is not registered
    """
    return _lookup(STRATEGIES, config.provider, 'strategy')(config, target, logger, timestamp)


def registered() -> Dict[str, list]:
    """Registered provider kinds, for display."""
    return {
        'sources': sorted(SOURCES),
        'targets': sorted(TARGETS),
        'strategies': sorted(STRATEGIES),
    }
