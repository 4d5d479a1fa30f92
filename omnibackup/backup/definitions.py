"""
Backup definitions: the configured sources, targets and loggers.

Definitions are read from a JSON file:

    {
        "sources": [{"provider": "mysql", "name": "db", "source": "host=...", "exclude": "mysql"}],
        "targets": [{"provider": "directory", "name": "nas", "target": "/mnt/nas",
                     "strategy": {"provider": "generations"}}],
        "loggers": [{"provider": "console", "priorities": "info,error"}]
    }

Entries are loaded leniently: a malformed entry is kept with empty fields so
the executor can reject it individually without dropping its siblings.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import BackupError


class DefinitionError(BackupError):
    """Raised when the definition file cannot be read."""
    pass


def _split_list(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    items = [item.strip() for item in value.split(',')]
    items = [item for item in items if item]
    return items or None


@dataclass(frozen=True)
class StrategyConfig:
    """Retention strategy of a target."""

    provider: str
    revisions_raw: Optional[str] = None

    @property
    def revisions(self) -> int:
        """Number of revisions to keep; 0 (keep forever) when unset, negative or unparsable."""
        try:
            revisions = int(str(self.revisions_raw).strip())
        except (TypeError, ValueError):
            return 0
        return max(revisions, 0)


@dataclass(frozen=True)
class SourceConfig:
    """A configured data source."""

    provider: str
    name: str
    source: str
    include: Optional[str] = None
    exclude: Optional[str] = None

    @property
    def included(self) -> Optional[List[str]]:
        return _split_list(self.include)

    @property
    def excluded(self) -> Optional[List[str]]:
        return _split_list(self.exclude)


@dataclass(frozen=True)
class TargetConfig:
    """A configured data target with its retention strategy."""

    provider: str
    name: str
    target: str
    strategy: Optional[StrategyConfig] = None


@dataclass(frozen=True)
class LoggerConfig:
    """A configured run logger (``console`` or ``file``)."""

    provider: str
    priorities: Optional[str] = None
    settings: Optional[str] = None


@dataclass
class BackupDefinition:
    """Everything one backup run needs to know."""

    sources: List[SourceConfig] = field(default_factory=list)
    targets: List[TargetConfig] = field(default_factory=list)
    loggers: List[LoggerConfig] = field(default_factory=list)


def _text(entry: Dict[str, Any], key: str) -> Optional[str]:
    value = entry.get(key)
    if value is None:
        return None
    return str(value).strip()


def _section(data: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    section = data.get(key, [])
    if section is None:
        return []
    if not isinstance(section, list):
        raise DefinitionError(f"Section '{key}' must be a list")
    return [entry if isinstance(entry, dict) else {} for entry in section]


def parse_strategy(entry: Optional[Dict[str, Any]]) -> Optional[StrategyConfig]:
    if not isinstance(entry, dict):
        return None
    revisions = entry.get('revisions')
    return StrategyConfig(
        provider=_text(entry, 'provider') or '',
        revisions_raw=None if revisions is None else str(revisions)
    )


def parse_definition(data: Dict[str, Any]) -> BackupDefinition:
    """
    Build a BackupDefinition from decoded JSON.

    Args:
        data: Decoded definition document

    Returns:
        BackupDefinition

    Raises:
        DefinitionError: If the document or one of its sections has the wrong shape
    """
    if not isinstance(data, dict):
        raise DefinitionError("Definition must be a JSON object")

    sources = [
        SourceConfig(
            provider=_text(entry, 'provider') or '',
            name=_text(entry, 'name') or '',
            source=_text(entry, 'source') or '',
            include=_text(entry, 'include'),
            exclude=_text(entry, 'exclude')
        )
        for entry in _section(data, 'sources')
    ]

    targets = [
        TargetConfig(
            provider=_text(entry, 'provider') or '',
            name=_text(entry, 'name') or '',
            target=_text(entry, 'target') or '',
            strategy=parse_strategy(entry.get('strategy'))
        )
        for entry in _section(data, 'targets')
    ]

    loggers = [
        LoggerConfig(
            provider=_text(entry, 'provider') or '',
            priorities=_text(entry, 'priorities'),
            settings=_text(entry, 'settings')
        )
        for entry in _section(data, 'loggers')
    ]

    return BackupDefinition(sources=sources, targets=targets, loggers=loggers)


def load_definition(path: str) -> BackupDefinition:
    """
    Load backup definitions from a JSON file.

    Args:
        path: Path to the definition file

    Returns:
        BackupDefinition

    Raises:
        DefinitionError: If the file is missing, unreadable or not valid JSON
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise DefinitionError(f"Definition file not found: {path}")
    except json.JSONDecodeError as e:
        raise DefinitionError(f"Invalid JSON in {path}: {e}")
    except OSError as e:
        raise DefinitionError(f"Failed to read {path}: {e}")

    return parse_definition(data)
