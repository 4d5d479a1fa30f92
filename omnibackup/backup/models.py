"""
Value objects shared by the backup pipeline.

- BackupArtifact: one extracted unit handed from a source to the archiver
- Outcome: per-unit result record collected by the executor
- BackupError: base class for all pipeline errors
"""

import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


class BackupError(Exception):
    """Base class for errors raised by the backup pipeline."""
    pass


class BackupArtifact:
    """
    A file or directory produced by a source provider.

    The artifact is created before the content exists on disk. The source
    marks it as created once extraction succeeded; unmarked artifacts are
    never handed to the archiver.
    """

    def __init__(self, path: str, name: str, identifier: Optional[str] = None):
        """
        Initialize artifact.

        Args:
            path: Location of the artifact content (file or directory)
            name: Name used when the artifact is stored at a target
            identifier: Unique token; generated when omitted
        """
        self._path = path
        self._identifier = identifier or uuid.uuid4().hex
        self.name = name
        self.created_on: Optional[datetime] = None

    @classmethod
    def create(cls, directory: str, name: str) -> 'BackupArtifact':
        """
        Create a new artifact located inside a workspace directory.

        The path is derived from a fresh identifier so artifacts of different
        sources never collide inside one workspace.

        Args:
            directory: Workspace directory the content will be written to
            name: Storage name of the artifact

        Returns:
            New BackupArtifact (not yet materialized)
        """
        identifier = uuid.uuid4().hex
        return cls(os.path.join(directory, identifier), name, identifier)

    @classmethod
    def from_path(cls, path: str) -> 'BackupArtifact':
        """
        Wrap an existing file or directory.

        Args:
            path: Existing path

        Returns:
            BackupArtifact named after the last path component
        """
        basename = os.path.basename(os.path.normpath(path))
        identifier = os.path.splitext(basename)[0]
        return cls(path, basename, identifier)

    @property
    def path(self) -> str:
        return self._path

    @property
    def identifier(self) -> str:
        return self._identifier

    @property
    def is_created(self) -> bool:
        return self.created_on is not None

    def mark_created(self, when: Optional[datetime] = None) -> 'BackupArtifact':
        """Record successful extraction (UTC now unless given)."""
        self.created_on = when or datetime.now(timezone.utc)
        return self

    def __repr__(self):
        return f'<BackupArtifact {self.name} path={self._path} created={self.is_created}>'


@dataclass(frozen=True)
class Outcome:
    """
    Result of one unit of work (a source load, an archive, a target save).

    Exactly one of ``value`` and ``error`` is meaningful: a failed unit
    carries the error text and no value.
    """

    unit: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, unit: str, value: Any) -> 'Outcome':
        return cls(unit=unit, value=value)

    @classmethod
    def failure(cls, unit: str, error: Any) -> 'Outcome':
        return cls(unit=unit, error=str(error) or error.__class__.__name__)


class ProviderConfigError(BackupError):
    """Raised when a provider cannot be created from its configuration."""
    pass
