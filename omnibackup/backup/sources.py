"""
Source providers for backup runs.

Supports:
- SourceProvider: base contract (include/exclude filtering, load)
- FileSource: a single file or directory, archived in place

Database sources live in ``databases.py``.
"""

import os
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from omnibackup.utils.logsink import RunLogger, plural
from .definitions import SourceConfig
from .models import BackupArtifact, ProviderConfigError


def filter_items(items: Iterable[str], included: Optional[List[str]] = None,
                 excluded: Optional[List[str]] = None) -> List[str]:
    """
    Apply include/exclude lists to discovered items.

    Included items restrict the result when given; excluded items are always
    removed, even when they are also included. Order is preserved.

    Args:
        items: Discovered item names
        included: Only keep these (None keeps all)
        excluded: Always drop these

    Returns:
        Filtered list
    """
    result = list(items)

    if included:
        result = [item for item in result if item in included]

    if excluded:
        result = [item for item in result if item not in excluded]

    return result


class SourceProvider(ABC):
    """
    Base class for all source providers.

    A provider extracts zero or more artifacts from one configured source
    into the run workspace. Connection and discovery failures are logged and
    produce an empty result; only misconfiguration raises, at construction.
    """

    def __init__(self, config: SourceConfig, logger: RunLogger):
        """
        Initialize source provider.

        Args:
            config: Source configuration
            logger: Run logger

        Raises:
            ProviderConfigError: If no source is configured
        """
        self.config = config
        self.logger = logger

        self.logger.verbose(config.name, 'Initializing')

        if not config.source:
            self.logger.error(config.name, 'No source specified.')
            raise ProviderConfigError(f"No source specified for {config.name!r}")

        self.included = config.included
        self.excluded = config.excluded

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    def discover(self) -> Optional[List[str]]:
        """
        List every item available at the source, without filtering.

        Returns:
            Item names, or None if discovery failed or is not supported
        """

    def filtered(self) -> Optional[List[str]]:
        """Discovered items with include/exclude applied (None if discovery failed)."""
        items = self.discover()
        if items is None:
            return None
        return filter_items(items, self.included, self.excluded)

    @abstractmethod
    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        """
        Extract the source into the workspace.

        Args:
            workspace_dir: Run workspace to write artifacts into

        Returns:
            Artifacts that were created successfully
        """

    def cleanup(self):
        """Release resources held after load. Most sources hold none."""
        pass

    def _report(self, artifacts: List[BackupArtifact]) -> List[BackupArtifact]:
        self.logger.info(self.name, 'Created %d backup%s.', len(artifacts), plural(len(artifacts)))
        return artifacts


class FileSource(SourceProvider):
    """
    Backs up a single file or directory.

    Content is not copied into the workspace; the archiver reads it directly
    from the source location.
    """

    def __init__(self, config: SourceConfig, logger: RunLogger):
        super().__init__(config, logger)
        self.path = os.path.expanduser(config.source)

    def discover(self) -> Optional[List[str]]:
        if not os.path.isfile(self.path) and not os.path.isdir(self.path):
            self.logger.error(
                self.name,
                'Could not get source %s. Error: file/directory not found.',
                self.path
            )
            return None

        return [self.path]

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        paths = self.filtered()

        if not paths:
            return self._report([])

        artifact = BackupArtifact.from_path(paths[0]).mark_created()
        return self._report([artifact])
