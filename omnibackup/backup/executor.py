"""
Backup executor - orchestrates one backup run.

Workflow:
1. Create source providers and target strategies from the definition
2. Create the run workspace (temporary directory)
3. Load all sources in parallel
4. Zip every artifact into the workspace, one after another
5. Save the archives with every strategy in parallel
6. Dispose targets and remove the workspace
"""

import logging
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from omnibackup.utils.logsink import RunLogger, build_run_logger, plural
from .compression import CompressionError, create_archive, get_archive_size
from .definitions import BackupDefinition, load_definition
from .models import BackupArtifact, BackupError, Outcome
from .registry import create_source, create_strategy, create_target
from .retention import RetentionStrategy, to_utc
from .sources import SourceProvider
from .storage import TargetProvider

logger = logging.getLogger(__name__)

PROGRAM_TAG = 'program'


class WorkspaceError(BackupError):
    """Raised when the run workspace cannot be created."""
    pass


class RunPhase(Enum):
    INITIALIZING = 'initializing'
    EXTRACTING = 'extracting'
    ARCHIVING = 'archiving'
    DELIVERING = 'delivering'
    CLEANING_UP = 'cleaning_up'
    DONE = 'done'


@dataclass
class RunReport:
    """Summary of one backup run."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    phase: RunPhase = RunPhase.INITIALIZING
    sources: int = 0
    targets: int = 0
    loaded: List[Outcome] = field(default_factory=list)
    archived: List[Outcome] = field(default_factory=list)
    delivered: List[Outcome] = field(default_factory=list)
    archives: List[str] = field(default_factory=list)
    stopped_early: bool = False
    logs: List[str] = field(default_factory=list)

    @property
    def failures(self) -> List[Outcome]:
        return [o for o in self.loaded + self.archived + self.delivered if not o.ok]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class BackupExecutor:
    """
    Orchestrates a single backup run over a definition.

    Phases never go back; every provider failure is isolated to its own
    unit and recorded as a failed Outcome. Only a workspace that cannot be
    created aborts the run.
    """

    def __init__(self, definition: BackupDefinition, run_logger: Optional[RunLogger] = None,
                 temp_dir: Optional[str] = None, max_workers: Optional[int] = None,
                 timestamp: Optional[datetime] = None):
        """
        Initialize backup executor.

        Args:
            definition: Sources, targets and loggers to run
            run_logger: Logging sink (built from the definition when omitted)
            temp_dir: Parent directory for the workspace (system temp when omitted)
            max_workers: Upper bound for parallel loads/saves (one per task when omitted)
            timestamp: Run time used by strategies (UTC now when omitted)
        """
        self.definition = definition
        self.logger = run_logger or build_run_logger(definition.loggers)
        self.temp_dir = temp_dir
        self.max_workers = max_workers
        self.timestamp = to_utc(timestamp) if timestamp else datetime.now(timezone.utc)
        self.workspace: Optional[str] = None
        self.report = RunReport()

    def run(self) -> RunReport:
        """
        Execute the backup run.

        Returns:
            RunReport with per-unit outcomes

        Raises:
            WorkspaceError: If the workspace cannot be created
        """
        report = self.report
        self.logger.info(PROGRAM_TAG, 'Starting backup run.')

        completed = False
        sources = self.create_sources()
        strategies = self.create_strategies()
        report.sources = len(sources)
        report.targets = len(strategies)

        try:
            if not sources:
                self.logger.error(PROGRAM_TAG, 'No sources found. Quitting.')
                report.stopped_early = True
                return report

            if not strategies:
                self.logger.error(PROGRAM_TAG, 'No targets found. Quitting.')
                report.stopped_early = True
                return report

            self.workspace = self.create_workspace()

            report.phase = RunPhase.EXTRACTING
            loaded = self.extract(sources)

            report.phase = RunPhase.ARCHIVING
            report.archives = self.archive(loaded)

            report.phase = RunPhase.DELIVERING
            self.deliver(strategies, report.archives)
            completed = True

        finally:
            report.phase = RunPhase.CLEANING_UP
            self.cleanup([strategy.target for strategy in strategies])

            report.phase = RunPhase.DONE
            report.completed_at = datetime.now(timezone.utc)

            if completed:
                self.logger.info(PROGRAM_TAG, 'Completed backup run.')
            report.logs = list(self.logger.entries)

        return report

    def create_sources(self) -> List[SourceProvider]:
        """Create source providers; entries that cannot be created are skipped."""
        sources = []

        for config in self.definition.sources:
            if not config.provider:
                self.logger.error(PROGRAM_TAG, 'Ignoring source without provider.')
                continue

            try:
                sources.append(create_source(config, self.logger))
            except BackupError as e:
                self.logger.error(PROGRAM_TAG, 'Could not create source %s. Error: %s', config.name or config.provider, e)

        return sources

    def create_strategies(self) -> List[RetentionStrategy]:
        """Create targets wrapped in their strategies; entries that cannot be created are skipped."""
        strategies = []

        for config in self.definition.targets:
            if not config.provider:
                self.logger.error(PROGRAM_TAG, 'Ignoring target without provider.')
                continue

            if config.strategy is None:
                self.logger.verbose(PROGRAM_TAG, 'Ignoring target %s without strategy.', config.name)
                continue

            if not config.strategy.provider:
                self.logger.error(PROGRAM_TAG, 'Ignoring strategy without provider.')
                continue

            try:
                target = create_target(config, self.logger)
            except BackupError as e:
                self.logger.error(PROGRAM_TAG, 'Could not create target %s. Error: %s', config.name or config.provider, e)
                continue

            try:
                strategies.append(create_strategy(config.strategy, target, self.logger, self.timestamp))
            except BackupError as e:
                self.logger.error(PROGRAM_TAG, 'Could not create strategy for %s. Error: %s', target.name, e)
                target.dispose()

        return strategies

    def create_workspace(self) -> str:
        """
        Create the temporary directory shared by all phases.

        Raises:
            WorkspaceError: If the directory cannot be created
        """
        try:
            workspace = tempfile.mkdtemp(prefix='omnibackup_', dir=self.temp_dir)
        except OSError as e:
            self.logger.error(PROGRAM_TAG, 'Could not create temp directory at %s. Error: %s. Quitting', self.temp_dir, e)
            raise WorkspaceError(f"Failed to create workspace: {e}")

        self.logger.verbose(PROGRAM_TAG, 'Temporary directory: %s', workspace)
        return workspace

    def _run_parallel(self, tasks: Sequence[Tuple[str, Callable[[], object]]]) -> List[Outcome]:
        """
        Run named tasks in a thread pool and wait for all of them.

        Exceptions are converted to failed Outcomes. Results keep task order.
        """
        if not tasks:
            return []

        workers = min(self.max_workers or len(tasks), len(tasks))
        outcomes = []

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='backup_worker') as pool:
            futures = [(unit, pool.submit(func)) for unit, func in tasks]

            for unit, future in futures:
                try:
                    outcomes.append(Outcome.success(unit, future.result()))
                except Exception as e:
                    logger.exception(f"Task {unit} failed")
                    self.logger.error(unit, 'Unhandled error: %s', e)
                    outcomes.append(Outcome.failure(unit, e))

        return outcomes

    def _load_source(self, source: SourceProvider) -> List[BackupArtifact]:
        try:
            artifacts = source.load(self.workspace) or []
        finally:
            source.cleanup()

        return [artifact for artifact in artifacts if artifact.is_created]

    def extract(self, sources: List[SourceProvider]) -> List[Tuple[SourceProvider, List[BackupArtifact]]]:
        """
        Load all sources in parallel.

        Returns:
            (source, artifacts) pairs for sources that produced artifacts
        """
        tasks = [
            (source.name, lambda source=source: self._load_source(source))
            for source in sources
        ]
        self.report.loaded = self._run_parallel(tasks)

        return [
            (source, outcome.value)
            for source, outcome in zip(sources, self.report.loaded)
            if outcome.ok and outcome.value
        ]

    def archive(self, loaded: List[Tuple[SourceProvider, List[BackupArtifact]]]) -> List[str]:
        """
        Zip every artifact into the workspace, sequentially.

        Returns:
            Paths of the archives that were created
        """
        archives = []

        for source, artifacts in loaded:
            self.logger.info(source.name, 'Zipping %d backup%s.', len(artifacts), plural(len(artifacts)))

            for artifact in artifacts:
                unit = f"{source.name}/{artifact.name}"
                try:
                    archive_path = create_archive(artifact, source.name, self.workspace)
                except CompressionError as e:
                    self.logger.error(PROGRAM_TAG, 'Could not zip source. Zip: %s, Error: %s', artifact.name, e)
                    self.report.archived.append(Outcome.failure(unit, e))
                    continue

                self.logger.verbose(
                    source.name,
                    'Zipped %s (%.2f kb).',
                    artifact.name, get_archive_size(archive_path) / 1024
                )
                self.report.archived.append(Outcome.success(unit, archive_path))
                archives.append(archive_path)

        return archives

    def deliver(self, strategies: List[RetentionStrategy], archives: List[str]):
        """Save the archives with every strategy in parallel."""
        tasks = [
            (strategy.name, lambda strategy=strategy: strategy.save(archives))
            for strategy in strategies
        ]
        self.report.delivered = self._run_parallel(tasks)

    def cleanup(self, targets: List[TargetProvider]):
        """Dispose targets and remove the workspace. Failures are logged only."""
        for target in targets:
            try:
                target.dispose()
            except Exception as e:
                self.logger.error(target.name, 'Could not dispose target. Error: %s', e)

        if self.workspace:
            try:
                shutil.rmtree(self.workspace)
            except OSError as e:
                self.logger.error(
                    PROGRAM_TAG,
                    'Could not delete created temp directory. Directory: %s, Error: %s',
                    self.workspace, e
                )


def execute_backup(definition_path: str, temp_dir: Optional[str] = None,
                   max_workers: Optional[int] = None) -> RunReport:
    """
    Execute a backup run for a definition file.

    Args:
        definition_path: Path to the JSON definition file
        temp_dir: Parent directory for the workspace
        max_workers: Upper bound for parallel tasks

    Returns:
        RunReport

    Raises:
        DefinitionError: If the definition file cannot be read
        WorkspaceError: If the workspace cannot be created
    """
    definition = load_definition(definition_path)
    run_logger = build_run_logger(definition.loggers)

    executor = BackupExecutor(definition, run_logger, temp_dir=temp_dir, max_workers=max_workers)
    return executor.run()
