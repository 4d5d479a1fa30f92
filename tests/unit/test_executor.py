"""
Unit tests for backup executor (omnibackup/backup/executor.py).

Tests the run phases, failure isolation between sources and targets,
workspace handling and target disposal.
"""

import json
import os
import threading
import zipfile
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from omnibackup.backup import registry
from omnibackup.backup.definitions import BackupDefinition, SourceConfig, StrategyConfig, TargetConfig
from omnibackup.backup.executor import BackupExecutor, RunPhase, WorkspaceError, execute_backup
from omnibackup.backup.models import BackupArtifact
from omnibackup.backup.sources import SourceProvider
from omnibackup.backup.storage import StorageError, TargetProvider


RUN_TIME = datetime(2024, 1, 10, 2, 0, 0, tzinfo=timezone.utc)


class StaticSource(SourceProvider):
    """Writes its source text into one workspace file."""

    def discover(self) -> Optional[List[str]]:
        return [f"{self.name}.txt"]

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        artifact = BackupArtifact.create(workspace_dir, self.discover()[0])
        with open(artifact.path, 'w') as f:
            f.write(self.config.source)
        return self._report([artifact.mark_created()])


class FailingSource(StaticSource):
    cleaned_up = 0

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        raise RuntimeError('source exploded')

    def cleanup(self):
        FailingSource.cleaned_up += 1


class UncreatedSource(StaticSource):
    """Returns an artifact whose extraction never finished."""

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        return [BackupArtifact.create(workspace_dir, 'half.sql')]


class FixedNameSource(StaticSource):
    """Produces x.txt created at the run time, whatever its name."""

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        artifact = BackupArtifact.create(workspace_dir, 'x.txt')
        with open(artifact.path, 'w') as f:
            f.write(self.config.source)
        return [artifact.mark_created(RUN_TIME)]


class BlockingSource(StaticSource):
    release = None

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        BlockingSource.release.wait()
        return super().load(workspace_dir)


class MemoryTarget(TargetProvider):
    """Keeps stored file names per bucket and counts disposals."""

    instances = []

    def __init__(self, config, logger):
        super().__init__(config, logger)
        self.buckets = {}
        self.dispose_calls = 0
        MemoryTarget.instances.append(self)

    def store(self, bucket: str, path: str):
        if self.config.target == 'broken':
            raise StorageError('target is read-only')
        self.buckets.setdefault(bucket, []).append(os.path.basename(path))

    def delete_bucket(self, bucket: str):
        self.buckets.pop(bucket, None)

    def list_buckets(self) -> List[str]:
        return sorted(self.buckets)

    def dispose(self):
        self.dispose_calls += 1
        super().dispose()


class ExplodingTarget(MemoryTarget):
    def store(self, bucket: str, path: str):
        raise RuntimeError('unexpected')

    def prepare_bucket(self, bucket: str):
        raise RuntimeError('unexpected')


@pytest.fixture(autouse=True)
def fake_providers(monkeypatch):
    """Register in-memory providers for the duration of a test."""
    monkeypatch.setitem(registry.SOURCES, 'static', StaticSource)
    monkeypatch.setitem(registry.SOURCES, 'failing', FailingSource)
    monkeypatch.setitem(registry.SOURCES, 'uncreated', UncreatedSource)
    monkeypatch.setitem(registry.SOURCES, 'blocking', BlockingSource)
    monkeypatch.setitem(registry.SOURCES, 'fixed', FixedNameSource)
    monkeypatch.setitem(registry.TARGETS, 'memory', MemoryTarget)
    monkeypatch.setitem(registry.TARGETS, 'exploding', ExplodingTarget)
    MemoryTarget.instances = []
    FailingSource.cleaned_up = 0


def source(name, provider='static', content='data'):
    return SourceConfig(provider=provider, name=name, source=content)


def target(name, provider='memory', location='mem', strategy='days'):
    strategy_config = StrategyConfig(strategy, '3') if strategy is not None else None
    return TargetConfig(provider=provider, name=name, target=location, strategy=strategy_config)


def make_executor(run_logger, tmp_path, sources, targets, **kwargs):
    definition = BackupDefinition(sources=sources, targets=targets)
    return BackupExecutor(definition, run_logger, temp_dir=str(tmp_path), timestamp=RUN_TIME, **kwargs)


class TestBackupExecutor:
    """Test BackupExecutor runs."""

    def test_successful_run(self, run_logger, tmp_path):
        """Test every source is archived and delivered to every target."""
        executor = make_executor(
            run_logger, tmp_path,
            [source('alpha'), source('beta')],
            [target('one'), target('two')]
        )

        report = executor.run()

        assert report.phase == RunPhase.DONE
        assert report.sources == 2
        assert report.targets == 2
        assert len(report.archives) == 2
        assert report.failures == []
        assert report.completed_at is not None
        assert report.duration_seconds >= 0

        for memory in MemoryTarget.instances:
            stored = memory.buckets['2024-01-10']
            assert len(stored) == 2
            assert any(name.startswith('alpha_alpha.txt_') for name in stored)
            assert any(name.startswith('beta_beta.txt_') for name in stored)

    def test_completed_is_logged_once(self, run_logger, tmp_path):
        executor = make_executor(run_logger, tmp_path, [source('alpha')], [target('one')])

        report = executor.run()

        assert sum('Completed backup run.' in e for e in report.logs) == 1
        assert report.logs == run_logger.entries

    def test_run_time_is_converted_to_utc(self, run_logger, tmp_path):
        """Test the bucket follows the UTC date of a non-UTC run time."""
        eastern = timezone(timedelta(hours=-5))
        definition = BackupDefinition(sources=[source('alpha')], targets=[target('one')])
        executor = BackupExecutor(
            definition, run_logger, temp_dir=str(tmp_path), timestamp=datetime(2024, 1, 10, 21, 0, tzinfo=eastern)
        )

        executor.run()

        assert executor.timestamp == datetime(2024, 1, 11, 2, 0, tzinfo=timezone.utc)
        assert list(MemoryTarget.instances[0].buckets) == ['2024-01-11']

    def test_failing_source_is_isolated(self, run_logger, tmp_path):
        """Test a raising source does not keep the others from being delivered."""
        executor = make_executor(
            run_logger, tmp_path,
            [source('alpha'), source('broken', provider='failing'), source('gamma')],
            [target('one')]
        )

        report = executor.run()

        assert [o.unit for o in report.loaded] == ['alpha', 'broken', 'gamma']
        assert [o.ok for o in report.loaded] == [True, False, True]
        assert report.loaded[1].error == 'source exploded'
        assert len(report.archives) == 2
        assert report.delivered[0].ok
        assert len(MemoryTarget.instances[0].buckets['2024-01-10']) == 2
        assert any('broken (error): Unhandled error: source exploded' in e for e in report.logs)

    def test_failing_source_is_cleaned_up(self, run_logger, tmp_path):
        executor = make_executor(run_logger, tmp_path, [source('broken', provider='failing')], [target('one')])

        executor.run()

        assert FailingSource.cleaned_up == 1

    def test_uncreated_artifacts_are_not_archived(self, run_logger, tmp_path):
        executor = make_executor(run_logger, tmp_path, [source('db', provider='uncreated')], [target('one')])

        report = executor.run()

        assert report.loaded[0].ok
        assert report.loaded[0].value == []
        assert report.archives == []
        assert report.archived == []

    def test_colliding_archive_names_are_reported(self, run_logger, tmp_path):
        """Test a second archive with a taken name fails instead of replacing the first."""
        executor = make_executor(
            run_logger, tmp_path,
            [source('db:1', provider='fixed', content='from A'), source('db1', provider='fixed', content='from B')],
            [target('one')]
        )

        report = executor.run()

        assert [o.ok for o in report.archived] == [True, False]
        assert report.archived[1].unit == 'db1/x.txt'
        assert len(report.archives) == 1
        assert len(report.failures) == 1
        assert MemoryTarget.instances[0].buckets['2024-01-10'] == ['db1_x.txt_20240110020000.zip']
        assert any('already exists' in e for e in report.logs)

    def test_failing_target_is_isolated(self, run_logger, tmp_path):
        """Test a target that raises does not keep other targets from saving."""
        executor = make_executor(
            run_logger, tmp_path,
            [source('alpha')],
            [target('bad', provider='exploding'), target('good')]
        )

        report = executor.run()

        assert [o.ok for o in report.delivered] == [False, True]
        assert MemoryTarget.instances[1].buckets['2024-01-10']

    def test_store_errors_are_logged_not_raised(self, run_logger, tmp_path):
        executor = make_executor(run_logger, tmp_path, [source('alpha')], [target('ro', location='broken')])

        report = executor.run()

        assert report.delivered[0].ok
        assert report.delivered[0].value == []
        assert any('target is read-only' in e for e in report.logs)

    def test_no_sources_stops_early(self, run_logger, tmp_path):
        """Test a run without usable sources quits before creating a workspace."""
        executor = make_executor(run_logger, tmp_path, [], [target('one')])

        report = executor.run()

        assert report.stopped_early
        assert report.phase == RunPhase.DONE
        assert executor.workspace is None
        assert list(tmp_path.iterdir()) == []
        assert MemoryTarget.instances[0].dispose_calls == 1
        assert any('No sources found. Quitting.' in e for e in report.logs)
        assert not any('Completed backup run.' in e for e in report.logs)

    def test_no_targets_stops_early(self, run_logger, tmp_path):
        executor = make_executor(run_logger, tmp_path, [source('alpha')], [])

        report = executor.run()

        assert report.stopped_early
        assert report.loaded == []
        assert any('No targets found. Quitting.' in e for e in report.logs)

    def test_workspace_is_removed(self, run_logger, tmp_path):
        """Test the workspace exists during the run and is removed afterwards."""
        executor = make_executor(run_logger, tmp_path, [source('alpha')], [target('one')])

        report = executor.run()

        assert executor.workspace.startswith(str(tmp_path))
        assert not os.path.exists(executor.workspace)
        assert report.archives[0].startswith(executor.workspace)

    def test_targets_disposed_exactly_once(self, run_logger, tmp_path):
        executor = make_executor(
            run_logger, tmp_path,
            [source('alpha'), source('broken', provider='failing')],
            [target('one'), target('bad', provider='exploding')]
        )

        executor.run()

        assert [t.dispose_calls for t in MemoryTarget.instances] == [1, 1]

    def test_workspace_error(self, run_logger, tmp_path):
        """Test an unusable temp directory aborts the run and still disposes targets."""
        missing = tmp_path / 'missing' / 'deeper'
        definition = BackupDefinition(sources=[source('alpha')], targets=[target('one')])
        executor = BackupExecutor(definition, run_logger, temp_dir=str(missing), timestamp=RUN_TIME)

        with pytest.raises(WorkspaceError):
            executor.run()

        assert executor.report.phase == RunPhase.DONE
        assert MemoryTarget.instances[0].dispose_calls == 1

    def test_unusable_entries_are_skipped(self, run_logger, tmp_path):
        """Test unknown, empty and misconfigured providers are skipped with a log entry."""
        executor = make_executor(
            run_logger, tmp_path,
            [
                source('alpha'),
                source('dropbox', provider='dropbox'),
                source('nameless', provider=''),
                source('empty', content=''),
            ],
            [
                target('one'),
                target('cloud', provider='dropbox'),
                target('nostrategy', strategy=None),
                target('weekly', strategy='weekly'),
                target('blankstrategy', strategy=''),
            ]
        )

        report = executor.run()

        assert report.sources == 1
        assert report.targets == 1
        assert len(report.archives) == 1
        assert any('Ignoring source without provider.' in e for e in report.logs)
        assert any('Could not create source dropbox' in e for e in report.logs)
        assert any('Ignoring target nostrategy without strategy.' in e for e in report.logs)
        assert any('Ignoring strategy without provider.' in e for e in report.logs)

        # Target created before its strategy failed is disposed right away
        weekly = [t for t in MemoryTarget.instances if t.name == 'weekly'][0]
        assert weekly.dispose_calls == 1

    def test_max_workers_bounds_parallelism(self, run_logger, tmp_path, monkeypatch):
        """Test loads run on at most max_workers threads."""
        names = set()

        class RecordingSource(StaticSource):
            def load(self, workspace_dir):
                names.add(threading.current_thread().name)
                return super().load(workspace_dir)

        monkeypatch.setitem(registry.SOURCES, 'recording', RecordingSource)
        executor = make_executor(
            run_logger, tmp_path,
            [source(f"s{i}", provider='recording') for i in range(6)],
            [target('one')],
            max_workers=1
        )

        report = executor.run()

        assert len(report.archives) == 6
        assert len(names) == 1
        assert names.pop().startswith('backup_worker')

    def test_stuck_source_blocks_the_run(self, run_logger, tmp_path):
        """Test there is no per-source timeout: the run waits for every load."""
        BlockingSource.release = threading.Event()
        executor = make_executor(run_logger, tmp_path, [source('slow', provider='blocking')], [target('one')])
        reports = []

        runner = threading.Thread(target=lambda: reports.append(executor.run()))
        runner.start()
        runner.join(timeout=0.5)

        assert runner.is_alive()
        assert executor.report.phase == RunPhase.EXTRACTING

        BlockingSource.release.set()
        runner.join(timeout=10)

        assert not runner.is_alive()
        assert len(reports[0].archives) == 1


class TestExecuteBackup:
    """Test execute_backup with definition files and real providers."""

    def test_file_source_to_directory_target(self, temp_files, tmp_path):
        """Test a directory is archived and stored in a dated bucket."""
        nas = tmp_path / 'nas'
        work = tmp_path / 'work'
        work.mkdir()
        definition_path = tmp_path / 'definitions.json'
        definition_path.write_text(json.dumps({
            'sources': [{'provider': 'directory', 'name': 'files', 'source': str(temp_files)}],
            'targets': [{
                'provider': 'directory', 'name': 'nas', 'target': str(nas),
                'strategy': {'provider': 'days', 'revisions': 7}
            }]
        }))

        report = execute_backup(str(definition_path), temp_dir=str(work))

        assert report.failures == []
        assert list(work.iterdir()) == []

        buckets = list(nas.iterdir())
        assert len(buckets) == 1
        archives = list(buckets[0].iterdir())
        assert len(archives) == 1
        assert archives[0].name.startswith('files_data_')

        with zipfile.ZipFile(archives[0]) as zipf:
            assert 'nested/test_file3.txt' in zipf.namelist()

    def test_sqlite_source_to_directory_target(self, sqlite_databases, tmp_path):
        nas = tmp_path / 'nas'
        definition_path = tmp_path / 'definitions.json'
        definition_path.write_text(json.dumps({
            'sources': [{'provider': 'sqlite', 'name': 'db', 'source': str(sqlite_databases), 'include': 'app.db'}],
            'targets': [{'provider': 'directory', 'name': 'nas', 'target': str(nas), 'strategy': {'provider': 'generations'}}]
        }))

        report = execute_backup(str(definition_path), temp_dir=str(tmp_path))

        assert len(report.archives) == 1
        stored = [p.name for bucket in nas.iterdir() for p in bucket.iterdir()]
        assert len(stored) == 1
        assert stored[0].startswith('db_app.db')
