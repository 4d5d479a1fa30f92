"""
Backup module for omnibackup.

This module handles the core backup functionality including:
- Source providers (files, directories, databases)
- Target providers (directory, S3, FTP, SFTP)
- Retention strategies (days, generations)
- Compression
- Execution orchestration
"""

from .definitions import BackupDefinition, load_definition
from .executor import BackupExecutor, RunPhase, RunReport, execute_backup
from .compression import create_archive
from .registry import create_source, create_strategy, create_target
from .retention import DaysStrategy, GenerationsStrategy
from .storage import DirectoryTarget, FtpTarget, S3Target, SftpTarget

__all__ = [
    'BackupDefinition',
    'load_definition',
    'BackupExecutor',
    'RunPhase',
    'RunReport',
    'execute_backup',
    'create_archive',
    'create_source',
    'create_strategy',
    'create_target',
    'DaysStrategy',
    'GenerationsStrategy',
    'DirectoryTarget',
    'FtpTarget',
    'S3Target',
    'SftpTarget'
]
