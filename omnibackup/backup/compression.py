"""
Zip archives for backup artifacts.

Every artifact becomes one archive in the run workspace, named
{source}_{artifact}_{YYYYmmddHHMMSS}.zip so archives of different sources and
runs never collide at a target.
"""

import os
import re
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from .models import BackupArtifact, BackupError

# Characters that are not allowed in file names on common filesystems
_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


class CompressionError(BackupError):
    """Raised when archive creation fails."""
    pass


def sanitize_filename(name: str) -> str:
    """Strip characters that are not allowed in file names."""
    return _INVALID_CHARS.sub('', name)


def generate_archive_filename(source_name: str, artifact: BackupArtifact) -> str:
    """
    Generate the archive filename for an artifact.

    Format: {source_name}_{artifact_name}_{YYYYmmddHHMMSS}.zip

    Args:
        source_name: Name of the source that produced the artifact
        artifact: Artifact to archive; its creation time is used when set

    Returns:
        Filename (without path)
    """
    created_on = artifact.created_on or datetime.now(timezone.utc)
    timestamp = created_on.strftime('%Y%m%d%H%M%S')

    return f"{sanitize_filename(source_name)}_{artifact.name}_{timestamp}.zip"


def create_archive(artifact: BackupArtifact, source_name: str, workspace_dir: str) -> str:
    """
    Zip an artifact into the workspace.

    A file is stored as a single entry named after the artifact; the content
    of a directory is stored relative to the directory itself.

    Args:
        artifact: Artifact to archive
        source_name: Name of the source that produced it
        workspace_dir: Directory the archive is written to

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If the artifact is missing or its archive cannot be written
    """
    source = Path(artifact.path)
    archive_path = os.path.join(workspace_dir, generate_archive_filename(source_name, artifact))

    if not source.is_file() and not source.is_dir():
        raise CompressionError(f"Invalid path type: {artifact.path}")

    # Names of different sources may sanitize to the same prefix
    if os.path.exists(archive_path):
        raise CompressionError(f"Archive already exists: {os.path.basename(archive_path)}")

    try:
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED, compresslevel=9) as zipf:
            if source.is_file():
                zipf.write(source, artifact.name)
            else:
                _add_directory_to_zip(zipf, source)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}")


def _add_directory_to_zip(zipf: zipfile.ZipFile, directory: Path):
    """
    Recursively add the content of a directory at the archive root.

    Args:
        zipf: ZipFile object
        directory: Directory whose content is added
    """
    for item in sorted(directory.rglob('*')):
        relative_path = item.relative_to(directory)
        if item.is_dir():
            zipf.write(item, f"{relative_path.as_posix()}/")
        elif item.is_file():
            zipf.write(item, relative_path.as_posix())


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
