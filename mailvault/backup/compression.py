"""
Post-processing helpers for backup artifacts.

- bundle_artifacts / extract_bundle: combine a database dump and a file
  archive from the same run into one zip
- compress_file / decompress_file: gzip a finished artifact
- calculate_checksum: SHA-256 of the final artifact
"""

import os
import gzip
import shutil
import hashlib
import zipfile
from datetime import datetime
from typing import List, Optional

COPY_BUFFER_SIZE = 1024 * 1024


class CompressionError(Exception):
    """Raised when an artifact cannot be bundled, compressed or read."""
    pass


def generate_backup_name(task_name: str, backup_type: str, now: Optional[datetime] = None) -> str:
    """
    Generate the name of a backup run.

    Format: {task_name}_{TYPE}_{YYYYMMDD_HHMMSS}
    """
    timestamp = (now or datetime.utcnow()).strftime('%Y%m%d_%H%M%S')

    # Sanitize task name (replace spaces and special chars with underscores)
    safe_task_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in task_name
    )

    return f"{safe_task_name}_{backup_type}_{timestamp}"


def bundle_artifacts(artifact_paths: List[str], output_path: str) -> str:
    """
    Store several artifacts side by side in one zip.

    Args:
        artifact_paths: Files to bundle (stored under their base names)
        output_path: Path of the bundle to create

    Returns:
        output_path

    Raises:
        CompressionError: If no artifacts are given or writing fails
    """
    if not artifact_paths:
        raise CompressionError("No artifacts to bundle")

    try:
        with zipfile.ZipFile(output_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for path in artifact_paths:
                zipf.write(path, os.path.basename(path))
    except OSError as e:
        if os.path.exists(output_path):
            os.remove(output_path)
        raise CompressionError(f"Failed to bundle artifacts: {e}")

    return output_path


def extract_bundle(bundle_path: str, target_dir: str) -> List[str]:
    """
    Unpack a bundle created by bundle_artifacts.

    Returns:
        Paths of the extracted artifacts
    """
    extracted = []
    try:
        with zipfile.ZipFile(bundle_path, 'r') as zipf:
            for member in zipf.infolist():
                name = os.path.basename(member.filename)
                if not name or name != member.filename:
                    raise CompressionError(f"Unexpected entry in bundle: {member.filename}")

                destination = os.path.join(target_dir, name)
                with zipf.open(member) as src, open(destination, 'wb') as dst:
                    shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
                extracted.append(destination)
    except zipfile.BadZipFile as e:
        raise CompressionError(f"Invalid bundle {bundle_path}: {e}")

    return extracted


def compress_file(path: str, remove_original: bool = True) -> str:
    """
    Gzip a file.

    Returns:
        Path of the .gz file

    Raises:
        CompressionError: If compression fails
    """
    gz_path = f"{path}.gz"
    try:
        with open(path, 'rb') as src, gzip.open(gz_path, 'wb') as dst:
            shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
    except OSError as e:
        if os.path.exists(gz_path):
            os.remove(gz_path)
        raise CompressionError(f"Failed to compress {path}: {e}")

    if remove_original:
        os.remove(path)
    return gz_path


def decompress_file(gz_path: str, output_path: Optional[str] = None) -> str:
    """
    Gunzip a file.

    Returns:
        Path of the decompressed file (gz_path without .gz by default)
    """
    if output_path is None:
        if not gz_path.endswith('.gz'):
            raise CompressionError(f"Not a gzip file name: {gz_path}")
        output_path = gz_path[:-3]

    try:
        with gzip.open(gz_path, 'rb') as src, open(output_path, 'wb') as dst:
            shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
    except (OSError, EOFError) as e:
        raise CompressionError(f"Failed to decompress {gz_path}: {e}")

    return output_path


def calculate_checksum(path: str) -> str:
    """SHA-256 hex digest of a file."""
    sha256 = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(COPY_BUFFER_SIZE), b''):
                sha256.update(chunk)
    except OSError as e:
        raise CompressionError(f"Failed to checksum {path}: {e}")
    return sha256.hexdigest()


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
