"""
File backup producer.

Walks the mail server's data trees selected by a task's scope, filters
entries by exclusion patterns, modification time and size, and streams the
remaining regular files into a zip archive.
"""

import os
import stat
import shutil
import logging
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from mailvault.models import BackupRecord, BackupScope, BackupTask

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 1024 * 1024 * 1024  # 1GB
COPY_BUFFER_SIZE = 1024 * 1024
SPOOL_MAX_MEMORY = 16 * 1024 * 1024


class FileBackupError(Exception):
    """Raised when a file backup cannot be produced or restored."""
    pass


def parse_exclude_patterns(exclude_patterns: Optional[str]) -> List[str]:
    """Split a comma separated pattern string, dropping empty tokens."""
    if not exclude_patterns:
        return []
    return [token.strip() for token in exclude_patterns.split(',') if token.strip()]


def is_excluded(path: str, patterns: List[str]) -> bool:
    """
    Check a file path against exclusion tokens.

    Token semantics (case-sensitive):
    - "*suffix": file name ends with suffix
    - "prefix*": file name starts with prefix
    - anything else: substring of the full path
    """
    name = os.path.basename(path)

    for pattern in patterns:
        if pattern.startswith('*'):
            if name.endswith(pattern[1:]):
                return True
        elif pattern.endswith('*'):
            if name.startswith(pattern[:-1]):
                return True
        elif pattern in path:
            return True

    return False


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _mtime_utc(st: os.stat_result) -> datetime:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).replace(tzinfo=None)


class FileBackupProducer:
    """
    Produces zip archives of the mail server's on-disk data.

    Counters on the BackupRecord are updated per file:
    processed (archived), skipped (excluded, too old, too large) and
    failed (unreadable files or directories).
    """

    def __init__(
        self,
        attachments_dir: str,
        logs_dir: str,
        certificates_dir: str,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        log: Optional[Callable[[str], None]] = None
    ):
        self.attachments_dir = attachments_dir
        self.logs_dir = logs_dir
        self.certificates_dir = certificates_dir
        self.max_file_size = max_file_size
        self._run_log = log

    @classmethod
    def from_config(cls, config, log=None) -> 'FileBackupProducer':
        return cls(
            attachments_dir=config['MAIL_ATTACHMENTS_DIR'],
            logs_dir=config['MAIL_LOGS_DIR'],
            certificates_dir=config['MAIL_CERTIFICATES_DIR'],
            max_file_size=config.get('BACKUP_MAX_FILE_SIZE', DEFAULT_MAX_FILE_SIZE),
            log=log
        )

    def _log(self, message: str, level: int = logging.INFO):
        logger.log(level, message)
        if self._run_log:
            self._run_log(message)

    def source_directories(self, task: BackupTask) -> List[str]:
        """
        Resolve the directories a task's scope covers.

        Raises:
            FileBackupError: If a FOLDER task has no source folder
        """
        scope = task.backup_scope

        if scope == BackupScope.FOLDER:
            folder = task.source_path or task.storage_path
            if not folder:
                raise FileBackupError(f"Task '{task.name}' has FOLDER scope but no source folder")
            return [folder]

        directories = []
        if scope == BackupScope.SYSTEM:
            if task.include_attachments:
                directories.append(self.attachments_dir)
            if task.include_logs:
                directories.append(self.logs_dir)
            directories.append(self.certificates_dir)
        elif scope == BackupScope.CUSTOM:
            if task.include_attachments:
                directories.append(self.attachments_dir)
            if task.include_logs:
                directories.append(self.logs_dir)
        else:
            directories.append(self.attachments_dir)

        return directories

    def produce(
        self,
        task: BackupTask,
        record: BackupRecord,
        since: Optional[datetime] = None,
        mode: Optional[str] = None,
        output_dir: Optional[str] = None
    ) -> str:
        """
        Archive the task's source directories.

        Args:
            task: Task whose scope selects the source directories
            record: Run record receiving counters, path and size
            since: Only files modified at or after this UTC time are archived
            mode: Label used in the archive name (defaults to the task's type)
            output_dir: Directory for the archive (defaults to the directory
                of record.backup_path)

        Returns:
            Path of the created zip archive

        Raises:
            FileBackupError: If the archive cannot be created
        """
        if output_dir is None:
            if not record.backup_path:
                raise FileBackupError("No output directory for file backup")
            output_dir = os.path.dirname(record.backup_path)

        mode = (mode or task.backup_type.value).lower()
        timestamp = datetime.utcnow().strftime('%Y%m%d_%H%M%S')
        archive_path = os.path.join(output_dir, f"files_{mode}_{timestamp}.zip")

        patterns = parse_exclude_patterns(task.exclude_patterns)
        cutoff = _as_naive_utc(since) if since else None

        try:
            os.makedirs(output_dir, exist_ok=True)
            with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
                for directory in self.source_directories(task):
                    if not os.path.isdir(directory):
                        self._log(f"Source directory does not exist, skipping: {directory}", logging.WARNING)
                        continue

                    self._log(f"Archiving directory: {directory}")
                    self._archive_directory(zipf, directory, record, patterns, cutoff)
        except FileBackupError:
            raise
        except (OSError, zipfile.BadZipFile) as e:
            raise FileBackupError(f"Failed to create file archive: {e}")

        record.backup_path = archive_path
        record.backup_size = os.path.getsize(archive_path)

        self._log(
            f"File archive created: {os.path.basename(archive_path)} "
            f"(processed={record.files_processed}, skipped={record.files_skipped}, "
            f"failed={record.files_failed})"
        )
        return archive_path

    def _archive_directory(self, zipf, root, record, patterns, cutoff):
        def on_walk_error(error: OSError):
            self._log(f"Cannot read directory {error.filename}: {error}", logging.WARNING)
            record.increment_failed()

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_walk_error):
            dirnames.sort()
            for filename in sorted(filenames):
                path = os.path.join(dirpath, filename)

                try:
                    st = os.lstat(path)
                except OSError as e:
                    self._log(f"Cannot stat {path}: {e}", logging.WARNING)
                    record.increment_failed()
                    continue

                if not stat.S_ISREG(st.st_mode):
                    continue

                if is_excluded(path, patterns):
                    record.increment_skipped()
                    continue

                if cutoff is not None and _mtime_utc(st) < cutoff:
                    record.increment_skipped()
                    continue

                if st.st_size > self.max_file_size:
                    self._log(f"File too large, skipping: {path} ({st.st_size} bytes)", logging.WARNING)
                    record.increment_skipped()
                    continue

                arcname = Path(os.path.relpath(path, root)).as_posix()
                try:
                    self._add_file(zipf, path, arcname)
                    record.increment_processed()
                except OSError as e:
                    self._log(f"Failed to archive {path}: {e}", logging.WARNING)
                    record.increment_failed()

    @staticmethod
    def _add_file(zipf: zipfile.ZipFile, path: str, arcname: str):
        # Entry timestamp is the file's mtime
        info = zipfile.ZipInfo.from_file(path, arcname, strict_timestamps=False)
        info.compress_type = zipfile.ZIP_DEFLATED

        # The entry is only written once the whole file has been read, so a
        # read error never leaves a truncated entry in the archive
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
            with open(path, 'rb') as src:
                shutil.copyfileobj(src, spool, COPY_BUFFER_SIZE)
            spool.seek(0)
            with zipf.open(info, 'w') as dst:
                shutil.copyfileobj(spool, dst, COPY_BUFFER_SIZE)

    def restore_files(self, archive_path: str, target_directory: str) -> int:
        """
        Extract a file backup archive.

        Args:
            archive_path: Zip archive produced by produce()
            target_directory: Directory to extract into

        Returns:
            Number of files extracted

        Raises:
            FileBackupError: If the archive is missing, invalid, or contains
                entries that would escape the target directory
        """
        if not os.path.exists(archive_path):
            raise FileBackupError(f"Archive not found: {archive_path}")

        target = os.path.realpath(target_directory)
        os.makedirs(target, exist_ok=True)

        extracted = 0
        try:
            with zipfile.ZipFile(archive_path, 'r') as zipf:
                for member in zipf.infolist():
                    destination = os.path.realpath(os.path.join(target, member.filename))
                    if os.path.commonpath([target, destination]) != target:
                        raise FileBackupError(f"Archive entry escapes target directory: {member.filename}")

                    zipf.extract(member, target)
                    if not member.is_dir():
                        extracted += 1
        except zipfile.BadZipFile as e:
            raise FileBackupError(f"Invalid archive {archive_path}: {e}")

        self._log(f"Restored {extracted} files to {target}")
        return extracted


def get_directory_size(path: str) -> int:
    """Total size in bytes of all regular files under path (0 if missing)."""
    if not os.path.isdir(path):
        return 0

    total = 0
    for dirpath, _, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, filename))
            except OSError:
                continue
    return total


def get_file_count(path: str) -> int:
    """Number of files under path (0 if missing)."""
    if not os.path.isdir(path):
        return 0
    return sum(len(filenames) for _, _, filenames in os.walk(path))
