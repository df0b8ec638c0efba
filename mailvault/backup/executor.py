"""
Backup executor - orchestrates a complete backup run for a task.

Workflow:
1. Create BackupRecord (status: RUNNING)
2. Resolve the run type and reference time (INCREMENTAL / DIFFERENTIAL
   fall back to FULL when there is no earlier run to compare against)
3. Produce the database dump and/or the file archive
4. Bundle, compress, encrypt and checksum the artifact
5. Upload to the task's storage backend
6. Update task statistics and close the record (SUCCESS / FAILED)
"""

import os
import shutil
import logging
import tempfile
from datetime import datetime
from typing import List, Optional, Tuple

from cryptography.fernet import InvalidToken
from flask import current_app

from mailvault import db
from mailvault.models import (
    BackupRecord, BackupScope, BackupStatus, BackupTask, BackupType, VerificationStatus
)
from mailvault.utils.crypto import ArchiveCipher, ENCRYPTION_ALGORITHM
from mailvault.utils.master_key import MasterKeyManager
from .compression import (
    bundle_artifacts, calculate_checksum, compress_file, decompress_file, extract_bundle,
    generate_backup_name, get_archive_size, CompressionError
)
from .database import DatabaseBackupProducer
from .files import FileBackupProducer
from .storage import StorageAdapter

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup run, restore or deletion cannot proceed."""
    pass


class BackupExecutor:
    """
    Orchestrates backup, restore and verification for one task.
    """

    def __init__(self, task: BackupTask, config=None, file_producer=None,
                 database_producer=None, storage=None):
        """
        Args:
            task: BackupTask to run
            config: Mapping with the application settings (defaults to current_app.config)
            file_producer, database_producer, storage: Collaborators, built
                from config when not given
        """
        self.task = task
        self.config = config if config is not None else current_app.config
        self.record = None
        self.run_dir = None
        self.logs = []
        self._log_flush_counter = 0

        self.file_producer = file_producer or FileBackupProducer.from_config(self.config, log=self._append_log)
        self._database_producer = database_producer
        self.storage = storage or StorageAdapter(self.config, log=self._append_log)

    @property
    def database_producer(self) -> DatabaseBackupProducer:
        # Built on first use: file-only runs, verify and delete never need it
        if self._database_producer is None:
            self._database_producer = DatabaseBackupProducer.from_config(self.config, log=self._append_log)
        return self._database_producer

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def execute(self) -> BackupRecord:
        """
        Run the task once.

        Returns:
            BackupRecord with the run's results. Failures are recorded on
            the record and the task, not raised.
        """
        started_at = datetime.utcnow()
        self.record = BackupRecord(
            task_id=self.task.id,
            backup_name=generate_backup_name(self.task.name, self.task.backup_type.value, started_at),
            backup_type=self.task.backup_type,
            backup_status=BackupStatus.RUNNING,
            start_time=started_at
        )
        db.session.add(self.record)
        db.session.commit()

        self._log(f"Starting backup task: {self.task.name} ({self.task.backup_type.value}, "
                  f"scope {self.task.backup_scope.value})")

        try:
            self._execute_workflow()

            self.record.complete_backup(BackupStatus.SUCCESS)
            self.task.update_backup_stats(
                BackupStatus.SUCCESS, size=self.record.backup_size, started_at=started_at
            )
            self._log(f"Backup completed successfully in {self.record.formatted_duration}")

        except Exception as e:
            logger.exception(f"Backup task {self.task.name} failed")
            self.record.is_restorable = False
            self.record.complete_backup(BackupStatus.FAILED, str(e))
            self.task.update_backup_stats(BackupStatus.FAILED, error_message=str(e), started_at=started_at)
            self._log(f"Backup failed: {e}")
            self._cleanup_run_dir()

        finally:
            self.record.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.record

    def resolve_plan(self) -> Tuple[BackupType, Optional[datetime], bool, bool]:
        """
        Decide what this run does.

        Returns:
            (effective_type, since, run_database, run_files)
        """
        task = self.task
        backup_type = task.backup_type

        if backup_type == BackupType.DATABASE_ONLY:
            return backup_type, None, True, False
        if backup_type == BackupType.FILES_ONLY:
            return backup_type, None, False, True

        since = None
        if backup_type == BackupType.INCREMENTAL:
            if task.last_backup_status == BackupStatus.SUCCESS:
                since = task.last_backup_time
            else:
                # Last run failed: changes since the last good run are still pending
                last_success = self._last_successful_record()
                since = last_success.created_at if last_success else None
        elif backup_type == BackupType.DIFFERENTIAL:
            last_full = self._last_successful_record(BackupType.FULL)
            since = last_full.created_at if last_full else None

        if backup_type != BackupType.FULL and since is None:
            self._log(f"No reference backup for {backup_type.value}, running FULL backup instead")
            backup_type = BackupType.FULL

        run_database = task.backup_scope != BackupScope.FOLDER
        run_files = (
            task.backup_scope == BackupScope.FOLDER
            or task.include_attachments
            or task.include_logs
        )
        return backup_type, since, run_database, run_files

    def _last_successful_record(self, backup_type: Optional[BackupType] = None) -> Optional[BackupRecord]:
        query = BackupRecord.query.filter(
            BackupRecord.task_id == self.task.id,
            BackupRecord.backup_status == BackupStatus.SUCCESS
        )
        if backup_type is not None:
            query = query.filter(BackupRecord.backup_type == backup_type)
        return query.order_by(BackupRecord.created_at.desc()).first()

    def _execute_workflow(self):
        record = self.record
        backup_type, since, run_database, run_files = self.resolve_plan()
        record.backup_type = backup_type
        mode = backup_type.value.lower()

        if not run_database and not run_files:
            raise BackupError("Task selects neither a database dump nor files")

        if since:
            self._log(f"Reference time: {since.isoformat()}")

        # Step 1: Per-run working directory
        self.run_dir = os.path.join(self.config['BACKUP_WORK_DIR'], record.backup_name)
        os.makedirs(self.run_dir, exist_ok=True)
        record.backup_path = os.path.join(self.run_dir, record.backup_name)
        self._flush_logs_to_db()

        # Step 2: Produce artifacts
        artifacts = []
        if run_database:
            self._log("Dumping database")
            artifacts.append(self.database_producer.produce(
                self.task, record, since=since, mode=mode, output_dir=self.run_dir
            ))
            self._flush_logs_to_db()

        if run_files:
            self._log("Archiving files")
            artifacts.append(self.file_producer.produce(
                self.task, record, since=since, mode=mode, output_dir=self.run_dir
            ))
            self._flush_logs_to_db()

        # Step 3: Post-process and upload
        artifact_path = self._post_process(artifacts, since)
        record.backup_path = artifact_path

        self.storage.upload(self.task, record)

    def _post_process(self, artifacts: List[str], since: Optional[datetime]) -> str:
        record = self.record
        metadata = {
            'artifacts': [os.path.basename(path) for path in artifacts],
            'bundled': len(artifacts) > 1,
            'since': since.isoformat() if since else None,
            'compressed': False,
            'encrypted': False
        }

        if len(artifacts) > 1:
            path = bundle_artifacts(artifacts, os.path.join(self.run_dir, f"{record.backup_name}.zip"))
            for artifact in artifacts:
                os.remove(artifact)
            self._log(f"Bundled {len(artifacts)} artifacts into {os.path.basename(path)}")
        else:
            path = artifacts[0]

        record.backup_size = get_archive_size(path)

        if self.task.compression_enabled:
            path = compress_file(path)
            record.compressed_size = get_archive_size(path)
            metadata['compressed'] = True
            self._log(f"Compressed: {record.backup_size} -> {record.compressed_size} bytes")

        if self.task.encryption_enabled:
            path = ArchiveCipher(self._passphrase()).encrypt_file(path)
            record.encryption_algorithm = ENCRYPTION_ALGORITHM
            metadata['encrypted'] = True
            self._log("Artifact encrypted")

        final_size = get_archive_size(path)
        if self.task.max_backup_size and final_size > self.task.max_backup_size:
            raise BackupError(
                f"Backup size {final_size} bytes exceeds the task limit of {self.task.max_backup_size} bytes"
            )

        record.checksum = calculate_checksum(path)
        record.backup_metadata = metadata
        self._log(f"Artifact ready: {os.path.basename(path)} (sha256 {record.checksum})")
        self._flush_logs_to_db()
        return path

    def _passphrase(self) -> str:
        if not self.task.encryption_key_encrypted:
            raise BackupError(f"Task '{self.task.name}' has encryption enabled but no encryption key")
        try:
            return MasterKeyManager(self.config['SECRET_KEY']).decrypt_secret(self.task.encryption_key_encrypted)
        except (InvalidToken, ValueError) as e:
            raise BackupError(
                f"Cannot decrypt the encryption key of task '{self.task.name}' "
                f"(SECRET_KEY changed or key corrupted): {e.__class__.__name__}"
            )

    def _cleanup_run_dir(self):
        if self.run_dir and os.path.exists(self.run_dir):
            try:
                shutil.rmtree(self.run_dir)
                self._log("Cleaned up working directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup working directory: {e}")

    # ------------------------------------------------------------------
    # Restore / verify / delete
    # ------------------------------------------------------------------

    def _locate_artifact(self, record: BackupRecord) -> str:
        if record.backup_path and os.path.exists(record.backup_path):
            return record.backup_path

        location = record.storage_location
        if location and ('://' not in location or location.startswith('file://')):
            path = location[len('file://'):] if location.startswith('file://') else location
            if os.path.exists(path):
                return path

        raise BackupError(f"Backup artifact is not available locally: {record.backup_name}")

    def restore(self, record: BackupRecord, target_directory: Optional[str] = None) -> dict:
        """
        Restore a successful backup.

        Decrypts and decompresses the artifact, unpacks a bundle, then feeds
        the SQL dump to the database and extracts the file archive.

        Args:
            record: Record to restore
            target_directory: Where restored files go (defaults to
                BACKUP_RESTORE_DIR/<backup name>)

        Returns:
            Dict with 'database_restored', 'files_restored' and 'target_directory'

        Raises:
            BackupError: If the record is not restorable or the artifact is
                missing or empty
        """
        if record.backup_status != BackupStatus.SUCCESS or not record.is_restorable:
            raise BackupError(f"Backup is not restorable: {record.backup_name}")

        path = self._locate_artifact(record)
        if os.path.getsize(path) == 0:
            raise BackupError(f"Backup artifact is empty: {path}")

        target_directory = target_directory or os.path.join(
            self.config['BACKUP_RESTORE_DIR'], record.backup_name
        )
        staging = tempfile.mkdtemp(prefix='mailvault_restore_')
        result = {'database_restored': False, 'files_restored': 0, 'target_directory': target_directory}

        self._log(f"Restoring backup {record.backup_name}")
        try:
            current = path
            name = os.path.basename(current)

            if name.endswith('.enc'):
                name = name[:-4]
                current = ArchiveCipher(self._passphrase()).decrypt_file(current, os.path.join(staging, name))

            if name.endswith('.gz'):
                name = name[:-3]
                current = decompress_file(current, os.path.join(staging, name))

            if get_archive_size(current) == 0:
                raise BackupError(f"Backup artifact is empty after unpacking: {name}")

            if record.backup_metadata.get('bundled'):
                artifacts = extract_bundle(current, staging)
            else:
                artifacts = [current]

            for artifact in artifacts:
                artifact_name = os.path.basename(artifact)
                if artifact_name.endswith('.sql'):
                    self.database_producer.restore(record, artifact)
                    result['database_restored'] = True
                elif artifact_name.startswith('files_') and artifact_name.endswith('.zip'):
                    result['files_restored'] += self.file_producer.restore_files(artifact, target_directory)
                else:
                    raise BackupError(f"Unrecognized artifact in backup: {artifact_name}")

            # The database producer counts its own restores
            if not result['database_restored']:
                record.increment_restored_count()

            self._log(f"Restore of {record.backup_name} completed")
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            db.session.commit()

        return result

    def verify(self, record: BackupRecord) -> VerificationStatus:
        """
        Check the local artifact against the recorded checksum.

        Returns:
            VERIFIED, CORRUPTED (missing or checksum mismatch) or
            VERIFICATION_FAILED (nothing to compare, or read error)
        """
        try:
            path = record.backup_path
            if not path or not os.path.exists(path):
                status = VerificationStatus.CORRUPTED
            elif not record.checksum:
                status = VerificationStatus.VERIFICATION_FAILED
            elif calculate_checksum(path) != record.checksum:
                status = VerificationStatus.CORRUPTED
            else:
                status = VerificationStatus.VERIFIED
        except (OSError, CompressionError) as e:
            logger.error(f"Verification of {record.backup_name} failed: {e}")
            status = VerificationStatus.VERIFICATION_FAILED

        record.set_verification_result(status)
        db.session.commit()
        self._log(f"Verification of {record.backup_name}: {status.value}")
        return status

    def delete_backup(self, record: BackupRecord):
        """
        Delete a backup: local artifact, stored copy and the record itself.

        Raises:
            StorageError: If the stored copy cannot be removed (the record is kept)
        """
        self.storage.delete(record)

        if record.backup_path and os.path.exists(record.backup_path):
            os.remove(record.backup_path)
            run_dir = os.path.dirname(record.backup_path)
            if os.path.isdir(run_dir) and not os.listdir(run_dir):
                os.rmdir(run_dir)

        db.session.delete(record)
        db.session.commit()
        self._log(f"Deleted backup {record.backup_name}")

    # ------------------------------------------------------------------
    # Run log
    # ------------------------------------------------------------------

    def _log(self, message: str):
        """
        Add a timestamped line to the run log.

        Args:
            message: Log message
        """
        logger.info(message)
        self._append_log(message)

    def _append_log(self, message: str):
        """Add a line to the run log only; collaborators log it themselves."""
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.record is not None and self.record.backup_status == BackupStatus.RUNNING:
            self.record.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup_task(task_id: int, allow_inactive: bool = False) -> BackupRecord:
    """
    Execute a backup task by ID.

    Args:
        task_id: ID of BackupTask to execute
        allow_inactive: If True, allow execution of inactive tasks (manual triggers)

    Raises:
        ValueError: If task not found, or inactive and not allowed
    """
    task = db.session.get(BackupTask, task_id)

    if not task:
        raise ValueError(f"Backup task not found: {task_id}")

    if not task.is_active and not allow_inactive:
        raise ValueError(f"Backup task is inactive: {task.name}")

    return BackupExecutor(task).execute()


def execute_backup_task_by_name(task_name: str) -> BackupRecord:
    """
    Execute an active backup task by name.

    Raises:
        ValueError: If task not found or inactive
    """
    task = BackupTask.query.filter_by(name=task_name).first()

    if not task:
        raise ValueError(f"Backup task not found: {task_name}")

    if not task.is_active:
        raise ValueError(f"Backup task is inactive: {task.name}")

    return BackupExecutor(task).execute()
