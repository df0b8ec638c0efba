import enum
import json
from datetime import datetime, timedelta
from flask_login import UserMixin
from mailvault import db


class BackupType(str, enum.Enum):
    FULL = 'FULL'
    INCREMENTAL = 'INCREMENTAL'
    DIFFERENTIAL = 'DIFFERENTIAL'
    DATABASE_ONLY = 'DATABASE_ONLY'
    FILES_ONLY = 'FILES_ONLY'


class BackupScope(str, enum.Enum):
    SYSTEM = 'SYSTEM'
    USER = 'USER'
    DOMAIN = 'DOMAIN'
    FOLDER = 'FOLDER'
    CUSTOM = 'CUSTOM'


class StorageType(str, enum.Enum):
    LOCAL = 'LOCAL'
    FTP = 'FTP'
    SFTP = 'SFTP'
    S3 = 'S3'
    AZURE = 'AZURE'
    GOOGLE_CLOUD = 'GOOGLE_CLOUD'
    WEBDAV = 'WEBDAV'


class BackupStatus(str, enum.Enum):
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    RUNNING = 'RUNNING'
    CANCELLED = 'CANCELLED'
    PARTIAL = 'PARTIAL'


class VerificationStatus(str, enum.Enum):
    NOT_VERIFIED = 'NOT_VERIFIED'
    VERIFIED = 'VERIFIED'
    VERIFICATION_FAILED = 'VERIFICATION_FAILED'
    CORRUPTED = 'CORRUPTED'


def _enum_column(enum_cls, **kwargs):
    return db.Column(db.Enum(enum_cls, native_enum=False, length=20), **kwargs)


def format_size(size_bytes) -> str:
    """Human readable byte count (B, KB, MB, GB)."""
    if size_bytes is None:
        return '0 B'
    if size_bytes < 1024:
        return f'{size_bytes} B'
    if size_bytes < 1024 * 1024:
        return f'{size_bytes / 1024:.2f} KB'
    if size_bytes < 1024 * 1024 * 1024:
        return f'{size_bytes / (1024 * 1024):.2f} MB'
    return f'{size_bytes / (1024 * 1024 * 1024):.2f} GB'


class User(UserMixin, db.Model):
    """Administrator account for the backup API"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    is_admin = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<User {self.username}>'


class BackupTask(db.Model):
    """Backup task configuration and run statistics"""
    __tablename__ = 'backup_tasks'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500))
    backup_type = _enum_column(BackupType, nullable=False)
    backup_scope = _enum_column(BackupScope, nullable=False)
    schedule_expression = db.Column(db.String(100))  # 5-field crontab
    storage_type = _enum_column(StorageType, nullable=False)
    storage_path = db.Column(db.String(500), nullable=False)
    source_path = db.Column(db.String(500))  # FOLDER scope source
    compression_enabled = db.Column(db.Boolean, default=True, nullable=False)
    encryption_enabled = db.Column(db.Boolean, default=False, nullable=False)
    encryption_key_encrypted = db.Column(db.Text)  # Passphrase, encrypted with the master key
    retention_days = db.Column(db.Integer, default=30, nullable=False)
    max_backup_size = db.Column(db.BigInteger)
    include_attachments = db.Column(db.Boolean, default=True, nullable=False)
    include_logs = db.Column(db.Boolean, default=False, nullable=False)
    exclude_patterns = db.Column(db.String(1000))  # Comma separated
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Run statistics
    last_backup_time = db.Column(db.DateTime)
    next_backup_time = db.Column(db.DateTime)
    last_backup_size = db.Column(db.BigInteger)
    last_backup_status = _enum_column(BackupStatus)
    last_error_message = db.Column(db.String(1000))
    backup_count = db.Column(db.Integer, default=0, nullable=False)
    successful_count = db.Column(db.Integer, default=0, nullable=False)
    failed_count = db.Column(db.Integer, default=0, nullable=False)

    created_by = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    records = db.relationship('BackupRecord', back_populates='task', cascade='all, delete-orphan', lazy='dynamic')

    def __init__(self, **kwargs):
        kwargs.setdefault('compression_enabled', True)
        kwargs.setdefault('encryption_enabled', False)
        kwargs.setdefault('retention_days', 30)
        kwargs.setdefault('include_attachments', True)
        kwargs.setdefault('include_logs', False)
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('backup_count', 0)
        kwargs.setdefault('successful_count', 0)
        kwargs.setdefault('failed_count', 0)
        super().__init__(**kwargs)

    def update_backup_stats(self, status: BackupStatus, size=None, error_message=None, started_at=None):
        """
        Record the outcome of a run on the task.

        last_backup_time is the run's start so that the next incremental run
        also picks up files changed while this one was in progress.
        """
        self.last_backup_time = started_at or datetime.utcnow()
        self.last_backup_status = status
        self.backup_count = (self.backup_count or 0) + 1

        if status == BackupStatus.SUCCESS:
            self.successful_count = (self.successful_count or 0) + 1
            self.last_backup_size = size
            self.last_error_message = None
        elif status == BackupStatus.FAILED:
            self.failed_count = (self.failed_count or 0) + 1
            self.last_error_message = error_message[:1000] if error_message else None

    @property
    def success_rate(self) -> float:
        if not self.backup_count:
            return 0.0
        return (self.successful_count or 0) * 100.0 / self.backup_count

    @property
    def needs_backup(self) -> bool:
        if not self.is_active:
            return False
        if self.next_backup_time is None:
            return True
        return datetime.utcnow() >= self.next_backup_time

    @property
    def formatted_backup_size(self) -> str:
        return format_size(self.last_backup_size)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'backup_type': self.backup_type.value,
            'backup_scope': self.backup_scope.value,
            'schedule_expression': self.schedule_expression,
            'storage_type': self.storage_type.value,
            'storage_path': self.storage_path,
            'source_path': self.source_path,
            'compression_enabled': self.compression_enabled,
            'encryption_enabled': self.encryption_enabled,
            'retention_days': self.retention_days,
            'max_backup_size': self.max_backup_size,
            'include_attachments': self.include_attachments,
            'include_logs': self.include_logs,
            'exclude_patterns': self.exclude_patterns,
            'is_active': self.is_active,
            'last_backup_time': self.last_backup_time.isoformat() if self.last_backup_time else None,
            'next_backup_time': self.next_backup_time.isoformat() if self.next_backup_time else None,
            'last_backup_size': self.last_backup_size,
            'formatted_backup_size': self.formatted_backup_size,
            'last_backup_status': self.last_backup_status.value if self.last_backup_status else None,
            'last_error_message': self.last_error_message,
            'backup_count': self.backup_count,
            'successful_count': self.successful_count,
            'failed_count': self.failed_count,
            'success_rate': round(self.success_rate, 2),
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<BackupTask {self.name} type={self.backup_type} scope={self.backup_scope}>'


class BackupRecord(db.Model):
    """Result of one backup run"""
    __tablename__ = 'backup_records'

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('backup_tasks.id'), nullable=False)
    backup_name = db.Column(db.String(255), nullable=False)
    backup_type = _enum_column(BackupType)
    backup_path = db.Column(db.String(500))
    backup_size = db.Column(db.BigInteger, default=0, nullable=False)
    compressed_size = db.Column(db.BigInteger)
    backup_status = _enum_column(BackupStatus, nullable=False)
    start_time = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    end_time = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Integer)

    files_processed = db.Column(db.Integer, default=0, nullable=False)
    files_skipped = db.Column(db.Integer, default=0, nullable=False)
    files_failed = db.Column(db.Integer, default=0, nullable=False)
    database_tables = db.Column(db.Integer, default=0, nullable=False)
    database_records = db.Column(db.BigInteger, default=0, nullable=False)

    checksum = db.Column(db.String(64))
    compression_ratio = db.Column(db.Float)
    encryption_algorithm = db.Column(db.String(50))
    storage_location = db.Column(db.String(500))
    error_message = db.Column(db.String(2000))
    logs = db.Column(db.Text)
    metadata_json = db.Column(db.Text)

    is_restorable = db.Column(db.Boolean, default=True, nullable=False)
    restored_count = db.Column(db.Integer, default=0, nullable=False)
    last_verified_at = db.Column(db.DateTime)
    verification_status = _enum_column(VerificationStatus, nullable=False, default=VerificationStatus.NOT_VERIFIED)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    task = db.relationship('BackupTask', back_populates='records')

    def __init__(self, **kwargs):
        # Counters start at zero before the record is ever flushed
        for counter in ('backup_size', 'files_processed', 'files_skipped', 'files_failed',
                        'database_tables', 'database_records', 'restored_count'):
            kwargs.setdefault(counter, 0)
        kwargs.setdefault('is_restorable', True)
        kwargs.setdefault('verification_status', VerificationStatus.NOT_VERIFIED)
        kwargs.setdefault('start_time', datetime.utcnow())
        super().__init__(**kwargs)

    def increment_processed(self):
        self.files_processed += 1

    def increment_skipped(self):
        self.files_skipped += 1

    def increment_failed(self):
        self.files_failed += 1

    def increment_restored_count(self):
        self.restored_count = (self.restored_count or 0) + 1

    def complete_backup(self, status: BackupStatus, error_message=None):
        """Close the record: end time, duration, compression ratio and status."""
        self.backup_status = status
        self.end_time = datetime.utcnow()
        if self.start_time:
            self.duration_seconds = int((self.end_time - self.start_time).total_seconds())
        if self.compressed_size is not None and self.backup_size:
            self.compression_ratio = self.compressed_size / self.backup_size
        if error_message:
            self.error_message = error_message[:2000]

    def set_verification_result(self, status: VerificationStatus):
        self.verification_status = status
        self.last_verified_at = datetime.utcnow()
        if status in (VerificationStatus.VERIFICATION_FAILED, VerificationStatus.CORRUPTED):
            self.is_restorable = False

    @property
    def is_success(self) -> bool:
        return self.backup_status == BackupStatus.SUCCESS

    @property
    def total_files(self) -> int:
        return (self.files_processed or 0) + (self.files_skipped or 0) + (self.files_failed or 0)

    @property
    def file_success_rate(self) -> float:
        total = self.total_files
        if total == 0:
            return 0.0
        return (self.files_processed or 0) * 100.0 / total

    @property
    def formatted_size(self) -> str:
        return format_size(self.backup_size)

    @property
    def formatted_duration(self) -> str:
        if self.duration_seconds is None:
            return 'N/A'
        return str(timedelta(seconds=self.duration_seconds))

    @property
    def formatted_compression_ratio(self) -> str:
        if self.compression_ratio is None:
            return 'N/A'
        return f'{(1 - self.compression_ratio) * 100:.1f}%'

    @property
    def backup_metadata(self) -> dict:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)

    @backup_metadata.setter
    def backup_metadata(self, value: dict):
        self.metadata_json = json.dumps(value)

    def to_dict(self, include_logs=False) -> dict:
        data = {
            'id': self.id,
            'task_id': self.task_id,
            'task_name': self.task.name if self.task else None,
            'backup_name': self.backup_name,
            'backup_type': self.backup_type.value if self.backup_type else None,
            'backup_path': self.backup_path,
            'backup_size': self.backup_size,
            'formatted_size': self.formatted_size,
            'compressed_size': self.compressed_size,
            'backup_status': self.backup_status.value,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds,
            'formatted_duration': self.formatted_duration,
            'files_processed': self.files_processed,
            'files_skipped': self.files_skipped,
            'files_failed': self.files_failed,
            'database_tables': self.database_tables,
            'database_records': self.database_records,
            'checksum': self.checksum,
            'compression_ratio': self.compression_ratio,
            'encryption_algorithm': self.encryption_algorithm,
            'storage_location': self.storage_location,
            'error_message': self.error_message,
            'metadata': self.backup_metadata,
            'is_restorable': self.is_restorable,
            'restored_count': self.restored_count,
            'last_verified_at': self.last_verified_at.isoformat() if self.last_verified_at else None,
            'verification_status': self.verification_status.value,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRecord {self.backup_name} status={self.backup_status}>'
