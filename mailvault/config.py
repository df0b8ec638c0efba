import os
from datetime import timedelta


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or a persistent one from the data directory
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            import secrets
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Application database (tasks, records, users, scheduler job store)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/mailvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Mail server data roots
    MAIL_ATTACHMENTS_DIR = os.environ.get('MAIL_ATTACHMENTS_DIR') or '/var/mail/attachments'
    MAIL_LOGS_DIR = os.environ.get('MAIL_LOGS_DIR') or '/var/log/mail'
    MAIL_CERTIFICATES_DIR = os.environ.get('MAIL_CERTIFICATES_DIR') or '/etc/mail/certs'

    # Backup working area
    BACKUP_WORK_DIR = os.environ.get('BACKUP_WORK_DIR') or '/data/backups'
    BACKUP_RESTORE_DIR = os.environ.get('BACKUP_RESTORE_DIR') or '/data/restore'
    BACKUP_MAX_FILE_SIZE = _env_int('BACKUP_MAX_FILE_SIZE', 1024 * 1024 * 1024)  # 1GB

    # Mail database that gets dumped
    BACKUP_DATABASE_URL = (
        os.environ.get('BACKUP_DATABASE_URL')
        or 'mysql+pymysql://root@localhost:3306/secure_email_system'
    )
    BACKUP_MYSQL_BIN_PATH = os.environ.get('BACKUP_MYSQL_BIN_PATH') or '/usr/bin'
    BACKUP_COMMAND_TIMEOUT = _env_int('BACKUP_COMMAND_TIMEOUT', 3600)

    # Storage backends
    FTP_HOST = os.environ.get('FTP_HOST')
    FTP_PORT = _env_int('FTP_PORT', 21)
    FTP_USERNAME = os.environ.get('FTP_USERNAME')
    FTP_PASSWORD = os.environ.get('FTP_PASSWORD')

    SFTP_HOST = os.environ.get('SFTP_HOST')
    SFTP_PORT = _env_int('SFTP_PORT', 22)
    SFTP_USERNAME = os.environ.get('SFTP_USERNAME')
    SFTP_PASSWORD = os.environ.get('SFTP_PASSWORD')
    SFTP_PRIVATE_KEY = os.environ.get('SFTP_PRIVATE_KEY')

    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_ACCESS_KEY = os.environ.get('S3_ACCESS_KEY')
    S3_SECRET_KEY = os.environ.get('S3_SECRET_KEY')

    WEBDAV_URL = os.environ.get('WEBDAV_URL')
    WEBDAV_USERNAME = os.environ.get('WEBDAV_USERNAME')
    WEBDAV_PASSWORD = os.environ.get('WEBDAV_PASSWORD')

    AZURE_CONTAINER = os.environ.get('AZURE_CONTAINER')
    GCS_BUCKET = os.environ.get('GCS_BUCKET')
    STORAGE_SIMULATED_DELAY = float(os.environ.get('STORAGE_SIMULATED_DELAY', '1.5'))

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MAX_WORKERS = _env_int('SCHEDULER_MAX_WORKERS', 3)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "mailvault.db")}'
    BACKUP_WORK_DIR = os.path.join(DATA_DIR, 'backups')
    BACKUP_RESTORE_DIR = os.path.join(DATA_DIR, 'restore')
    STORAGE_SIMULATED_DELAY = 0.5


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False

    SESSION_COOKIE_SECURE = os.environ.get('HTTPS_ENABLED', 'false').lower() == 'true'


class TestingConfig(Config):
    """Test configuration: in-memory database, no background scheduler"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    STORAGE_SIMULATED_DELAY = 0


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
