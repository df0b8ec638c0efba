"""
Storage delivery for backup artifacts.

Each StorageType maps to one backend:
- LOCAL: copy into a directory (location is the plain path)
- FTP: ftplib upload (ftp://host/path)
- SFTP: paramiko upload (sftp://host/path)
- S3: boto3 upload (s3://bucket/key)
- WEBDAV: HTTP PUT via requests (webdav://path)
- AZURE, GOOGLE_CLOUD: simulated transfer (azure://blob, gs://object)

StorageAdapter picks the backend from the task on upload and from the
location's scheme on delete.
"""

import os
import time
import ftplib
import shutil
import logging
import posixpath
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import quote, urlparse

import boto3
import paramiko
import requests
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from mailvault.models import BackupRecord, BackupTask, StorageType

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

SCHEME_TO_STORAGE_TYPE = {
    'file': StorageType.LOCAL,
    'ftp': StorageType.FTP,
    'sftp': StorageType.SFTP,
    's3': StorageType.S3,
    'azure': StorageType.AZURE,
    'gs': StorageType.GOOGLE_CLOUD,
    'webdav': StorageType.WEBDAV,
}


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _remote_path(storage_path: Optional[str], filename: str) -> str:
    """Absolute POSIX path of filename inside storage_path."""
    base = '/' + (storage_path or '').strip('/')
    return posixpath.join(base, filename)


def _check_location_host(location: str, host: Optional[str]):
    """
    Refuse a remote location that lives on a different host.

    Raises:
        StorageError: If the location names a host other than the configured one
    """
    location_host = urlparse(location).hostname
    if location_host and host and location_host != host.lower():
        raise StorageError(
            f"Backup {location} is stored on {location_host}, not on the configured host {host}"
        )


class LocalBackend:
    """Copies artifacts into a local (or mounted) directory."""

    def upload(self, local_path: str, storage_path: str) -> str:
        if not storage_path:
            raise StorageError("Local storage requires a storage path")

        dest_dir = Path(storage_path)
        dest_path = dest_dir / os.path.basename(local_path)

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            if dest_path.exists() and os.path.samefile(local_path, dest_path):
                return str(dest_path)
            shutil.copyfile(local_path, dest_path)
            return str(dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def delete(self, location: str):
        path = location[len('file://'):] if location.startswith('file://') else location
        try:
            if os.path.exists(path):
                os.remove(path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def test_connection(self, storage_path: str) -> bool:
        if not storage_path:
            return False
        path = Path(storage_path)
        if path.exists():
            return True
        parent = path.parent
        return parent.exists() and os.access(parent, os.W_OK)


class FTPBackend:
    """Uploads artifacts to an FTP server."""

    def __init__(self, host: str, port: int = 21, username: str = None, password: str = None, timeout: int = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout

    def _connect(self) -> ftplib.FTP:
        if not self.host:
            raise StorageError("FTP host not configured")
        try:
            ftp = ftplib.FTP()
            ftp.connect(self.host, self.port, timeout=self.timeout)
            ftp.login(self.username or 'anonymous', self.password or '')
            return ftp
        except ftplib.error_perm as e:
            raise StorageError(f"FTP authentication failed: {e}")
        except (ftplib.Error, OSError) as e:
            raise StorageError(f"Failed to connect to FTP server {self.host}: {e}")

    @staticmethod
    def _ensure_directory(ftp: ftplib.FTP, directory: str):
        ftp.cwd('/')
        for part in [p for p in directory.split('/') if p]:
            try:
                ftp.cwd(part)
            except ftplib.error_perm:
                ftp.mkd(part)
                ftp.cwd(part)

    def upload(self, local_path: str, storage_path: str) -> str:
        remote_path = _remote_path(storage_path, os.path.basename(local_path))
        ftp = self._connect()
        try:
            self._ensure_directory(ftp, posixpath.dirname(remote_path))
            with open(local_path, 'rb') as f:
                ftp.storbinary(f'STOR {posixpath.basename(remote_path)}', f)
            return f"ftp://{self.host}{remote_path}"
        except (ftplib.Error, OSError) as e:
            raise StorageError(f"FTP upload failed: {e}")
        finally:
            ftp.close()

    def delete(self, location: str):
        _check_location_host(location, self.host)
        ftp = self._connect()
        try:
            ftp.delete(urlparse(location).path)
        except (ftplib.Error, OSError) as e:
            raise StorageError(f"FTP delete failed: {e}")
        finally:
            ftp.close()

    def test_connection(self, storage_path: str) -> bool:
        ftp = self._connect()
        try:
            ftp.voidcmd('NOOP')
            return True
        finally:
            ftp.close()


class SFTPBackend:
    """Uploads artifacts over SFTP."""

    def __init__(self, host: str, port: int = 22, username: str = None,
                 password: str = None, private_key: str = None):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key

    def _connect(self):
        """
        Open an SSH connection and an SFTP session.

        Returns:
            (ssh_client, sftp_client)

        Raises:
            StorageError: If connection fails
        """
        if not self.host:
            raise StorageError("SFTP host not configured")

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise StorageError("Either password or private_key must be provided")

        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())
        try:
            ssh_client.connect(**connect_kwargs)
            return ssh_client, ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            ssh_client.close()
            raise StorageError(f"SSH connection failed: {e}")
        except OSError as e:
            ssh_client.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    @staticmethod
    def _ensure_directory(sftp, directory: str):
        current = ''
        for part in [p for p in directory.split('/') if p]:
            current = f"{current}/{part}"
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def upload(self, local_path: str, storage_path: str) -> str:
        remote_path = _remote_path(storage_path, os.path.basename(local_path))
        ssh_client, sftp = self._connect()
        try:
            self._ensure_directory(sftp, posixpath.dirname(remote_path))
            sftp.put(local_path, remote_path)
            return f"sftp://{self.host}{remote_path}"
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP upload failed: {e}")
        finally:
            sftp.close()
            ssh_client.close()

    def delete(self, location: str):
        _check_location_host(location, self.host)
        ssh_client, sftp = self._connect()
        try:
            sftp.remove(urlparse(location).path)
        except FileNotFoundError:
            logger.warning(f"Remote file already gone: {location}")
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP delete failed: {e}")
        finally:
            sftp.close()
            ssh_client.close()

    def test_connection(self, storage_path: str) -> bool:
        ssh_client, sftp = self._connect()
        try:
            sftp.listdir('.')
            return True
        finally:
            sftp.close()
            ssh_client.close()


class S3Backend:
    """
    Uploads artifacts to AWS S3.

    Keys are {storage_path}/{filename}; files above 100MB use multipart upload.
    """

    def __init__(self, bucket_name: str, region: str = 'us-east-1',
                 access_key: str = None, secret_key: str = None):
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, storage_path: str) -> str:
        if not self.bucket_name:
            raise StorageError("S3 bucket not configured")
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        s3_key = _remote_path(storage_path, os.path.basename(local_path)).lstrip('/')

        try:
            if os.path.getsize(local_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=f)
            return f"s3://{self.bucket_name}/{s3_key}"
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _multipart_upload(self, local_path: str, s3_key: str):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except (ClientError, BotoCoreError, OSError):
            self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id)
            raise

    def delete(self, location: str):
        parsed = urlparse(location)
        try:
            self.s3_client.delete_object(Bucket=parsed.netloc, Key=parsed.path.lstrip('/'))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def test_connection(self, storage_path: str) -> bool:
        if not self.bucket_name:
            raise StorageError("S3 bucket not configured")
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")


class WebDAVBackend:
    """Uploads artifacts to a WebDAV share with MKCOL and PUT."""

    def __init__(self, base_url: str, username: str = None, password: str = None, timeout: int = 60):
        self.base_url = (base_url or '').rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()
        if username:
            self.session.auth = (username, password or '')

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise StorageError("WebDAV URL not configured")
        return f"{self.base_url}{quote(path)}"

    def _ensure_collection(self, directory: str):
        current = ''
        for part in [p for p in directory.split('/') if p]:
            current = f"{current}/{part}"
            response = self.session.request('MKCOL', self._url(current + '/'), timeout=self.timeout)
            # 405: collection already exists
            if response.status_code not in (200, 201, 405):
                raise StorageError(f"WebDAV MKCOL {current} failed with HTTP {response.status_code}")

    def upload(self, local_path: str, storage_path: str) -> str:
        remote_path = _remote_path(storage_path, os.path.basename(local_path))
        try:
            self._ensure_collection(posixpath.dirname(remote_path))
            with open(local_path, 'rb') as f:
                response = self.session.put(self._url(remote_path), data=f, timeout=self.timeout)
            response.raise_for_status()
            return f"webdav://{remote_path.lstrip('/')}"
        except requests.RequestException as e:
            raise StorageError(f"WebDAV upload failed: {e}")

    def delete(self, location: str):
        remote_path = '/' + location[len('webdav://'):].lstrip('/')
        try:
            response = self.session.delete(self._url(remote_path), timeout=self.timeout)
            if response.status_code == 404:
                logger.warning(f"Remote file already gone: {location}")
                return
            response.raise_for_status()
        except requests.RequestException as e:
            raise StorageError(f"WebDAV delete failed: {e}")

    def test_connection(self, storage_path: str) -> bool:
        response = self.session.request('OPTIONS', self._url('/'), timeout=self.timeout)
        return response.status_code < 400


class SimulatedCloudBackend:
    """
    Stand-in for cloud object stores without a client integration.

    Sleeps for the configured delay and reports a scheme-prefixed location.
    """

    def __init__(self, scheme: str, container: str = None, delay: float = 1.5):
        self.scheme = scheme
        self.container = container
        self.delay = delay

    def upload(self, local_path: str, storage_path: str) -> str:
        if self.delay:
            time.sleep(self.delay)
        object_name = _remote_path(storage_path, os.path.basename(local_path)).lstrip('/')
        return f"{self.scheme}://{object_name}"

    def delete(self, location: str):
        if self.delay:
            time.sleep(self.delay / 3)
        logger.info(f"Deleted simulated object: {location}")

    def test_connection(self, storage_path: str) -> bool:
        return bool(self.container)


class StorageAdapter:
    """
    Delivers finished backup artifacts to the task's storage backend.
    """

    def __init__(self, config=None, backends: Optional[Dict[StorageType, object]] = None,
                 log: Optional[Callable[[str], None]] = None):
        self.config = config or {}
        self.backends = dict(backends or {})
        self._run_log = log

    def _log(self, message: str, level: int = logging.INFO):
        logger.log(level, message)
        if self._run_log:
            self._run_log(message)

    def _build_backend(self, storage_type: StorageType):
        cfg = self.config

        if storage_type == StorageType.LOCAL:
            return LocalBackend()
        if storage_type == StorageType.FTP:
            return FTPBackend(cfg.get('FTP_HOST'), cfg.get('FTP_PORT', 21),
                              cfg.get('FTP_USERNAME'), cfg.get('FTP_PASSWORD'))
        if storage_type == StorageType.SFTP:
            return SFTPBackend(cfg.get('SFTP_HOST'), cfg.get('SFTP_PORT', 22), cfg.get('SFTP_USERNAME'),
                               cfg.get('SFTP_PASSWORD'), cfg.get('SFTP_PRIVATE_KEY'))
        if storage_type == StorageType.S3:
            return S3Backend(cfg.get('S3_BUCKET'), cfg.get('S3_REGION', 'us-east-1'),
                             cfg.get('S3_ACCESS_KEY'), cfg.get('S3_SECRET_KEY'))
        if storage_type == StorageType.WEBDAV:
            return WebDAVBackend(cfg.get('WEBDAV_URL'), cfg.get('WEBDAV_USERNAME'), cfg.get('WEBDAV_PASSWORD'))
        if storage_type == StorageType.AZURE:
            return SimulatedCloudBackend('azure', cfg.get('AZURE_CONTAINER'), cfg.get('STORAGE_SIMULATED_DELAY', 1.5))
        if storage_type == StorageType.GOOGLE_CLOUD:
            return SimulatedCloudBackend('gs', cfg.get('GCS_BUCKET'), cfg.get('STORAGE_SIMULATED_DELAY', 1.5))

        raise StorageError(f"Unsupported storage type: {storage_type}")

    def backend_for(self, storage_type):
        try:
            storage_type = StorageType(storage_type)
        except ValueError:
            raise StorageError(f"Unsupported storage type: {storage_type}")

        if storage_type not in self.backends:
            self.backends[storage_type] = self._build_backend(storage_type)
        return self.backends[storage_type]

    def upload(self, task: BackupTask, record: BackupRecord) -> str:
        """
        Upload the record's artifact to the task's storage.

        Returns:
            Storage location URI (plain path for LOCAL), also set on the record

        Raises:
            StorageError: If the backend is unsupported or the upload fails
        """
        if not record.backup_path or not os.path.exists(record.backup_path):
            raise StorageError(f"Backup artifact not found: {record.backup_path}")

        backend = self.backend_for(task.storage_type)
        self._log(f"Uploading {os.path.basename(record.backup_path)} to {task.storage_type.value} storage")

        location = backend.upload(record.backup_path, task.storage_path)
        record.storage_location = location

        self._log(f"Uploaded to {location}")
        return location

    def delete(self, record: BackupRecord):
        """
        Remove the stored copy of a record's artifact.

        Raises:
            StorageError: If the location's scheme is unknown or deletion fails
        """
        location = record.storage_location
        if not location:
            self._log(f"Record {record.backup_name} has no storage location, nothing to delete", logging.WARNING)
            return

        scheme = location.split('://', 1)[0] if '://' in location else 'file'
        storage_type = SCHEME_TO_STORAGE_TYPE.get(scheme)
        if storage_type is None:
            raise StorageError(f"Unknown storage location scheme: {scheme}")

        self.backend_for(storage_type).delete(location)
        self._log(f"Deleted stored backup: {location}")

    def test_connection(self, storage_type, storage_path: str) -> bool:
        """Check that a backend is reachable; any failure yields False."""
        try:
            return bool(self.backend_for(storage_type).test_connection(storage_path))
        except Exception as e:
            self._log(f"Storage connection test failed for {storage_type}: {e}", logging.WARNING)
            return False
