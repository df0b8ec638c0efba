"""
Unit tests for the file backup producer (mailvault/backup/files.py).
"""

import errno
import os
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from mailvault.backup.files import (
    FileBackupProducer,
    FileBackupError,
    get_directory_size,
    get_file_count,
    is_excluded,
    parse_exclude_patterns
)
from mailvault.models import BackupRecord, BackupScope, BackupStatus, BackupTask, BackupType, StorageType


def _task(scope=BackupScope.SYSTEM, **kwargs):
    defaults = dict(
        name='files_test',
        backup_type=BackupType.FULL,
        backup_scope=scope,
        storage_type=StorageType.LOCAL,
        storage_path='/srv/backups'
    )
    defaults.update(kwargs)
    return BackupTask(**defaults)


def _record():
    return BackupRecord(backup_name='files_test_run', backup_status=BackupStatus.RUNNING)


def _producer(mail_dirs, **kwargs):
    return FileBackupProducer(
        attachments_dir=mail_dirs['attachments'],
        logs_dir=mail_dirs['logs'],
        certificates_dir=mail_dirs['certificates'],
        **kwargs
    )


def _entries(archive_path):
    with zipfile.ZipFile(archive_path) as zipf:
        return sorted(zipf.namelist())


def _set_mtime(path, when):
    ts = when.timestamp()
    os.utime(path, (ts, ts))


def _set_utc_mtime(path, when):
    ts = when.replace(tzinfo=timezone.utc).timestamp()
    os.utime(path, (ts, ts))


class _FailingReader:
    """File handle that returns one short chunk, then fails with EIO."""

    def __init__(self, handle, chunk=4):
        self._handle = handle
        self._chunk = chunk
        self._reads = 0

    def read(self, size=-1):
        self._reads += 1
        if self._reads > 1:
            raise OSError(errno.EIO, 'Input/output error')
        return self._handle.read(self._chunk)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self._handle.close()


class TestExclusionPatterns:
    """Test exclusion token parsing and matching."""

    def test_parse_trims_and_drops_empty_tokens(self):
        assert parse_exclude_patterns(' *.tmp , ,cache* ,') == ['*.tmp', 'cache*']

    def test_parse_empty(self):
        assert parse_exclude_patterns(None) == []
        assert parse_exclude_patterns('') == []

    def test_leading_star_matches_name_suffix(self):
        assert is_excluded('/data/inbox/b.tmp', ['*.tmp'])
        assert not is_excluded('/data/inbox/b.tmpl', ['*.tmp'])

    def test_trailing_star_matches_name_prefix(self):
        assert is_excluded('/var/log/debug_trace.log', ['debug*'])
        assert not is_excluded('/var/debug/mail.log', ['debug*'])

    def test_plain_token_matches_path_substring(self):
        assert is_excluded('/data/inbox/cache/x.txt', ['/cache/'])
        assert not is_excluded('/data/inbox/x.txt', ['/cache/'])

    def test_matching_is_case_sensitive(self):
        assert not is_excluded('/data/REPORT.PDF', ['*.pdf'])


class TestSourceDirectories:
    """Test scope to directory resolution."""

    def test_system_scope(self, mail_dirs):
        producer = _producer(mail_dirs)

        dirs = producer.source_directories(_task(BackupScope.SYSTEM, include_attachments=True, include_logs=True))
        assert dirs == [mail_dirs['attachments'], mail_dirs['logs'], mail_dirs['certificates']]

        dirs = producer.source_directories(_task(BackupScope.SYSTEM, include_attachments=False, include_logs=False))
        assert dirs == [mail_dirs['certificates']]

    def test_custom_scope(self, mail_dirs):
        producer = _producer(mail_dirs)
        dirs = producer.source_directories(_task(BackupScope.CUSTOM, include_attachments=False, include_logs=True))
        assert dirs == [mail_dirs['logs']]

    def test_user_and_domain_scope_use_attachments(self, mail_dirs):
        producer = _producer(mail_dirs)
        for scope in (BackupScope.USER, BackupScope.DOMAIN):
            assert producer.source_directories(_task(scope, include_logs=True)) == [mail_dirs['attachments']]

    def test_folder_scope_uses_source_path(self, mail_dirs):
        producer = _producer(mail_dirs)
        task = _task(BackupScope.FOLDER, source_path='/srv/shared')
        assert producer.source_directories(task) == ['/srv/shared']

    def test_folder_scope_falls_back_to_storage_path(self, mail_dirs):
        producer = _producer(mail_dirs)
        task = _task(BackupScope.FOLDER, source_path=None, storage_path='/srv/folder')
        assert producer.source_directories(task) == ['/srv/folder']

    def test_folder_scope_without_folder_raises(self, mail_dirs):
        producer = _producer(mail_dirs)
        task = _task(BackupScope.FOLDER, source_path=None, storage_path=None)
        with pytest.raises(FileBackupError, match='no source folder'):
            producer.source_directories(task)


class TestProduce:
    """Test archive creation."""

    def test_full_archive_contains_every_file_once(self, mail_dirs, tmp_path):
        producer = _producer(mail_dirs)
        record = _record()
        task = _task(BackupScope.SYSTEM, include_attachments=True, include_logs=True)

        path = producer.produce(task, record, output_dir=str(tmp_path / 'out'))

        assert _entries(path) == sorted([
            'inbox/a.txt', 'inbox/b.tmp', 'report.pdf',
            'mail.log', 'debug_trace.log',
            'server.pem'
        ])
        assert record.files_processed == 6
        assert record.files_skipped == 0
        assert record.files_failed == 0
        assert record.backup_path == path
        assert record.backup_size == os.path.getsize(path)

    def test_archive_name_uses_mode_and_output_dir(self, mail_dirs, tmp_path):
        producer = _producer(mail_dirs)
        path = producer.produce(_task(), _record(), mode='incremental', output_dir=str(tmp_path / 'out'))

        name = os.path.basename(path)
        assert os.path.dirname(path) == str(tmp_path / 'out')
        assert name.startswith('files_incremental_')
        assert name.endswith('.zip')

    def test_output_dir_defaults_to_record_path_directory(self, mail_dirs, tmp_path):
        producer = _producer(mail_dirs)
        record = _record()
        record.backup_path = str(tmp_path / 'legacy' / 'run.backup')

        path = producer.produce(_task(), record)

        assert os.path.dirname(path) == str(tmp_path / 'legacy')

    def test_no_output_location_raises(self, mail_dirs):
        with pytest.raises(FileBackupError):
            _producer(mail_dirs).produce(_task(), _record())

    def test_folder_scope_scenario(self, mail_dirs, tmp_path):
        """FOLDER scope with '*.tmp' excluded archives the rest of the folder."""
        producer = _producer(mail_dirs)
        record = _record()
        task = _task(BackupScope.FOLDER, source_path=mail_dirs['attachments'], exclude_patterns='*.tmp')

        path = producer.produce(task, record, output_dir=str(tmp_path / 'out'))

        assert _entries(path) == ['inbox/a.txt', 'report.pdf']
        assert record.files_processed == 2
        assert record.files_skipped == 1
        assert record.files_failed == 0

    def test_since_skips_older_files(self, mail_dirs, tmp_path):
        now = datetime.utcnow()
        attachments = mail_dirs['root'] / 'attachments'
        _set_mtime(attachments / 'inbox' / 'a.txt', now - timedelta(days=3))
        _set_mtime(attachments / 'report.pdf', now - timedelta(days=3))

        producer = _producer(mail_dirs)
        record = _record()
        task = _task(BackupScope.USER)

        path = producer.produce(task, record, since=now - timedelta(days=1), output_dir=str(tmp_path / 'out'))

        assert _entries(path) == ['inbox/b.tmp']
        assert record.files_processed == 1
        assert record.files_skipped == 2

    def test_custom_scope_since_archives_recent_attachments_only(self, mail_dirs, tmp_path):
        """CUSTOM scope without logs archives attachment files modified at or after since."""
        since = datetime(2024, 1, 1, 12, 0, 0)
        attachments = mail_dirs['root'] / 'attachments'
        _set_utc_mtime(attachments / 'inbox' / 'a.txt', since - timedelta(seconds=1))
        _set_utc_mtime(attachments / 'report.pdf', since)

        producer = _producer(mail_dirs)
        record = _record()
        task = _task(BackupScope.CUSTOM, include_attachments=True, include_logs=False)

        path = producer.produce(task, record, since=since, output_dir=str(tmp_path / 'out'))

        assert _entries(path) == ['inbox/b.tmp', 'report.pdf']
        assert record.files_processed == 2
        assert record.files_skipped == 1
        assert record.files_failed == 0

    def test_file_modified_exactly_at_since_is_archived(self, mail_dirs, tmp_path):
        since = datetime(2024, 1, 1, 12, 0, 0)
        for path in (mail_dirs['root'] / 'attachments').rglob('*'):
            if path.is_file():
                _set_utc_mtime(path, since)

        record = _record()
        path = _producer(mail_dirs).produce(_task(BackupScope.USER), record, since=since,
                                            output_dir=str(tmp_path / 'out'))

        assert _entries(path) == ['inbox/a.txt', 'inbox/b.tmp', 'report.pdf']
        assert record.files_skipped == 0

    def test_oversized_files_are_skipped(self, mail_dirs, tmp_path):
        producer = _producer(mail_dirs, max_file_size=10)
        record = _record()

        path = producer.produce(_task(BackupScope.USER), record, output_dir=str(tmp_path / 'out'))

        # 'temporary' is 9 bytes, the others are larger
        assert _entries(path) == ['inbox/b.tmp']
        assert record.files_skipped == 2

    def test_counters_add_up_to_files_visited(self, mail_dirs, tmp_path):
        producer = _producer(mail_dirs, max_file_size=12)
        record = _record()
        task = _task(BackupScope.SYSTEM, include_logs=True, exclude_patterns='debug*')

        producer.produce(task, record, output_dir=str(tmp_path / 'out'))

        assert record.files_processed + record.files_skipped + record.files_failed == 6

    def test_entries_keep_file_mtime(self, mail_dirs, tmp_path):
        when = datetime(2023, 6, 1, 12, 30, 10)
        target = mail_dirs['root'] / 'certs' / 'server.pem'
        ts = when.timestamp()
        os.utime(target, (ts, ts))

        producer = _producer(mail_dirs)
        path = producer.produce(
            _task(BackupScope.SYSTEM, include_attachments=False), _record(), output_dir=str(tmp_path / 'out')
        )

        with zipfile.ZipFile(path) as zipf:
            info = zipf.getinfo('server.pem')
        assert info.date_time[:5] == (2023, 6, 1, 12, 30)

    def test_missing_source_directory_is_skipped(self, mail_dirs, tmp_path):
        producer = FileBackupProducer(
            attachments_dir=str(tmp_path / 'missing'),
            logs_dir=mail_dirs['logs'],
            certificates_dir=mail_dirs['certificates']
        )
        record = _record()

        path = producer.produce(_task(BackupScope.USER), record, output_dir=str(tmp_path / 'out'))

        assert _entries(path) == []
        assert record.files_processed == 0

    def test_unreadable_file_counts_as_failed(self, mail_dirs, tmp_path, monkeypatch):
        producer = _producer(mail_dirs)
        record = _record()
        original_add = FileBackupProducer._add_file

        def flaky_add(zipf, path, arcname):
            if path.endswith('report.pdf'):
                raise PermissionError('denied')
            return original_add(zipf, path, arcname)

        monkeypatch.setattr(FileBackupProducer, '_add_file', staticmethod(flaky_add))

        path = producer.produce(_task(BackupScope.USER), record, output_dir=str(tmp_path / 'out'))

        assert 'report.pdf' not in _entries(path)
        assert record.files_failed == 1
        assert record.files_processed == 2

    def test_read_error_mid_copy_leaves_no_partial_entry(self, mail_dirs, tmp_path, monkeypatch):
        real_open = open

        def open_with_failing_pdf(path, mode='r', *args, **kwargs):
            handle = real_open(path, mode, *args, **kwargs)
            if str(path).endswith('report.pdf'):
                return _FailingReader(handle)
            return handle

        monkeypatch.setattr('mailvault.backup.files.open', open_with_failing_pdf, raising=False)
        record = _record()

        path = _producer(mail_dirs).produce(_task(BackupScope.USER), record, output_dir=str(tmp_path / 'out'))

        assert _entries(path) == ['inbox/a.txt', 'inbox/b.tmp']
        assert record.files_failed == 1
        assert record.files_processed == 2
        with zipfile.ZipFile(path) as zipf:
            assert zipf.testzip() is None
            assert zipf.read('inbox/a.txt') == b'attachment a'

    def test_symlinks_are_not_archived(self, mail_dirs, tmp_path):
        link = mail_dirs['root'] / 'attachments' / 'link.txt'
        os.symlink(mail_dirs['root'] / 'attachments' / 'report.pdf', link)

        record = _record()
        path = _producer(mail_dirs).produce(_task(BackupScope.USER), record, output_dir=str(tmp_path / 'out'))

        assert 'link.txt' not in _entries(path)
        assert record.files_processed == 3


class TestRestoreFiles:
    """Test archive extraction."""

    def test_restore_extracts_all_files(self, mail_dirs, tmp_path):
        producer = _producer(mail_dirs)
        path = producer.produce(_task(BackupScope.USER), _record(), output_dir=str(tmp_path / 'out'))

        target = tmp_path / 'restored'
        count = producer.restore_files(path, str(target))

        assert count == 3
        assert (target / 'inbox' / 'a.txt').read_text() == 'attachment a'

    def test_restore_rejects_path_traversal(self, mail_dirs, tmp_path):
        evil = tmp_path / 'evil.zip'
        with zipfile.ZipFile(evil, 'w') as zipf:
            zipf.writestr('../outside.txt', 'x')

        with pytest.raises(FileBackupError, match='escapes'):
            _producer(mail_dirs).restore_files(str(evil), str(tmp_path / 'restored'))

        assert not (tmp_path / 'outside.txt').exists()

    def test_restore_missing_archive(self, mail_dirs, tmp_path):
        with pytest.raises(FileBackupError, match='not found'):
            _producer(mail_dirs).restore_files(str(tmp_path / 'nope.zip'), str(tmp_path / 'restored'))


class TestDirectoryHelpers:
    """Test size and count helpers."""

    def test_directory_size_and_count(self, mail_dirs):
        assert get_file_count(mail_dirs['attachments']) == 3
        assert get_directory_size(mail_dirs['attachments']) == len('attachment a') + len('temporary') + len(b'%PDF-1.4 report')

    def test_missing_directory(self, tmp_path):
        assert get_file_count(str(tmp_path / 'missing')) == 0
        assert get_directory_size(str(tmp_path / 'missing')) == 0
