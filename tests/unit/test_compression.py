"""
Unit tests for artifact post-processing (mailvault/backup/compression.py).
"""

import gzip
import zipfile
from datetime import datetime

import pytest

from mailvault.backup.compression import (
    CompressionError,
    bundle_artifacts,
    calculate_checksum,
    compress_file,
    decompress_file,
    extract_bundle,
    generate_backup_name,
    get_archive_size
)


@pytest.fixture
def artifacts(tmp_path):
    dump = tmp_path / 'database_full_20240101_020000.sql'
    dump.write_text('CREATE TABLE users (id INT);\n' * 50)
    archive = tmp_path / 'files_full_20240101_020000.zip'
    with zipfile.ZipFile(archive, 'w') as zipf:
        zipf.writestr('inbox/a.txt', 'attachment a')
    return [dump, archive]


class TestGenerateBackupName:
    """Test run name generation."""

    def test_basic(self):
        name = generate_backup_name('nightly', 'FULL', datetime(2024, 1, 15, 14, 30, 45))
        assert name == 'nightly_FULL_20240115_143045'

    def test_special_characters_replaced(self):
        name = generate_backup_name('mail db/backup #1', 'INCREMENTAL', datetime(2024, 1, 15, 14, 30, 45))
        assert name == 'mail_db_backup__1_INCREMENTAL_20240115_143045'

    def test_defaults_to_now(self):
        name = generate_backup_name('nightly', 'FULL')
        assert name.startswith(f"nightly_FULL_{datetime.utcnow():%Y%m%d}")


class TestBundle:
    """Test bundling the artifacts of one run."""

    def test_bundle_and_extract(self, artifacts, tmp_path):
        bundle = bundle_artifacts([str(p) for p in artifacts], str(tmp_path / 'run.zip'))

        with zipfile.ZipFile(bundle) as zipf:
            assert sorted(zipf.namelist()) == sorted(p.name for p in artifacts)

        out = tmp_path / 'out'
        out.mkdir()
        extracted = extract_bundle(bundle, str(out))

        assert sorted(p.rsplit('/', 1)[-1] for p in extracted) == sorted(p.name for p in artifacts)
        assert (out / artifacts[0].name).read_text() == artifacts[0].read_text()

    def test_bundle_requires_artifacts(self, tmp_path):
        with pytest.raises(CompressionError, match='No artifacts'):
            bundle_artifacts([], str(tmp_path / 'run.zip'))

    def test_bundle_missing_artifact(self, tmp_path):
        output = tmp_path / 'run.zip'
        with pytest.raises(CompressionError):
            bundle_artifacts([str(tmp_path / 'missing.sql')], str(output))
        assert not output.exists()

    def test_extract_rejects_nested_entries(self, tmp_path):
        bundle = tmp_path / 'bad.zip'
        with zipfile.ZipFile(bundle, 'w') as zipf:
            zipf.writestr('../escape.sql', 'x')

        with pytest.raises(CompressionError, match='Unexpected entry'):
            extract_bundle(str(bundle), str(tmp_path))

    def test_extract_invalid_bundle(self, tmp_path):
        bundle = tmp_path / 'bad.zip'
        bundle.write_bytes(b'not a zip')

        with pytest.raises(CompressionError, match='Invalid bundle'):
            extract_bundle(str(bundle), str(tmp_path))


class TestGzip:
    """Test gzip compression of artifacts."""

    def test_compress_replaces_original(self, artifacts):
        dump = artifacts[0]
        original = dump.read_bytes()

        gz_path = compress_file(str(dump))

        assert gz_path == f"{dump}.gz"
        assert not dump.exists()
        with gzip.open(gz_path, 'rb') as f:
            assert f.read() == original

    def test_compress_keeps_original(self, artifacts):
        compress_file(str(artifacts[0]), remove_original=False)
        assert artifacts[0].exists()

    def test_repetitive_data_shrinks(self, artifacts):
        size = artifacts[0].stat().st_size
        assert get_archive_size(compress_file(str(artifacts[0]))) < size

    def test_decompress(self, artifacts):
        original = artifacts[0].read_bytes()
        gz_path = compress_file(str(artifacts[0]))

        assert decompress_file(gz_path) == str(artifacts[0])
        assert artifacts[0].read_bytes() == original

    def test_decompress_corrupt_file(self, tmp_path):
        bad = tmp_path / 'bad.sql.gz'
        bad.write_bytes(b'definitely not gzip')

        with pytest.raises(CompressionError):
            decompress_file(str(bad))

    def test_decompress_requires_gz_suffix(self, artifacts):
        with pytest.raises(CompressionError, match='Not a gzip'):
            decompress_file(str(artifacts[0]))


class TestChecksumAndSize:
    """Test checksum and size helpers."""

    def test_checksum_is_sha256(self, tmp_path):
        path = tmp_path / 'data'
        path.write_bytes(b'abc')

        assert calculate_checksum(str(path)) == 'ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad'

    def test_checksum_missing_file(self, tmp_path):
        with pytest.raises(CompressionError):
            calculate_checksum(str(tmp_path / 'missing'))

    def test_archive_size(self, artifacts):
        assert get_archive_size(str(artifacts[0])) == artifacts[0].stat().st_size

    def test_archive_size_missing(self, tmp_path):
        with pytest.raises(CompressionError, match='not found'):
            get_archive_size(str(tmp_path / 'missing'))
