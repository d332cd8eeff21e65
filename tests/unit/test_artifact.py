"""
Unit tests for the artifact codec.
"""

import gzip
import io
import tarfile

import pytest

from squizzle.core.artifact import MANIFEST_FILENAME, decode, encode, read_entries, read_manifest
from squizzle.core.manifest import ArtifactFile, create_manifest
from squizzle.core.types import MigrationType
from squizzle.exceptions import ChecksumError, MigrationError


def _tar(entries):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return gzip.compress(buffer.getvalue())


class TestEncode:
    """Test cases for artifact encoding."""

    def test_encode_is_deterministic(self, files):
        """Test that identical inputs produce identical bytes."""
        manifest = create_manifest("1.0.0", files)

        assert encode(files, manifest) == encode(list(reversed(files)), manifest)

    def test_archive_layout(self, files):
        """Test that files sit at their declared paths next to the manifest."""
        manifest = create_manifest("1.0.0", files)
        artifact = encode(files, manifest)

        with tarfile.open(fileobj=io.BytesIO(artifact), mode="r:gz") as archive:
            names = archive.getnames()

        assert MANIFEST_FILENAME in names
        assert "drizzle/0001_users.sql" in names
        assert read_manifest(artifact) == manifest


class TestDecode:
    """Test cases for artifact decoding."""

    def test_non_utf8_migration(self):
        """Test that undecodable SQL is a migration error naming the file."""
        files = [ArtifactFile("drizzle/0001.sql", "SELECT 'café';".encode("latin-1"), MigrationType.DRIZZLE)]
        manifest = create_manifest("1.0.0", files)

        with pytest.raises(MigrationError, match="drizzle/0001.sql is not valid UTF-8") as exc_info:
            decode(encode(files, manifest), manifest)

        assert isinstance(exc_info.value.original_error, UnicodeDecodeError)

    def test_decode_returns_migrations(self, files):
        """Test extracting verified migrations."""
        manifest = create_manifest("1.0.0", files)
        migrations = decode(encode(files, manifest), manifest)

        assert [m.path for m in migrations] == [f.path for f in manifest.files]
        assert migrations[0].sql == files[0].content.decode()
        assert migrations[-1].type == MigrationType.ROLLBACK

    def test_leading_dot_slash_normalized(self):
        """Test that ./-prefixed archive entries match manifest paths."""
        files = [ArtifactFile("drizzle/0001.sql", b"SELECT 1;", MigrationType.DRIZZLE)]
        manifest = create_manifest("1.0.0", files)

        migrations = decode(_tar({"./drizzle/0001.sql": b"SELECT 1;"}), manifest)

        assert migrations[0].path == "drizzle/0001.sql"

    def test_unreferenced_entries_ignored(self):
        """Test that extra archive entries are not executed."""
        files = [ArtifactFile("drizzle/0001.sql", b"SELECT 1;", MigrationType.DRIZZLE)]
        manifest = create_manifest("1.0.0", files)
        artifact = _tar({"drizzle/0001.sql": b"SELECT 1;", "drizzle/9999_extra.sql": b"DROP TABLE users;"})

        assert [m.path for m in decode(artifact, manifest)] == ["drizzle/0001.sql"]
        assert set(read_entries(artifact)) == {"drizzle/0001.sql", "drizzle/9999_extra.sql"}

    def test_tampered_content_raises_checksum_error(self):
        """Test that changed file content is detected."""
        files = [ArtifactFile("drizzle/0001.sql", b"SELECT 1;", MigrationType.DRIZZLE)]
        manifest = create_manifest("1.0.0", files)

        with pytest.raises(ChecksumError) as exc_info:
            decode(_tar({"drizzle/0001.sql": b"DROP TABLE users;"}), manifest)

        assert exc_info.value.path == "drizzle/0001.sql"
        assert exc_info.value.expected_checksum == manifest.files[0].checksum

    def test_missing_file_raises(self):
        """Test that a manifest file absent from the archive fails extraction."""
        files = [ArtifactFile("drizzle/0001.sql", b"SELECT 1;", MigrationType.DRIZZLE)]
        manifest = create_manifest("1.0.0", files)

        with pytest.raises(MigrationError, match="Failed to extract migrations"):
            decode(_tar({}), manifest)

    def test_corrupt_archive_raises(self, files):
        """Test that unreadable bytes raise a migration error."""
        manifest = create_manifest("1.0.0", files)

        with pytest.raises(MigrationError):
            decode(b"not a tarball", manifest)
