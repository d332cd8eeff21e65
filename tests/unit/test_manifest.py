"""
Unit tests for manifest construction and checksums.
"""

import hashlib

import pytest
from pydantic import ValidationError

from squizzle.core.manifest import (
    ArtifactFile,
    compute_manifest_checksum,
    create_manifest,
    file_checksum,
    verify_manifest_checksum,
)
from squizzle.core.types import ChecksumAlgorithm, Manifest, MigrationType
from squizzle.version import ENGINE_VERSION


class TestCreateManifest:
    """Test cases for create_manifest."""

    def test_manifest_describes_files(self, files):
        """Test that every file gets a checksum, size and type."""
        manifest = create_manifest("1.0.0", files)

        assert manifest.version == "1.0.0"
        assert manifest.engine_version == ENGINE_VERSION
        assert [f.path for f in manifest.files] == [f.path for f in files]
        first = manifest.files[0]
        assert first.checksum == hashlib.sha256(files[0].content).hexdigest()
        assert first.size == len(files[0].content)
        assert first.type == MigrationType.DRIZZLE

    def test_checksum_independent_of_input_order(self, files):
        """Test that collection order never changes the overall checksum."""
        forward = create_manifest("1.0.0", files)
        backward = create_manifest("1.0.0", list(reversed(files)))

        assert forward.checksum == backward.checksum
        assert verify_manifest_checksum(forward)

    def test_checksum_changes_with_content(self, files):
        """Test that editing one file changes the overall checksum."""
        original = create_manifest("1.0.0", files)
        files[0] = ArtifactFile(files[0].path, b"CREATE TABLE users (id bigint);", files[0].type)

        assert create_manifest("1.0.0", files).checksum != original.checksum

    def test_empty_manifest(self):
        """Test that an empty file set still yields a valid manifest."""
        manifest = create_manifest("0.1.0", [])

        assert manifest.files == []
        assert manifest.checksum == hashlib.sha256().hexdigest()

    def test_sha512(self, files):
        """Test building a manifest with SHA-512 digests."""
        manifest = create_manifest("1.0.0", files, algorithm="sha512")

        assert manifest.checksum_algorithm == ChecksumAlgorithm.SHA512
        assert len(manifest.checksum) == 128
        assert manifest.files[0].checksum == file_checksum(files[0].content, "sha512")

    def test_invalid_version_rejected(self, files):
        """Test that a non-semantic version cannot be described."""
        with pytest.raises(ValidationError):
            create_manifest("latest", files)

    def test_invalid_dependency_rejected(self, files):
        """Test that dependencies must be versions."""
        with pytest.raises(ValidationError):
            create_manifest("1.0.0", files, dependencies=["main"])

    def test_path_escape_rejected(self):
        """Test that file paths must stay inside the artifact."""
        with pytest.raises(ValidationError):
            create_manifest("1.0.0", [ArtifactFile("../etc/passwd.sql", b"x", MigrationType.CUSTOM)])


class TestManifestSerialization:
    """Test cases for manifest JSON."""

    def test_camel_case_wire_names(self, files):
        """Test that the JSON form uses camelCase field names."""
        manifest = create_manifest("1.1.0", files, previous_version="1.0.0", drizzle_kit="0.20.0")
        data = manifest.model_dump(by_alias=True)

        assert data["previousVersion"] == "1.0.0"
        assert data["drizzleKit"] == "0.20.0"
        assert "engineVersion" in data
        assert "checksumAlgorithm" in data

    def test_json_round_trip(self, files):
        """Test that a manifest survives serialization unchanged."""
        manifest = create_manifest("1.0.0", files, notes="initial", author="ci")
        restored = Manifest.from_json(manifest.to_json().encode("utf-8"))

        assert restored == manifest

    def test_tampered_file_list_detected(self, files):
        """Test that editing the file list invalidates the checksum."""
        manifest = create_manifest("1.0.0", files)
        tampered = manifest.model_copy(update={"files": manifest.files[:-1]})

        assert not verify_manifest_checksum(tampered)
        assert compute_manifest_checksum(tampered.files) != manifest.checksum
