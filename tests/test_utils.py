"""Tests for utility functions."""

import hashlib

from phantun_manager.common.utils import find_binary, short_file_hash


class TestFindBinary:
    """Test executable lookup."""

    def test_found_on_path(self, temp_binaries, monkeypatch):
        client, _ = temp_binaries
        monkeypatch.setenv("PATH", client.rsplit("/", 1)[0])

        assert find_binary("phantun_client") == client

    def test_environment_override(self, temp_binaries, monkeypatch):
        _, server = temp_binaries
        monkeypatch.setenv("PATH", "")
        monkeypatch.setenv("PHANTUN_TEST_SERVER", server)

        assert find_binary("phantun_server_renamed", "PHANTUN_TEST_SERVER") == server

    def test_non_executable_override_is_ignored(self, tmp_path, monkeypatch):
        plain = tmp_path / "phantun_client"
        plain.write_text("not a program")
        monkeypatch.setenv("PATH", "")
        monkeypatch.setenv("PHANTUN_TEST_CLIENT", str(plain))

        assert find_binary("phantun_missing_binary", "PHANTUN_TEST_CLIENT") is None

    def test_not_found(self, monkeypatch):
        monkeypatch.setenv("PATH", "")
        assert find_binary("phantun_missing_binary") is None


class TestShortFileHash:
    """Test binary fingerprinting."""

    def test_hash_prefix(self, tmp_path):
        path = tmp_path / "phantun_client"
        path.write_bytes(b"phantun build")

        expected = hashlib.md5(b"phantun build").hexdigest()[:8]
        assert short_file_hash(str(path)) == expected

    def test_custom_length(self, tmp_path):
        path = tmp_path / "phantun_client"
        path.write_bytes(b"phantun build")
        assert len(short_file_hash(str(path), length=12)) == 12

    def test_unreadable_file(self, tmp_path):
        assert short_file_hash(str(tmp_path / "missing")) == "readable-error"
