"""
Tests for the version cache and the transactional installer
(penv/core/cache_manager.py, penv/core/download_manager.py).
"""

import pytest

from penv.core.cache_manager import CacheManager, VersionNotInstalledError
from penv.core.download_manager import (
    ChecksumMismatchError,
    DownloadManager,
    InstallationError,
    InstallState,
    InstallTransaction,
)
from penv.core.version_utils import parse_requirement

from conftest import BINARIES


@pytest.fixture
def cache_manager(config_manager):
    return CacheManager(config_manager)


@pytest.fixture
def download_manager(config_manager, cache_manager, release_source):
    return DownloadManager(config_manager, cache_manager, release_source)


def staging_dirs(cache_manager):
    if not cache_manager.versions_dir.exists():
        return []
    return [p for p in cache_manager.versions_dir.iterdir() if p.name.startswith(".staging-")]


class TestInstall:
    """Tests for DownloadManager.install."""

    def test_install_records_all_binaries(self, download_manager, cache_manager, release_source):
        """Test a successful install writes every binary and one index entry."""
        release = release_source.add_release("0.79.3")

        entry = download_manager.install(release)

        assert entry.version == "0.79.3"
        for binary in BINARIES:
            path = entry.artifact_path(binary)
            assert path.read_bytes() == f"{binary} 0.79.3\n".encode()
            assert path.stat().st_mode & 0o100
        assert cache_manager.installed_versions() == ["0.79.3"]
        assert cache_manager.verify(entry)
        assert staging_dirs(cache_manager) == []

    def test_install_is_idempotent(self, download_manager, cache_manager, release_source):
        """Test a second install of the same version performs no downloads."""
        release = release_source.add_release("0.79.3")
        first = download_manager.install(release)
        downloads = len(release_source.downloads)

        second = download_manager.install(release)

        assert len(release_source.downloads) == downloads
        assert second.to_dict() == first.to_dict()
        assert cache_manager.installed_versions() == ["0.79.3"]

    def test_checksum_mismatch_leaves_no_trace(self, download_manager, cache_manager, release_source):
        """Test a bad checksum on one binary aborts the whole install."""
        release = release_source.add_release("0.79.3", corrupt="pclientd")

        with pytest.raises(ChecksumMismatchError):
            download_manager.install(release)

        assert cache_manager.get("0.79.3") is None
        assert not cache_manager.version_dir("0.79.3").exists()
        assert staging_dirs(cache_manager) == []

    def test_missing_binary_for_target(self, download_manager, cache_manager, release_source):
        """Test a release without every binary is refused before downloading."""
        release = release_source.add_release("0.79.3", binaries=["pcli", "pclientd"])

        with pytest.raises(InstallationError):
            download_manager.install(release)

        assert release_source.downloads == []
        assert cache_manager.get("0.79.3") is None

    def test_corrupt_entry_reinstalled(self, download_manager, cache_manager, release_source):
        """Test an entry whose binary was tampered with is discarded and reinstalled."""
        release = release_source.add_release("0.79.3")
        entry = download_manager.install(release)
        entry.artifact_path("pd").write_bytes(b"tampered")

        reinstalled = download_manager.install(release)

        assert reinstalled.artifact_path("pd").read_bytes() == b"pd 0.79.3\n"
        assert cache_manager.verify(reinstalled)

    def test_progress_and_status_callbacks(self, download_manager, release_source):
        """Test callbacks receive per-binary progress and status messages."""
        release = release_source.add_release("0.79.3")
        progress, status = [], []

        download_manager.install(release, lambda b, d, t: progress.append(b), status.append)

        assert sorted(set(progress)) == sorted(BINARIES)
        assert status[-1] == "已安装 0.79.3"


class TestInstallTransaction:
    """Tests for the InstallTransaction state machine."""

    def test_commit_requires_verified(self, tmp_path):
        """Test commit refuses a transaction that was never verified."""
        transaction = InstallTransaction("0.1.0", tmp_path)
        with pytest.raises(InstallationError):
            transaction.commit(tmp_path / "0.1.0")
        transaction.abort()
        assert transaction.state is InstallState.ABORTED
        assert not transaction.staging_dir.exists()

    def test_mark_verified_reports_missing(self, tmp_path):
        """Test verification fails when a binary was never staged."""
        transaction = InstallTransaction("0.1.0", tmp_path)
        with pytest.raises(InstallationError, match="pcli"):
            transaction.mark_verified(["pcli"])
        transaction.abort()


class TestCacheManager:
    """Tests for CacheManager queries and maintenance."""

    def test_require_missing_version(self, cache_manager):
        """Test require raises VersionNotInstalledError for unknown versions."""
        with pytest.raises(VersionNotInstalledError):
            cache_manager.require("0.79.3")

    def test_require_detects_deleted_binary(self, download_manager, cache_manager, release_source):
        """Test require fails when an artifact disappeared from disk."""
        entry = download_manager.install(release_source.add_release("0.79.3"))
        entry.artifact_path("pcli").unlink()

        with pytest.raises(VersionNotInstalledError, match="pcli"):
            cache_manager.require("0.79.3")
        assert not cache_manager.is_installed("0.79.3")

    def test_list_filters_by_requirement(self, download_manager, cache_manager, release_source):
        """Test list returns matching entries newest first."""
        for version in ("0.79.0", "0.79.3", "0.80.0"):
            download_manager.install(release_source.add_release(version))

        listed = cache_manager.list(parse_requirement("0.79"))
        assert [e.version for e in listed] == ["0.79.3", "0.79.0"]
        assert [e.version for e in cache_manager.list()] == ["0.80.0", "0.79.3", "0.79.0"]

    def test_remove(self, download_manager, cache_manager, release_source):
        """Test remove drops the entry and its directory."""
        download_manager.install(release_source.add_release("0.79.3"))

        cache_manager.remove("0.79.3")

        assert cache_manager.get("0.79.3") is None
        assert not cache_manager.version_dir("0.79.3").exists()
        with pytest.raises(VersionNotInstalledError):
            cache_manager.remove("0.79.3")

    def test_reset(self, download_manager, cache_manager, release_source):
        """Test reset removes every version."""
        download_manager.install(release_source.add_release("0.79.3"))
        download_manager.install(release_source.add_release("0.80.0"))

        assert cache_manager.reset() == ["0.80.0", "0.79.3"]
        assert cache_manager.installed_versions() == []

    def test_reset_spares_install_in_progress(self, download_manager, cache_manager, release_source):
        """Test reset leaves another install's staging directory alone."""
        download_manager.install(release_source.add_release("0.79.3"))
        transaction = InstallTransaction("0.80.0", cache_manager.versions_dir)
        stray = cache_manager.versions_dir / "0.78.0"
        stray.mkdir()

        assert cache_manager.reset() == ["0.79.3"]

        assert transaction.staging_dir.is_dir()
        assert not stray.exists()
        transaction.abort()
        assert staging_dirs(cache_manager) == []
