"""
Tests for the coordinator facade (penv/core/version_manager.py).
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from filelock import FileLock, Timeout

from penv.core.models import CacheEntry, Checkout
from penv.core.remote_fetcher import NoReleasesError
from penv.core.version_manager import VersionInUseError
from penv.core.version_utils import VersionNotFoundError

from conftest import BINARIES

GRPC = "https://grpc.testnet.penumbra.zone"


class TestInstall:
    """Tests for VersionManager.install."""

    def test_resolves_against_release_index(self, version_manager, release_source):
        """Test the highest matching release is installed."""
        for version in ("0.79.0", "0.79.3", "0.80.0"):
            release_source.add_release(version)

        entry = version_manager.install("0.79")

        assert isinstance(entry, CacheEntry)
        assert entry.version == "0.79.3"

    def test_second_install_is_offline(self, version_manager, release_source):
        """Test installing an installed version downloads nothing."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        downloads = list(release_source.downloads)

        version_manager.install("0.79")

        assert release_source.downloads == downloads

    def test_empty_index(self, version_manager):
        """Test an empty index is distinct from an unmatched requirement."""
        with pytest.raises(NoReleasesError):
            version_manager.install("latest")

    def test_unmatched_requirement(self, version_manager, release_source):
        """Test no release in range raises VersionNotFoundError."""
        release_source.add_release("0.79.3")
        with pytest.raises(VersionNotFoundError):
            version_manager.install("0.81")

    def test_releases_missing_binaries_skipped(self, version_manager, release_source):
        """Test releases without every binary are not candidates."""
        release_source.add_release("0.79.3")
        release_source.add_release("0.79.4", binaries=["pcli"])

        assert version_manager.install("0.79").version == "0.79.3"

    def test_git_install_creates_checkout(self, version_manager, git_client):
        """Test a git url ensures a checkout instead of downloading."""
        checkout = version_manager.install("https://github.com/penumbra-zone/penumbra")

        assert isinstance(checkout, Checkout)
        assert git_client.clones == ["https://github.com/penumbra-zone/penumbra"]


class TestCacheQueries:
    """Tests for release listing and cache maintenance."""

    def test_available_marks_installed(self, version_manager, release_source):
        """Test available releases are newest first with install marks."""
        release_source.add_release("0.79.3")
        release_source.add_release("0.80.0")
        version_manager.install("0.79")

        listed = [(r.version, installed) for r, installed in version_manager.available_releases()]
        assert listed == [("0.80.0", False), ("0.79.3", True)]

        filtered = version_manager.available_releases("0.80")
        assert [r.version for r, _ in filtered] == ["0.80.0"]

    def test_uninstall_refuses_pinned_version(self, version_manager, release_source):
        """Test a pinned version needs --force to be removed."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        version_manager.create_environment("testnet", "0.79", GRPC)

        with pytest.raises(VersionInUseError, match="testnet"):
            version_manager.uninstall("0.79.3")

        version_manager.uninstall("v0.79.3", force=True)
        assert version_manager.list_installed() == []

    def test_reset_cache_guard(self, version_manager, release_source):
        """Test reset refuses while environments use cached versions."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        version_manager.create_environment("testnet", "0.79", GRPC)

        with pytest.raises(VersionInUseError):
            version_manager.reset_cache()
        assert version_manager.reset_cache(force=True) == ["0.79.3"]


class TestEnvironmentFacade:
    """Tests for environment operations exposed by the facade."""

    def test_describe_reports_active(self, version_manager, release_source):
        """Test describe_environment includes the active flag and binaries."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        version_manager.create_environment("testnet", "0.79", GRPC)

        assert version_manager.describe_environment("testnet")["active"] is False
        version_manager.use("testnet")
        info = version_manager.describe_environment("testnet")
        assert info["active"] is True
        assert info["pinned_version"] == "0.79.3"
        assert info["binaries"] == ["pcli", "pclientd", "pd"]

    def test_upgrade_reports_previous(self, version_manager, release_source):
        """Test upgrade_environment returns the previous pin only when it changed."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        version_manager.create_environment("testnet", "0.79", GRPC)

        _, previous = version_manager.upgrade_environment("testnet")
        assert previous is None

        release_source.add_release("0.79.5")
        version_manager.install("0.79")
        env, previous = version_manager.upgrade_environment("testnet")
        assert (previous, env.pinned_version) == ("0.79.3", "0.79.5")


class TestConcurrency:
    """Tests for operations racing on the same version."""

    def test_concurrent_installs_download_once(self, version_manager, release_source):
        """Test parallel installs of one version share a single download per binary."""
        release_source.add_release("0.79.3")

        with ThreadPoolExecutor(max_workers=4) as pool:
            entries = list(pool.map(lambda _: version_manager.install("0.79"), range(4)))

        archives = [url for url in release_source.downloads if url.endswith(".tar.gz")]
        assert len(archives) == len(BINARIES)
        assert len(set(archives)) == len(BINARIES)
        assert all(entry.to_dict() == entries[0].to_dict() for entry in entries)
        assert version_manager.list_installed() == [version_manager.cache_manager.get("0.79.3")]

    def test_uninstall_holds_registry_lock(self, version_manager, release_source, config_manager, monkeypatch):
        """Test no environment can pin a version while it is being removed."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        remove = version_manager.cache_manager.remove

        def remove_while_checking_lock(version):
            with pytest.raises(Timeout):
                FileLock(str(config_manager.lock_path("environments")), timeout=0).acquire()
            return remove(version)

        monkeypatch.setattr(version_manager.cache_manager, "remove", remove_while_checking_lock)

        assert version_manager.uninstall("0.79.3").version == "0.79.3"
