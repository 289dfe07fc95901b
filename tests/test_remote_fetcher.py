"""
Tests for the GitHub release index client (penv/core/remote_fetcher.py).
"""

import hashlib
from unittest.mock import MagicMock

import pytest
import requests

from penv.core.remote_fetcher import (
    ChecksumFormatError,
    FetchError,
    RemoteFetcher,
    parse_checksum,
    parse_release,
)
from penv.utils.retry import RetryHandler

from conftest import BINARIES, TARGET


def github_release(tag, binaries=BINARIES, draft=False, prerelease=False, with_checksums=True):
    """Build a GitHub API release object."""
    assets = []
    for binary in binaries:
        name = f"{binary}-{TARGET}.tar.gz"
        assets.append({"name": name, "browser_download_url": f"https://dl.invalid/{tag}/{name}"})
        if with_checksums:
            assets.append({
                "name": name + ".sha256",
                "browser_download_url": f"https://dl.invalid/{tag}/{name}.sha256",
            })
    assets.append({"name": "source.zip", "browser_download_url": "https://dl.invalid/source.zip"})
    return {
        "tag_name": tag,
        "draft": draft,
        "prerelease": prerelease,
        "published_at": "2024-07-01T00:00:00Z",
        "assets": assets,
    }


def json_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def fetcher(config_manager):
    session = MagicMock()
    fetcher = RemoteFetcher(config_manager, session=session)
    fetcher.retry_handler = RetryHandler(max_retries=2, sleep=lambda _: None)
    return fetcher


class TestParseChecksum:
    """Tests for parse_checksum."""

    def test_sha256sum_format(self):
        """Test the 'digest  filename' format yields the digest."""
        digest = hashlib.sha256(b"x").hexdigest()
        assert parse_checksum(f"{digest}  pcli.tar.gz\n".encode()) == digest

    def test_uppercase_normalized(self):
        """Test uppercase digests are lowered."""
        digest = hashlib.sha256(b"x").hexdigest()
        assert parse_checksum(digest.upper().encode()) == digest

    def test_invalid_content(self):
        """Test content without a digest raises ChecksumFormatError."""
        with pytest.raises(ChecksumFormatError):
            parse_checksum(b"<html>not found</html>")


class TestParseRelease:
    """Tests for parse_release."""

    def test_assets_grouped_by_binary_and_target(self):
        """Test every binary gets an asset with its checksum url."""
        release = parse_release(github_release("v0.79.2"), BINARIES)
        assert release.version == "0.79.2"
        assert release.tag == "v0.79.2"
        assert release.supports(BINARIES, TARGET)
        asset = release.asset_for("pd", TARGET)
        assert asset.checksum_url == asset.url + ".sha256"

    def test_draft_skipped(self):
        """Test draft releases are ignored."""
        assert parse_release(github_release("v0.79.2", draft=True), BINARIES) is None

    def test_unparseable_tag_skipped(self):
        """Test releases whose tag is not semver are ignored."""
        assert parse_release(github_release("testnet-preview"), BINARIES) is None

    def test_assets_without_checksum_ignored(self):
        """Test assets with no .sha256 sibling are not installable."""
        release = parse_release(github_release("v0.79.2", with_checksums=False), BINARIES)
        assert not release.supports(BINARIES, TARGET)

    def test_prerelease_flag(self):
        """Test the prerelease flag is taken from the API or the tag."""
        assert parse_release(github_release("v0.80.0", prerelease=True), BINARIES).prerelease
        assert parse_release(github_release("v0.81.0-rc.1"), BINARIES).prerelease


class TestRemoteFetcher:
    """Tests for RemoteFetcher."""

    def test_list_releases_sorted_and_memoized(self, fetcher):
        """Test releases come back newest first and are fetched once per process."""
        fetcher.session.get.return_value = json_response([
            github_release("v0.79.0"),
            github_release("v0.80.1"),
            github_release("v0.79.3"),
        ])

        releases = fetcher.list_releases()
        assert [r.version for r in releases] == ["0.80.1", "0.79.3", "0.79.0"]

        fetcher.list_releases()
        assert fetcher.session.get.call_count == 1

        _, kwargs = fetcher.session.get.call_args
        assert kwargs["headers"]["Accept"] == "application/vnd.github+json"
        assert kwargs["params"] == {"per_page": 100, "page": 1}

    def test_list_releases_paginates(self, fetcher):
        """Test a full page triggers a request for the next page."""
        first_page = [github_release(f"v0.{n}.0") for n in range(100)]
        second_page = [github_release("v1.0.0")]
        fetcher.session.get.side_effect = [json_response(first_page), json_response(second_page)]

        releases = fetcher.list_releases()
        assert len(releases) == 101
        assert releases[0].version == "1.0.0"
        assert fetcher.session.get.call_count == 2

    def test_empty_index(self, fetcher):
        """Test an empty index is returned as an empty list."""
        fetcher.session.get.return_value = json_response([])
        assert fetcher.list_releases() == []

    def test_transient_errors_retried_then_fetch_error(self, fetcher):
        """Test connection errors are retried and finally raise FetchError."""
        fetcher.session.get.side_effect = requests.exceptions.ConnectionError("offline")
        with pytest.raises(FetchError):
            fetcher.list_releases()
        assert fetcher.session.get.call_count == 3

    def test_client_error_not_retried(self, fetcher):
        """Test a 404 fails immediately."""
        response = MagicMock(status_code=404)
        error = requests.exceptions.HTTPError("404", response=response)
        failing = MagicMock()
        failing.raise_for_status.side_effect = error
        fetcher.session.get.return_value = failing

        with pytest.raises(FetchError):
            fetcher.list_releases()
        assert fetcher.session.get.call_count == 1

    def test_disk_cache_used_only_when_requested(self, fetcher, config_manager):
        """Test use_cache=True writes and then reuses the disk cache."""
        fetcher.session.get.return_value = json_response([github_release("v0.79.2")])
        fetcher.list_releases(use_cache=True)
        assert config_manager.RELEASE_CACHE_FILE.exists()

        fresh = RemoteFetcher(config_manager, session=MagicMock())
        releases = fresh.list_releases(use_cache=True)
        assert [r.version for r in releases] == ["0.79.2"]
        fresh.session.get.assert_not_called()

    def test_download_file_returns_digest(self, fetcher, tmp_path):
        """Test download_file streams to disk and returns the sha256."""
        response = MagicMock()
        response.headers = {"content-length": "6"}
        response.iter_content.return_value = [b"abc", b"def"]
        response.raise_for_status.return_value = None
        response.__enter__.return_value = response
        fetcher.session.get.return_value = response

        progress = []
        dest = tmp_path / "out" / "file.tar.gz"
        digest = fetcher.download_file("https://dl.invalid/file", dest, lambda d, t: progress.append((d, t)))

        assert dest.read_bytes() == b"abcdef"
        assert digest == hashlib.sha256(b"abcdef").hexdigest()
        assert progress[-1] == (6, 6)
