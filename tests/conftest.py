"""
Shared fixtures and in-memory fakes for the penv test suite.

None of the fakes touch the network or a real git remote.
"""

import hashlib
import io
import tarfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from penv.core.checkout_manager import GitError
from penv.core.config_manager import ConfigManager
from penv.core.interfaces import IGitClient, IReleaseSource, IStateStore
from penv.core.models import ActiveState, Release, ReleaseAsset
from penv.core.version_manager import VersionManager

TARGET = "x86_64-unknown-linux-gnu"
BINARIES = ["pcli", "pclientd", "pd"]


def make_archive(binary: str, payload: bytes) -> bytes:
    """Build a tar.gz holding `<binary>-<target>/<binary>`."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        info = tarfile.TarInfo(name=f"{binary}-{TARGET}/{binary}")
        info.size = len(payload)
        info.mode = 0o755
        tf.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


class FakeReleaseSource(IReleaseSource):
    """Release source serving prebuilt archives from memory."""

    def __init__(self):
        self.releases: List[Release] = []
        self.files: Dict[str, bytes] = {}
        self.list_calls = 0
        self.downloads: List[str] = []
        self._lock = threading.Lock()

    def add_release(
        self,
        version: str,
        binaries: Optional[List[str]] = None,
        prerelease: bool = False,
        corrupt: Optional[str] = None,
    ) -> Release:
        """
        Publish a release. `corrupt` names a binary whose published
        checksum does not match its archive.
        """
        release = Release(version=version, tag=f"v{version}", prerelease=prerelease)
        for binary in binaries or BINARIES:
            name = f"{binary}-{TARGET}.tar.gz"
            url = f"https://releases.invalid/v{version}/{name}"
            archive = make_archive(binary, f"{binary} {version}\n".encode())
            digest = hashlib.sha256(archive).hexdigest()
            if binary == corrupt:
                digest = "0" * 64
            self.files[url] = archive
            self.files[url + ".sha256"] = f"{digest}  {name}\n".encode()
            asset = ReleaseAsset(binary=binary, target=TARGET, name=name, url=url, checksum_url=url + ".sha256")
            release.assets.setdefault(binary, {})[TARGET] = asset
        self.releases.append(release)
        return release

    def list_releases(self, use_cache: bool = False) -> List[Release]:
        self.list_calls += 1
        return list(self.releases)

    def fetch_bytes(self, url: str) -> bytes:
        return self.files[url]

    def download_file(self, url: str, dest: Path, progress_callback: Optional[Callable[[int, int], None]] = None) -> str:
        with self._lock:
            self.downloads.append(url)
        content = self.files[url]
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        if progress_callback:
            progress_callback(len(content), len(content))
        return hashlib.sha256(content).hexdigest()


class FakeGitClient(IGitClient):
    """
    Git client that fakes a repository with two marker files.

    `.fake-remote` stores the source url, `.fake-head` the checked-out commit.
    Advancing `remote_heads[url]` simulates new upstream commits.
    """

    def __init__(self):
        self.remote_heads: Dict[str, str] = {}
        self.clones: List[str] = []
        self.fail_clone = False

    def clone(self, url: str, dest: Path) -> None:
        if self.fail_clone:
            raise GitError(f"clone of {url} failed")
        self.clones.append(url)
        dest.mkdir(parents=True)
        (dest / "Cargo.toml").write_text("[workspace]\n")
        (dest / ".fake-remote").write_text(url)
        (dest / ".fake-head").write_text(self.remote_heads.setdefault(url, "a" * 40))

    def pull(self, workdir: Path) -> None:
        url = (workdir / ".fake-remote").read_text()
        (workdir / ".fake-head").write_text(self.remote_heads[url])

    def head_commit(self, workdir: Path) -> str:
        return (workdir / ".fake-head").read_text()


class MemoryStateStore(IStateStore):
    """ActiveState store kept in memory; `fail_save` makes the next save raise."""

    def __init__(self):
        self.state = ActiveState()
        self.fail_save = False
        self._lock = threading.RLock()

    def load(self) -> ActiveState:
        return ActiveState(active_alias=self.state.active_alias)

    def save(self, state: ActiveState) -> None:
        if self.fail_save:
            raise OSError("disk full")
        self.state = ActiveState(active_alias=state.active_alias)

    def lock(self):
        return self._lock


@pytest.fixture
def home(tmp_path):
    return tmp_path / "penv-home"


@pytest.fixture
def config_manager(home):
    manager = ConfigManager(home)
    manager.set_setting("target_triple", TARGET)
    return manager


@pytest.fixture
def release_source():
    return FakeReleaseSource()


@pytest.fixture
def git_client():
    return FakeGitClient()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def version_manager(config_manager, release_source, git_client, state_store):
    return VersionManager(
        config_manager,
        release_source=release_source,
        git_client=git_client,
        state_store=state_store,
    )
