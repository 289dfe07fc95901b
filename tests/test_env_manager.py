"""
Tests for the shell hook protocol (penv/core/env_manager.py).
"""

import pytest

from penv.core.env_manager import (
    BINARY_HOME_VARS,
    ENDPOINT_VAR,
    MANAGED_VARS,
    MARKER_VAR,
    NODE_VARS,
    EnvChange,
    EnvManager,
)
from penv.core.environment_manager import EnvironmentOptions
from penv.core.models import Environment
from penv.utils.input_validator import InputValidationError

GRPC = "https://grpc.testnet.penumbra.zone"


def make_env(tmp_path, include_node=True):
    return Environment(
        alias="testnet",
        version_requirement="0.79",
        grpc_url=GRPC,
        root_directory=str(tmp_path / "environments" / "testnet"),
        pinned_version="0.79.3",
        include_node=include_node,
        pd_join_url="http://grpc.testnet.penumbra.zone:26657" if include_node else None,
    )


@pytest.fixture
def env_manager():
    return EnvManager()


class TestComputeChanges:
    """Tests for EnvManager.compute_changes."""

    def test_nothing_active_and_no_marker(self, env_manager):
        """Test no commands when the shell already matches an empty state."""
        assert env_manager.compute_changes(None, None) == []
        assert env_manager.compute_changes("", None) == []

    def test_activation_exports_full_set(self, env_manager, tmp_path):
        """Test a newly active environment exports every managed variable."""
        env = make_env(tmp_path)
        changes = {c.name: c.value for c in env_manager.compute_changes(None, env)}

        assert set(changes) == set(MANAGED_VARS)
        assert changes[MARKER_VAR] == "testnet"
        assert changes[ENDPOINT_VAR] == GRPC
        assert changes[BINARY_HOME_VARS["pcli"]] == str(env.root / "pcli")
        assert changes[BINARY_HOME_VARS["pd"]] == str(env.node_dir / "pd")
        assert changes["COMETBFT_HOME"] == str(env.cometbft_home)
        assert changes["PENUMBRA_PD_JOIN_URL"] == env.pd_join_url

    def test_unchanged_truth_emits_nothing(self, env_manager, tmp_path):
        """Test the second invocation after applying changes is a no-op."""
        env = make_env(tmp_path)
        assert env_manager.compute_changes(None, env)
        assert env_manager.compute_changes("testnet", env) == []

    def test_client_only_unsets_node_vars(self, env_manager, tmp_path):
        """Test node variables are unset rather than exported empty."""
        changes = {c.name: c.value for c in env_manager.compute_changes(None, make_env(tmp_path, include_node=False))}

        for name in NODE_VARS:
            assert changes[name] is None
        assert changes[MARKER_VAR] == "testnet"

    def test_deactivation_unsets_everything(self, env_manager):
        """Test a stale marker with nothing active unsets every variable."""
        changes = env_manager.compute_changes("testnet", None)
        assert {c.name for c in changes} == set(MANAGED_VARS)
        assert all(c.value is None for c in changes)


class TestRender:
    """Tests for EnvManager.render and hook_script."""

    def test_render_quotes_values(self, env_manager):
        """Test exported values are shell-quoted."""
        text = env_manager.render([EnvChange("A", "x y"), EnvChange("B", None)], "bash")
        assert text == "export A='x y';\nunset B;"

    def test_render_empty(self, env_manager):
        assert env_manager.render([], "zsh") == ""

    def test_unsupported_shell(self, env_manager):
        """Test shells other than bash and zsh are rejected."""
        with pytest.raises(InputValidationError):
            env_manager.render([], "fish")

    def test_bash_hook(self, env_manager, tmp_path):
        """Test the bash snippet prepends bin and registers PROMPT_COMMAND."""
        script = env_manager.hook_script("bash", ["/usr/bin/penv", "--home", "/h"], tmp_path / "bin")
        assert f"export PATH={tmp_path / 'bin'}:\"$PATH\"" in script
        assert "PROMPT_COMMAND" in script
        assert "/usr/bin/penv --home /h hook-env --shell bash" in script

    def test_zsh_hook(self, env_manager, tmp_path):
        """Test the zsh snippet registers a precmd function."""
        script = env_manager.hook_script("/bin/zsh", ["penv"], tmp_path / "bin")
        assert "precmd_functions" in script
        assert "penv hook-env --shell zsh" in script


class TestHookEnv:
    """Tests for VersionManager.hook_env against real activation state."""

    def test_hook_env_follows_activation(self, version_manager, release_source):
        """Test hook output after use, then silence, then unsets after deactivate."""
        release_source.add_release("0.79.3")
        version_manager.install("0.79")
        version_manager.create_environment("light", "0.79", GRPC, EnvironmentOptions(include_node=False))

        assert version_manager.hook_env("bash", marker="") == ""

        version_manager.use("light")
        output = version_manager.hook_env("bash", marker="")
        assert f"export {MARKER_VAR}=light;" in output
        assert "unset PENUMBRA_PD_HOME;" in output

        assert version_manager.hook_env("bash", marker="light") == ""

        version_manager.deactivate()
        assert f"unset {MARKER_VAR};" in version_manager.hook_env("zsh", marker="light")

    def test_hook_env_reads_process_marker(self, version_manager, monkeypatch):
        """Test the marker defaults to the process environment."""
        monkeypatch.setenv(MARKER_VAR, "gone")
        assert f"unset {MARKER_VAR};" in version_manager.hook_env("bash")
