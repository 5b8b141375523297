"""Integration tests for fork sessions, snapshots and registry restore."""

import json
from pathlib import Path

import pytest

from chain_deployments.config import AccountConfig, generate_env_var_name
from chain_deployments.exceptions import (
    ConflictError,
    CrashError,
    ScriptExecutionError,
    SetupFailure,
    StateError,
    ValidationError,
)
from chain_deployments.executor import StepExecutor
from chain_deployments.paths import get_fork_dir
from chain_deployments.registry import RegistryStore
from chain_deployments.senders import PrivateKeySender
from chain_deployments.types import ExecutionStep, NetworkConfig

SEPOLIA_CHAIN_ID = 11155111

SETUP_SCRIPT = "script/SetupFork.s.sol"


def step(name: str) -> ExecutionStep:
    return ExecutionStep(name=name, script=f"script/Deploy{name}.s.sol")


def network_config(name: str) -> NetworkConfig:
    env_var = generate_env_var_name(name)
    return NetworkConfig(
        name=name,
        rpc_url=f"https://{name}.example.org",
        raw_rpc=f"${{{env_var}}}",
        env_var_name=env_var,
    )


@pytest.fixture
def executor(manager, runner, data_dir: Path) -> StepExecutor:
    return StepExecutor(
        registry=RegistryStore(data_dir),
        runner=runner,
        sender=PrivateKeySender(AccountConfig("deployer", "private_key")),
        namespace="default",
        fork_store=manager.store,
        synchronizer=manager.synchronizer,
    )


def chain_of(supervisor, manager, network: str = "sepolia"):
    return supervisor.chains[manager.store.load().get(network).fork_url]


class TestEnter:
    """Test entering a fork."""

    def test_enter_records_fork(self, manager, supervisor, project_root: Path):
        """Test that entering records the fork."""
        entry = manager.enter("sepolia")

        assert entry.chain_id == SEPOLIA_CHAIN_ID
        assert entry.env_var_name == "SEPOLIA_RPC_URL"
        assert entry.original_rpc == "https://sepolia.example.org"
        assert entry.fork_url == "http://127.0.0.1:9545"
        assert [s.command for s in entry.snapshots] == ["fork enter"]
        assert supervisor.started[0].fork_url == "https://sepolia.example.org"

        assert manager.store.load().get("sepolia") == entry
        assert manager.store.snapshot_dir("sepolia", 0).is_dir()
        assert Path(entry.pid_file).read_text().strip() == str(entry.pid)

    def test_enter_ignores_private_dir(self, manager, project_root: Path):
        """Test that entering git-ignores the private directory."""
        (project_root / ".gitignore").write_text("out/")
        manager.enter("sepolia")

        assert (project_root / ".gitignore").read_text() == "out/\n.treb/priv/\n"

    def test_gitignore_entry_added_once(self, manager, project_root: Path):
        """Test that the gitignore entry is added only once."""
        manager.enter("sepolia")
        manager.exit("sepolia")
        manager.enter("sepolia")

        assert (project_root / ".gitignore").read_text().count(".treb/priv/") == 1

    def test_enter_twice_conflicts(self, manager):
        """Test that entering an active fork conflicts."""
        manager.enter("sepolia")
        with pytest.raises(ConflictError, match="fork already active for network 'sepolia'"):
            manager.enter("sepolia")

    def test_literal_rpc_rejected(self, make_manager, supervisor):
        """Test that a network with a literal RPC URL cannot be forked."""
        local = NetworkConfig(
            name="local", rpc_url="http://127.0.0.1:8545", raw_rpc="http://127.0.0.1:8545"
        )
        manager = make_manager(resolver=lambda network: local)

        with pytest.raises(ValidationError, match=r"\$\{LOCAL_RPC_URL\}"):
            manager.enter("local")
        assert supervisor.started == []

    def test_setup_runs_against_fork(self, make_manager, runner, supervisor):
        """Test that the setup script runs against the fork."""
        manager = make_manager(setup_script=SETUP_SCRIPT)
        entry = manager.enter("sepolia")

        assert runner.calls == [
            {"script": SETUP_SCRIPT, "network": "sepolia", "env": {"SEPOLIA_RPC_URL": entry.fork_url}}
        ]
        # Setup changes are part of the initial state
        assert chain_of(supervisor, manager).state["counter"] == 1

    def test_setup_failure_leaves_nothing(self, make_manager, runner, supervisor, data_dir):
        """Test that a failed setup leaves no fork behind."""
        runner.fail_scripts.add(SETUP_SCRIPT)
        manager = make_manager(setup_script=SETUP_SCRIPT)

        with pytest.raises(SetupFailure, match="setup fork script failed"):
            manager.enter("sepolia")

        assert manager.store.load().forks == {}
        assert not manager.store.path.exists()
        assert not get_fork_dir("sepolia", data_dir).exists()
        assert supervisor.stopped == [1000]


class TestStepsAndRevert:
    """Test steps on a fork and reverting them."""

    def test_steps_push_snapshots(self, manager, executor, supervisor):
        """Test that each step pushes a snapshot."""
        manager.enter("sepolia")

        first = executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        second = executor.run_step(step("Vault"), "sepolia", SEPOLIA_CHAIN_ID)

        assert (first.snapshot_index, second.snapshot_index) == (1, 2)
        assert [h.command for h in manager.history("sepolia")] == [
            "fork enter",
            "run script/DeployToken.s.sol",
            "run script/DeployVault.s.sol",
        ]
        assert chain_of(supervisor, manager).state["counter"] == 2

        deployments = executor.registry.list_deployments()
        assert [d.id for d in deployments] == [
            "default/11155111/Token",
            "default/11155111/Vault",
        ]
        assert all(d.fork for d in deployments)

    def test_runs_are_redirected_to_fork(self, manager, executor, runner):
        """Test that runs are redirected to the fork URL."""
        entry = manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)

        assert runner.calls[0]["env"]["SEPOLIA_RPC_URL"] == entry.fork_url
        assert runner.calls[0]["network"] == "sepolia"

    def test_revert_restores_chain_and_registry(self, manager, executor, supervisor, data_dir):
        """Test that a revert restores chain and registry together."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        executor.run_step(step("Vault"), "sepolia", SEPOLIA_CHAIN_ID)

        undone = manager.revert("sepolia")

        assert undone.command == "run script/DeployVault.s.sol"
        assert chain_of(supervisor, manager).state["counter"] == 1
        assert [d.id for d in RegistryStore(data_dir).list_deployments()] == [
            "default/11155111/Token"
        ]
        assert len(manager.history("sepolia")) == 2
        assert not manager.store.snapshot_dir("sepolia", 2).exists()

    def test_step_after_revert_does_not_resurrect_records(self, manager, executor, data_dir):
        """Test that a step after a revert does not bring back reverted records."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        executor.run_step(step("Vault"), "sepolia", SEPOLIA_CHAIN_ID)
        manager.revert("sepolia")

        executor.run_step(step("Oracle"), "sepolia", SEPOLIA_CHAIN_ID)

        assert [d.id for d in RegistryStore(data_dir).list_deployments()] == [
            "default/11155111/Oracle",
            "default/11155111/Token",
        ]

    def test_nothing_to_revert(self, manager):
        """Test reverting with no steps taken."""
        manager.enter("sepolia")
        with pytest.raises(StateError, match="nothing to revert"):
            manager.revert("sepolia")
        with pytest.raises(StateError, match="nothing to revert"):
            manager.revert_all("sepolia")

    def test_revert_without_fork(self, manager):
        """Test reverting without a fork."""
        with pytest.raises(StateError, match="no active fork for network 'sepolia'"):
            manager.revert("sepolia")

    def test_revert_all(self, manager, executor, supervisor, data_dir):
        """Test reverting every step at once."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        executor.run_step(step("Vault"), "sepolia", SEPOLIA_CHAIN_ID)

        assert manager.revert_all("sepolia") == 2

        assert chain_of(supervisor, manager).state["counter"] == 0
        assert [h.command for h in manager.history("sepolia")] == ["fork enter"]
        # Nothing existed when the fork opened
        assert not (data_dir / "deployments.json").exists()
        assert RegistryStore(data_dir).list_deployments() == []

    def test_fork_usable_after_revert_all(self, manager, executor, supervisor):
        """Test that the fork can be reverted again after a full revert."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        manager.revert_all("sepolia")

        executor.run_step(step("Vault"), "sepolia", SEPOLIA_CHAIN_ID)
        assert manager.revert_all("sepolia") == 1
        assert chain_of(supervisor, manager).state["counter"] == 0

    def test_failed_step_keeps_snapshot(self, manager, executor, runner, supervisor):
        """Test that a failed step keeps its snapshot."""
        manager.enter("sepolia")
        runner.fail_scripts.add("script/DeployToken.s.sol")

        with pytest.raises(ScriptExecutionError):
            executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)

        assert len(manager.history("sepolia")) == 2
        assert manager.revert("sepolia").command == "run script/DeployToken.s.sol"

    def test_history_markers(self, manager, executor):
        """Test the markers in fork history."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)

        initial, current = manager.history("sepolia")
        assert (initial.is_initial, initial.is_current) == (True, False)
        assert (current.is_initial, current.is_current) == (False, True)
        assert current.index == 1


class TestExit:
    """Test exiting a fork."""

    def test_exit_restores_registry(self, populated_data_dir, manager, executor):
        """Test that exiting restores the registry."""
        original = (populated_data_dir / "deployments.json").read_text()
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        assert (populated_data_dir / "deployments.json").read_text() != original

        manager.exit("sepolia")

        assert (populated_data_dir / "deployments.json").read_text() == original
        assert not manager.store.path.exists()
        assert not get_fork_dir("sepolia", populated_data_dir).exists()

    def test_exit_stops_node(self, manager, supervisor):
        """Test that exiting stops the node."""
        entry = manager.enter("sepolia")
        manager.exit("sepolia")

        assert supervisor.stopped == [entry.pid]
        assert not Path(entry.pid_file).exists()

    def test_exit_without_fork(self, manager):
        """Test exiting without a fork."""
        with pytest.raises(StateError, match="no active fork"):
            manager.exit("sepolia")

    def test_exit_all(self, make_manager):
        """Test exiting every fork."""
        manager = make_manager(resolver=network_config)
        manager.enter("sepolia")
        manager.enter("mainnet")

        assert manager.exit_all() == ["mainnet", "sepolia"]
        assert manager.store.load().forks == {}

    def test_exit_all_without_forks(self, manager):
        """Test exiting every fork when none are active."""
        with pytest.raises(StateError, match="no active forks"):
            manager.exit_all()


class TestCrash:
    """Test forks whose node has died."""

    def test_status_reports_dead_fork(self, manager, supervisor):
        """Test that status reports a dead fork."""
        entry = manager.enter("sepolia")
        supervisor.crash(entry.pid)

        (status,) = manager.status()
        assert status.network == "sepolia"
        assert status.healthy is False
        # Dead forks are reported, not cleaned up
        assert manager.store.load().is_active("sepolia")

    def test_revert_on_dead_fork(self, manager, executor, supervisor):
        """Test that reverting a dead fork raises CrashError."""
        entry = manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        supervisor.crash(entry.pid)

        with pytest.raises(CrashError, match="fork restart sepolia"):
            manager.revert("sepolia")
        # The stack is untouched
        assert len(manager.history("sepolia")) == 2

    def test_step_on_dead_fork(self, manager, executor, runner, supervisor):
        """Test that a step on a dead fork raises CrashError."""
        entry = manager.enter("sepolia")
        supervisor.crash(entry.pid)

        with pytest.raises(CrashError):
            executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        assert runner.calls == []

    def test_exit_dead_fork(self, populated_data_dir, manager, executor, supervisor):
        """Test exiting a dead fork."""
        original = (populated_data_dir / "deployments.json").read_text()
        entry = manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        supervisor.crash(entry.pid)

        manager.exit("sepolia")
        assert (populated_data_dir / "deployments.json").read_text() == original

    def test_restart_dead_fork(self, manager, executor, supervisor, data_dir):
        """Test restarting a dead fork."""
        old = manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        supervisor.crash(old.pid)

        new = manager.restart("sepolia")

        assert new.pid != old.pid
        assert new.fork_url == "http://127.0.0.1:9546"
        assert [s.command for s in new.snapshots] == ["fork restart"]
        assert RegistryStore(data_dir).list_deployments() == []
        assert manager.status()[0].healthy is True

        # The fresh fork takes steps again
        executor.run_step(step("Vault"), "sepolia", SEPOLIA_CHAIN_ID)
        assert manager.revert("sepolia").command == "run script/DeployVault.s.sol"

    def test_restart_setup_failure(self, make_manager, runner, supervisor):
        """Test that a failed setup on restart keeps the fork recoverable."""
        manager = make_manager(setup_script=SETUP_SCRIPT)
        manager.enter("sepolia")
        runner.fail_scripts.add(SETUP_SCRIPT)

        with pytest.raises(SetupFailure, match="during restart"):
            manager.restart("sepolia")

        # Still exitable with the original base
        entry = manager.store.load().get("sepolia")
        assert [s.command for s in entry.snapshots] == ["fork enter"]
        manager.exit("sepolia")


class TestInspection:
    """Test fork status, diff and env overrides."""

    def test_status(self, manager, executor):
        """Test fork status."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)

        (status,) = manager.status()
        assert status.healthy is True
        assert status.chain_id == SEPOLIA_CHAIN_ID
        assert status.snapshot_count == 2
        assert status.fork_deployments == 1
        assert status.uptime is not None

    def test_diff(self, populated_data_dir, manager, executor):
        """Test the registry diff made on a fork."""
        manager.enter("sepolia")
        executor.run_step(step("Token"), "sepolia", SEPOLIA_CHAIN_ID)
        executor.registry.tag_deployment("default/11155111/Counter", "forked")

        diff = manager.diff("sepolia")

        assert diff.has_changes
        assert [d.id for d in diff.new_deployments] == ["default/11155111/Token"]
        assert [d.id for d in diff.modified_deployments] == ["default/11155111/Counter"]
        assert diff.new_transactions == 1

    def test_diff_without_changes(self, manager):
        """Test the diff when nothing changed."""
        manager.enter("sepolia")
        assert manager.diff("sepolia").has_changes is False

    def test_env_overrides(self, make_manager):
        """Test the env var overrides for active forks."""
        manager = make_manager(resolver=network_config)
        sepolia = manager.enter("sepolia")
        mainnet = manager.enter("mainnet")

        assert manager.env_overrides("sepolia") == {"SEPOLIA_RPC_URL": sepolia.fork_url}
        assert manager.env_overrides() == {
            "SEPOLIA_RPC_URL": sepolia.fork_url,
            "MAINNET_RPC_URL": mainnet.fork_url,
        }
        assert manager.env_overrides("base") == {}

    def test_fork_state_document(self, manager):
        """Test the fork state document on disk."""
        manager.enter("sepolia")
        raw = json.loads(manager.store.path.read_text())

        assert raw["forks"]["sepolia"]["envVarName"] == "SEPOLIA_RPC_URL"
        assert raw["forks"]["sepolia"]["snapshots"][0]["index"] == 0
