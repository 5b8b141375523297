"""Fork session management for chain-deployments library."""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Union

from .config import generate_env_var_name, resolve_network
from .constants import (
    DEPLOYMENTS_FILE,
    FORK_ENTER_COMMAND,
    FORK_RESTART_COMMAND,
    TRANSACTIONS_FILE,
)
from .documents import load_document
from .exceptions import (
    ConflictError,
    DeploymentError,
    NodeUnavailableError,
    ScriptExecutionError,
    SetupFailure,
    StateError,
    ValidationError,
)
from .executor import ScriptRunner
from .fork_state import ForkStateStore
from .paths import get_node_files, get_private_dir
from .process import NodeSpec, NodeSupervisor, find_free_port
from .rpc import RPCClient
from .snapshots import RPCFactory, SnapshotSynchronizer
from .types import Deployment, ForkEntry, NetworkConfig, SnapshotEntry, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ForkStatus:
    network: str
    chain_id: int
    fork_url: str
    env_var_name: str
    pid: int
    healthy: bool
    uptime: Optional[timedelta]
    snapshot_count: int
    fork_deployments: int
    log_file: str = ""


@dataclass
class HistoryEntry:
    index: int
    command: str
    timestamp: str
    snapshot_id: str
    is_current: bool
    is_initial: bool


@dataclass
class ForkDiff:
    """Registry changes made on a fork since it was opened."""

    network: str
    new_deployments: List[Deployment] = field(default_factory=list)
    modified_deployments: List[Deployment] = field(default_factory=list)
    new_transactions: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.new_deployments or self.modified_deployments or self.new_transactions)


def ensure_gitignore_entry(project_root: Path, entry: str) -> bool:
    """
    Append an entry to <project_root>/.gitignore unless already present.

    Returns:
        True if the file was changed
    """
    gitignore = project_root / ".gitignore"
    try:
        content = gitignore.read_text()
    except FileNotFoundError:
        content = ""

    if entry in (line.strip() for line in content.splitlines()):
        return False

    with open(gitignore, "a") as f:
        if content and not content.endswith("\n"):
            f.write("\n")
        f.write(f"{entry}\n")
    return True


class ForkSessionManager:
    """
    Opens, inspects and closes per-network forks.

    A fork is a local node forked from the network's upstream RPC. While it
    is active, runs against that network are redirected to the local node by
    overriding the env var its foundry.toml endpoint references, and every
    registry change can be undone with the snapshot stack.
    """

    def __init__(
        self,
        data_dir: Union[Path, str],
        project_root: Union[Path, str],
        supervisor: NodeSupervisor,
        runner: Optional[ScriptRunner] = None,
        rpc_factory: RPCFactory = RPCClient,
        setup_script: str = "",
        network_resolver: Optional[Callable[[str], NetworkConfig]] = None,
        port_allocator: Callable[[], int] = find_free_port,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Args:
            data_dir: Registry data directory
            project_root: Directory holding foundry.toml and .gitignore
            supervisor: Starts and stops fork nodes
            runner: Runs the setup script; required when setup_script is set
            rpc_factory: Builds an RPC client for a URL
            setup_script: Script run on every freshly started fork
            network_resolver: Maps a network name to its config (defaults to foundry.toml)
            port_allocator: Picks a local port for a new node
            environ: Environment for expanding RPC env vars (defaults to os.environ)
        """
        self.store = ForkStateStore(data_dir)
        self.data_dir = self.store.data_dir
        self.project_root = Path(project_root).absolute()
        self.supervisor = supervisor
        self.runner = runner
        self.rpc_factory = rpc_factory
        self.setup_script = setup_script
        self.port_allocator = port_allocator
        self.environ = os.environ if environ is None else environ
        self.network_resolver = network_resolver or (
            lambda network: resolve_network(self.project_root, network, self.environ)
        )
        self.synchronizer = SnapshotSynchronizer(self.store, supervisor, rpc_factory)

    def _get_entry(self, network: str) -> ForkEntry:
        entry = self.store.load().get(network)
        if entry is None:
            raise StateError(f"no active fork for network '{network}'")
        return entry

    def _start_node(self, network: str, upstream_rpc: str) -> tuple[NodeSpec, int, RPCClient]:
        pid_file, log_file = get_node_files(network, self.data_dir)
        spec = NodeSpec(
            network=network,
            port=self.port_allocator(),
            pid_file=pid_file,
            log_file=log_file,
            fork_url=upstream_rpc,
        )
        pid = self.supervisor.start(spec)

        client = self.rpc_factory(spec.url)
        if not client.is_healthy():
            self.supervisor.stop(pid, pid_file)
            raise NodeUnavailableError(f"fork node for '{network}' started but is not healthy")
        return spec, pid, client

    def _run_setup(self, network: str, env_var_name: str, fork_url: str, chain_id: int) -> None:
        if not self.setup_script:
            return
        if self.runner is None:
            raise SetupFailure(f"setup script '{self.setup_script}' configured but no script runner")

        logger.info("Running fork setup script %s", self.setup_script)
        try:
            self.runner.run(self.setup_script, network, {env_var_name: fork_url}, chain_id)
        except ScriptExecutionError as e:
            raise SetupFailure(f"setup fork script failed: {e}") from e

    def _open_base_snapshot(self, network: str, client: RPCClient, command: str) -> SnapshotEntry:
        self.store.backup_documents(network, 0)
        return SnapshotEntry(
            index=0, snapshot_id=client.snapshot(), command=command, timestamp=utc_now()
        )

    def enter(self, network: str) -> ForkEntry:
        """
        Open a fork of a network.

        Raises:
            ConflictError: If a fork of the network is already active
            ValidationError: If the network's RPC endpoint is not a ${VAR} reference
            SetupFailure: If the setup script fails (nothing is left behind)
            NodeUnavailableError: If the node doesn't start
        """
        state = self.store.load()
        if state.is_active(network):
            raise ConflictError(
                f"fork already active for network '{network}'. Run 'fork exit {network}' first"
            )

        net = self.network_resolver(network)
        if not net.env_var_name:
            raise ValidationError(
                f"RPC endpoint for network '{network}' must be an environment variable "
                f"reference such as '${{{generate_env_var_name(network)}}}', got '{net.raw_rpc}'"
            )

        spec, pid, client = self._start_node(network, net.rpc_url)
        try:
            chain_id = client.chain_id()
            self._run_setup(network, net.env_var_name, spec.url, chain_id)
            base = self._open_base_snapshot(network, client, FORK_ENTER_COMMAND)
        except Exception:
            self.supervisor.stop(pid, spec.pid_file)
            self.store.cleanup_fork_dir(network)
            raise

        entry = ForkEntry(
            network=network,
            chain_id=chain_id,
            env_var_name=net.env_var_name,
            original_rpc=net.rpc_url,
            fork_url=spec.url,
            pid=pid,
            pid_file=str(spec.pid_file),
            log_file=str(spec.log_file),
            entered_at=utc_now(),
            snapshots=[base],
        )
        state.forks[network] = entry
        self.store.save(state)

        self._update_gitignore()
        logger.info("Fork mode entered for network '%s' at %s", network, spec.url)
        return entry

    def _update_gitignore(self) -> None:
        try:
            relative = get_private_dir(self.data_dir).relative_to(self.project_root)
        except ValueError:
            # Data dir outside the project; nothing to ignore
            return
        try:
            ensure_gitignore_entry(self.project_root, f"{relative.as_posix()}/")
        except OSError as e:
            logger.warning("Failed to update .gitignore: %s", e)

    def _stop_quietly(self, entry: ForkEntry) -> None:
        try:
            self.supervisor.stop(entry.pid, Path(entry.pid_file) if entry.pid_file else None)
        except OSError as e:
            logger.warning("Failed to stop fork node for %s (pid %d): %s", entry.network, entry.pid, e)

    def exit(self, network: str) -> None:
        """
        Close a fork and put the registry back as it was when it opened.

        Works whether or not the node is still running.

        Raises:
            StateError: If no fork of the network is active
        """
        state = self.store.load()
        entry = state.get(network)
        if entry is None:
            raise StateError(f"no active fork for network '{network}'")

        self._stop_quietly(entry)
        self.store.restore_documents(network, 0)
        self.store.cleanup_fork_dir(network)

        del state.forks[network]
        self.store.save(state)
        logger.info("Fork mode exited for network '%s'", network)

    def exit_all(self) -> List[str]:
        """
        Close every active fork.

        Returns:
            Networks that were exited

        Raises:
            StateError: If no fork is active, or if some forks failed to exit
                        (the others are still exited)
        """
        networks = sorted(self.store.load().forks)
        if not networks:
            raise StateError("no active forks")

        exited = []
        errors: Dict[str, DeploymentError] = {}
        for network in networks:
            try:
                self.exit(network)
                exited.append(network)
            except DeploymentError as e:
                logger.error("Failed to exit fork %s: %s", network, e)
                errors[network] = e

        if errors:
            detail = "; ".join(f"{network}: {e}" for network, e in errors.items())
            raise StateError(f"some forks failed to exit: {detail}")
        return exited

    def restart(self, network: str) -> ForkEntry:
        """
        Replace a fork's node with a fresh one and drop all its steps.

        Works whether or not the old node is still running.

        Raises:
            StateError: If no fork of the network is active
            SetupFailure: If the setup script fails on the new node
        """
        state = self.store.load()
        entry = state.get(network)
        if entry is None:
            raise StateError(f"no active fork for network '{network}'")

        self._stop_quietly(entry)
        self.store.restore_documents(network, 0)
        for snapshot in entry.snapshots[1:]:
            self.store.remove_snapshot_dir(network, snapshot.index)
        # Until the new base exists the old one is kept so exit still works
        entry.snapshots = entry.snapshots[:1]
        self.store.save(state)

        spec, pid, client = self._start_node(network, entry.original_rpc)
        entry.pid = pid
        entry.fork_url = spec.url
        entry.pid_file = str(spec.pid_file)
        entry.log_file = str(spec.log_file)
        self.store.save(state)

        try:
            self._run_setup(network, entry.env_var_name, spec.url, entry.chain_id)
        except SetupFailure as e:
            self.supervisor.stop(pid, spec.pid_file)
            raise SetupFailure(f"setup fork script failed during restart: {e}") from e

        entry.snapshots = [self._open_base_snapshot(network, client, FORK_RESTART_COMMAND)]
        entry.entered_at = utc_now()
        self.store.save(state)

        logger.info("Fork restarted for network '%s' at %s", network, spec.url)
        return entry

    def status(self) -> List[ForkStatus]:
        """Every active fork with its health. Dead forks are reported, not removed."""
        result = []
        now = datetime.now(timezone.utc)

        for network, entry in sorted(self.store.load().forks.items()):
            alive = self.supervisor.is_alive(entry.pid)
            healthy = alive and self.rpc_factory(entry.fork_url).is_healthy()
            uptime = now - parse_timestamp(entry.entered_at) if entry.entered_at else None

            result.append(
                ForkStatus(
                    network=network,
                    chain_id=entry.chain_id,
                    fork_url=entry.fork_url,
                    env_var_name=entry.env_var_name,
                    pid=entry.pid,
                    healthy=healthy,
                    uptime=uptime,
                    snapshot_count=len(entry.snapshots),
                    fork_deployments=len(self.fork_deployment_ids(network)),
                    log_file=entry.log_file,
                )
            )
        return result

    def history(self, network: str) -> List[HistoryEntry]:
        """
        The fork's snapshot stack, newest last.

        Raises:
            StateError: If no fork of the network is active
        """
        entry = self._get_entry(network)
        last = len(entry.snapshots) - 1
        return [
            HistoryEntry(
                index=s.index,
                command=s.command,
                timestamp=s.timestamp,
                snapshot_id=s.snapshot_id,
                is_current=i == last,
                is_initial=i == 0,
            )
            for i, s in enumerate(entry.snapshots)
        ]

    def revert(self, network: str) -> SnapshotEntry:
        return self.synchronizer.revert(network)

    def revert_all(self, network: str) -> int:
        return self.synchronizer.revert_all(network)

    def _base_document(self, network: str, name: str) -> dict:
        return load_document(self.store.snapshot_dir(network, 0) / name)

    def fork_deployment_ids(self, network: str) -> List[str]:
        """Ids of deployments recorded since the fork opened."""
        self._get_entry(network)
        base = self._base_document(network, DEPLOYMENTS_FILE)
        current = load_document(self.data_dir / DEPLOYMENTS_FILE)
        return sorted(key for key in current if key not in base)

    def diff(self, network: str) -> ForkDiff:
        """
        Compare the registry with its state when the fork opened.

        Raises:
            StateError: If no fork of the network is active
        """
        self._get_entry(network)
        result = ForkDiff(network=network)

        base = self._base_document(network, DEPLOYMENTS_FILE)
        current = load_document(self.data_dir / DEPLOYMENTS_FILE)
        for key in sorted(current):
            if key not in base:
                result.new_deployments.append(Deployment.from_dict(current[key]))
            elif current[key] != base[key]:
                result.modified_deployments.append(Deployment.from_dict(current[key]))

        base_txs = self._base_document(network, TRANSACTIONS_FILE)
        current_txs = load_document(self.data_dir / TRANSACTIONS_FILE)
        result.new_transactions = sum(1 for key in current_txs if key not in base_txs)
        return result

    def env_overrides(self, network: Optional[str] = None) -> Dict[str, str]:
        """
        Env vars that point runs at active forks.

        Args:
            network: Only this network's fork; every active fork if None
        """
        forks = self.store.load().forks
        if network is not None:
            entry = forks.get(network)
            return {entry.env_var_name: entry.fork_url} if entry else {}
        return {entry.env_var_name: entry.fork_url for entry in forks.values()}
