"""Shared pytest fixtures for chain-deployments tests."""

import copy
import itertools
import json
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from chain_deployments.exceptions import NodeUnavailableError, RPCError, ScriptExecutionError
from chain_deployments.forks import ForkSessionManager
from chain_deployments.parsers import ContractFact, ScriptResult, TransactionFact
from chain_deployments.process import NodeSpec
from chain_deployments.registry import RegistryStore
from chain_deployments.types import NetworkConfig

SEPOLIA_CHAIN_ID = 11155111


class FakeChain:
    """In-memory stand-in for a forked node's chain state."""

    def __init__(self, chain_id: int = SEPOLIA_CHAIN_ID):
        self.chain_id = chain_id
        self.state: Dict[str, Any] = {"counter": 0}
        self.alive = True
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def snapshot(self) -> str:
        snapshot_id = hex(next(self._ids))
        self._snapshots[snapshot_id] = copy.deepcopy(self.state)
        return snapshot_id

    def revert(self, snapshot_id: str) -> bool:
        if snapshot_id not in self._snapshots:
            return False
        self.state = self._snapshots[snapshot_id]
        # Like anvil: the id and every later one are consumed
        target = int(snapshot_id, 16)
        self._snapshots = {k: v for k, v in self._snapshots.items() if int(k, 16) < target}
        return True


class FakeRPCClient:
    def __init__(self, chain: Optional[FakeChain], url: str):
        self.chain = chain
        self.url = url

    def _require(self) -> FakeChain:
        if self.chain is None or not self.chain.alive:
            raise NodeUnavailableError(f"RPC endpoint {self.url} unavailable")
        return self.chain

    def snapshot(self) -> str:
        return self._require().snapshot()

    def revert(self, snapshot_id: str) -> None:
        if not self._require().revert(snapshot_id):
            raise RPCError(f"evm_revert to snapshot {snapshot_id} failed")

    def chain_id(self) -> int:
        return self._require().chain_id

    def block_number(self) -> int:
        return self._require().state["counter"]

    def is_healthy(self) -> bool:
        return self.chain is not None and self.chain.alive


class FakeSupervisor:
    """NodeSupervisor that 'starts' FakeChains instead of processes."""

    def __init__(self):
        self.chains: Dict[str, FakeChain] = {}  # by node URL
        self.alive: Dict[int, FakeChain] = {}
        self.started: List[NodeSpec] = []
        self.stopped: List[int] = []
        self._pids = itertools.count(1000)

    def start(self, spec: NodeSpec) -> int:
        pid = next(self._pids)
        chain = FakeChain()
        self.chains[spec.url] = chain
        self.alive[pid] = chain
        self.started.append(spec)
        spec.pid_file.parent.mkdir(parents=True, exist_ok=True)
        spec.pid_file.write_text(f"{pid}\n")
        return pid

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def stop(self, pid: int, pid_file: Optional[Path] = None) -> None:
        chain = self.alive.pop(pid, None)
        if chain is not None:
            chain.alive = False
        self.stopped.append(pid)
        if pid_file is not None:
            Path(pid_file).unlink(missing_ok=True)

    def read_logs(self, log_file: Path, lines: int = 50) -> str:
        return ""

    def crash(self, pid: int) -> None:
        """Simulate the node process dying on its own."""
        self.alive.pop(pid).alive = False

    def rpc_factory(self, url: str) -> FakeRPCClient:
        return FakeRPCClient(self.chains.get(url), url)


class FakeRunner:
    """
    ScriptRunner that deploys one contract per run and bumps the chain's
    counter on whichever node the network's env var points at.
    """

    def __init__(self, supervisor: FakeSupervisor, env_var: str = "SEPOLIA_RPC_URL"):
        self.supervisor = supervisor
        self.env_var = env_var
        self.calls: List[Dict[str, Any]] = []
        self.fail_scripts: set = set()
        self._n = itertools.count(1)

    def run(self, script: str, network: str, env: Dict[str, str], chain_id: int) -> ScriptResult:
        self.calls.append({"script": script, "network": network, "env": dict(env)})
        if script in self.fail_scripts:
            raise ScriptExecutionError(f"script {script} failed with exit code 1")

        chain = self.supervisor.chains.get(env.get(self.env_var, ""))
        if chain is not None:
            chain.state["counter"] += 1

        n = next(self._n)
        contract_name = Path(script).name.split(".")[0].removeprefix("Deploy")
        return ScriptResult(
            script=script,
            chain_id=chain_id,
            transactions=[
                TransactionFact(
                    hash="0x" + f"{n:064x}",
                    sender="0x9999999999999999999999999999999999999999",
                    nonce=n,
                    block_number=100 + n,
                    success=True,
                    contracts=[ContractFact(contract_name=contract_name, address="0x" + f"{n:040x}")],
                )
            ],
        )


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the path to the fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_deployments_json(fixtures_dir: Path) -> Dict[str, Any]:
    """Load and return the sample deployments.json fixture."""
    with open(fixtures_dir / "registry" / "deployments.json") as f:
        return json.load(f)


@pytest.fixture
def project_root(tmp_path: Path, fixtures_dir: Path) -> Path:
    """A project directory with foundry.toml and treb.toml."""
    root = tmp_path / "project"
    shutil.copytree(fixtures_dir / "project", root)
    return root


@pytest.fixture
def data_dir(project_root: Path) -> Path:
    """An empty registry data directory inside the project."""
    return project_root / ".treb"


@pytest.fixture
def populated_data_dir(data_dir: Path, fixtures_dir: Path) -> Path:
    """A data directory holding the sample registry documents."""
    shutil.copytree(fixtures_dir / "registry", data_dir)
    return data_dir


@pytest.fixture
def registry(populated_data_dir: Path) -> RegistryStore:
    return RegistryStore(populated_data_dir)


@pytest.fixture
def empty_registry(data_dir: Path) -> RegistryStore:
    return RegistryStore(data_dir)


@pytest.fixture
def broadcast_sample(fixtures_dir: Path) -> Path:
    """Return path to a forge run-latest.json."""
    return fixtures_dir / "broadcast" / "run-latest.json"


@pytest.fixture
def proxy_broadcast(fixtures_dir: Path) -> Path:
    """Return path to a broadcast with a proxy, a CreateX salt and a linked library."""
    return fixtures_dir / "broadcast" / "run-proxy.json"


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def runner(supervisor: FakeSupervisor) -> FakeRunner:
    return FakeRunner(supervisor)


@pytest.fixture
def sepolia_config() -> NetworkConfig:
    return NetworkConfig(
        name="sepolia",
        rpc_url="https://sepolia.example.org",
        raw_rpc="${SEPOLIA_RPC_URL}",
        env_var_name="SEPOLIA_RPC_URL",
    )


@pytest.fixture
def make_manager(
    data_dir: Path,
    project_root: Path,
    supervisor: FakeSupervisor,
    runner: FakeRunner,
    sepolia_config: NetworkConfig,
) -> Callable[..., ForkSessionManager]:
    """Factory for fork managers wired to the fake supervisor and runner."""
    ports = itertools.count(9545)

    def factory(setup_script: str = "", resolver=None) -> ForkSessionManager:
        return ForkSessionManager(
            data_dir=data_dir,
            project_root=project_root,
            supervisor=supervisor,
            runner=runner,
            rpc_factory=supervisor.rpc_factory,
            setup_script=setup_script,
            network_resolver=resolver or (lambda network: sepolia_config),
            port_allocator=lambda: next(ports),
        )

    return factory


@pytest.fixture
def manager(make_manager) -> ForkSessionManager:
    return make_manager()
