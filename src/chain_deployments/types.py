"""Data types and dataclasses for chain-deployments library."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string (second precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by utc_now()."""
    return datetime.fromisoformat(value)


class DeploymentType(Enum):
    """
    Kind of deployed contract.

    Value strings define de/serialization law.
    """

    SINGLETON = "SINGLETON"
    PROXY = "PROXY"
    LIBRARY = "LIBRARY"


class DeploymentMethod(Enum):
    CREATE = "CREATE"
    CREATE2 = "CREATE2"
    CREATE3 = "CREATE3"


class TransactionStatus(Enum):
    """
    Lifecycle of a Transaction or SafeTransaction.

    PENDING -> EXECUTED | FAILED. EXECUTED and FAILED are terminal.
    SIMULATED and QUEUED are accepted when reading older registries;
    QUEUED behaves like PENDING.
    """

    PENDING = "PENDING"
    QUEUED = "QUEUED"
    SIMULATED = "SIMULATED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.EXECUTED, TransactionStatus.FAILED)


def make_deployment_id(
    namespace: str, chain_id: int, contract_name: str, label: str = ""
) -> str:
    """
    Build the identity key of a deployment.

    Format: namespace/chainId/contractName[:label]
    """
    key = f"{namespace}/{chain_id}/{contract_name}"
    if label:
        key = f"{key}:{label}"
    return key


def make_transaction_id(tx_hash: str) -> str:
    """Transaction ids are the hash prefixed with 'tx-'."""
    return f"tx-{tx_hash}"


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass
class Component:
    """A named deployment component declared by the operator."""

    name: str
    script: str
    deps: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExecutionStep:
    """A component projected into run order."""

    name: str
    script: str
    env: Dict[str, str] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)  # for audit/debugging


@dataclass
class ExecutionPlan:
    group: str
    steps: List[ExecutionStep]

    @property
    def names(self) -> List[str]:
        return [step.name for step in self.steps]


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------


@dataclass
class DeploymentStrategy:
    method: DeploymentMethod = DeploymentMethod.CREATE
    salt: str = ""
    init_code_hash: str = ""
    factory: str = ""  # e.g. CreateX

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"method": self.method.value}
        if self.salt:
            result["salt"] = self.salt
        if self.init_code_hash:
            result["initCodeHash"] = self.init_code_hash
        if self.factory:
            result["factory"] = self.factory
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentStrategy":
        return cls(
            method=DeploymentMethod(data.get("method") or "CREATE"),
            salt=data.get("salt", ""),
            init_code_hash=data.get("initCodeHash", ""),
            factory=data.get("factory", ""),
        )


@dataclass
class ProxyInfo:
    type: str  # e.g. "ERC1967", "UUPS", "Transparent"
    implementation: str  # current implementation address
    admin: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": self.type, "implementation": self.implementation}
        if self.admin:
            result["admin"] = self.admin
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyInfo":
        return cls(
            type=data.get("type", ""),
            implementation=data.get("implementation", ""),
            admin=data.get("admin", ""),
        )


@dataclass
class ArtifactInfo:
    path: str = ""  # e.g. "src/Counter.sol:Counter"
    script_path: str = ""  # e.g. "script/DeployCounter.s.sol"
    bytecode_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "scriptPath": self.script_path,
            "bytecodeHash": self.bytecode_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactInfo":
        return cls(
            path=data.get("path", ""),
            script_path=data.get("scriptPath", ""),
            bytecode_hash=data.get("bytecodeHash", ""),
        )


@dataclass
class Deployment:
    """A contract recorded in the registry."""

    # Identity
    namespace: str  # e.g. "production", "staging"
    chain_id: int
    contract_name: str  # e.g. "Counter"
    address: str
    type: DeploymentType
    transaction_id: str  # owning transaction, "tx-<hash>"
    label: str = ""  # e.g. "v1", "usdc"

    # Optional fields
    deployment_strategy: DeploymentStrategy = field(default_factory=DeploymentStrategy)
    proxy_info: Optional[ProxyInfo] = None
    artifact: ArtifactInfo = field(default_factory=ArtifactInfo)
    tags: List[str] = field(default_factory=list)
    fork: bool = False  # recorded while a fork was active
    created_at: str = ""
    updated_at: str = ""

    @property
    def id(self) -> str:
        return make_deployment_id(
            self.namespace, self.chain_id, self.contract_name, self.label
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "namespace": self.namespace,
            "chainId": self.chain_id,
            "contractName": self.contract_name,
            "label": self.label,
            "address": self.address,
            "type": self.type.value,
            "transactionId": self.transaction_id,
            "deploymentStrategy": self.deployment_strategy.to_dict(),
            "proxyInfo": self.proxy_info.to_dict() if self.proxy_info else None,
            "artifact": self.artifact.to_dict(),
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.fork:
            result["fork"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deployment":
        proxy_info = data.get("proxyInfo")
        return cls(
            namespace=data["namespace"],
            chain_id=int(data["chainId"]),
            contract_name=data["contractName"],
            label=data.get("label", ""),
            address=data["address"],
            type=DeploymentType(data["type"]),
            transaction_id=data.get("transactionId", ""),
            deployment_strategy=DeploymentStrategy.from_dict(
                data.get("deploymentStrategy") or {}
            ),
            proxy_info=ProxyInfo.from_dict(proxy_info) if proxy_info else None,
            artifact=ArtifactInfo.from_dict(data.get("artifact") or {}),
            tags=list(data.get("tags") or []),
            fork=bool(data.get("fork", False)),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class SafeContext:
    safe_address: str
    safe_tx_hash: str
    batch_index: int = 0
    proposer_address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "safeAddress": self.safe_address,
            "safeTxHash": self.safe_tx_hash,
            "batchIndex": self.batch_index,
            "proposerAddress": self.proposer_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SafeContext":
        return cls(
            safe_address=data["safeAddress"],
            safe_tx_hash=data["safeTxHash"],
            batch_index=int(data.get("batchIndex", 0)),
            proposer_address=data.get("proposerAddress", ""),
        )


@dataclass
class Transaction:
    """An on-chain transaction (or a transaction awaiting a multisig/governor)."""

    chain_id: int
    hash: str
    status: TransactionStatus
    sender: str
    nonce: int = 0
    block_number: Optional[int] = None  # set once executed
    deployments: List[str] = field(default_factory=list)  # deployment ids created
    safe_context: Optional[SafeContext] = None
    environment: str = ""  # namespace
    created_at: str = ""

    @property
    def id(self) -> str:
        return make_transaction_id(self.hash)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "chainId": self.chain_id,
            "hash": self.hash,
            "status": self.status.value,
            "sender": self.sender,
            "nonce": self.nonce,
            "deployments": list(self.deployments),
            "environment": self.environment,
            "createdAt": self.created_at,
        }
        if self.block_number is not None:
            result["blockNumber"] = self.block_number
        if self.safe_context is not None:
            result["safeContext"] = self.safe_context.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        safe_context = data.get("safeContext")
        return cls(
            chain_id=int(data["chainId"]),
            hash=data["hash"],
            status=TransactionStatus(data["status"]),
            sender=data.get("sender", ""),
            nonce=int(data.get("nonce", 0)),
            block_number=data.get("blockNumber"),
            deployments=list(data.get("deployments") or []),
            safe_context=SafeContext.from_dict(safe_context) if safe_context else None,
            environment=data.get("environment", ""),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class SafeTransaction:
    """A multisig proposal that executes one or more Transactions once signed."""

    safe_tx_hash: str
    safe_address: str
    chain_id: int
    status: TransactionStatus
    nonce: int = 0
    transaction_ids: List[str] = field(default_factory=list)
    proposed_by: str = ""
    proposed_at: str = ""
    execution_tx_hash: str = ""
    executed_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "safeTxHash": self.safe_tx_hash,
            "safeAddress": self.safe_address,
            "chainId": self.chain_id,
            "status": self.status.value,
            "nonce": self.nonce,
            "transactionIds": list(self.transaction_ids),
            "proposedBy": self.proposed_by,
            "proposedAt": self.proposed_at,
        }
        if self.execution_tx_hash:
            result["executionTxHash"] = self.execution_tx_hash
        if self.executed_at:
            result["executedAt"] = self.executed_at
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SafeTransaction":
        return cls(
            safe_tx_hash=data["safeTxHash"],
            safe_address=data["safeAddress"],
            chain_id=int(data["chainId"]),
            status=TransactionStatus(data["status"]),
            nonce=int(data.get("nonce", 0)),
            transaction_ids=list(data.get("transactionIds") or []),
            proposed_by=data.get("proposedBy", ""),
            proposed_at=data.get("proposedAt", ""),
            execution_tx_hash=data.get("executionTxHash", ""),
            executed_at=data.get("executedAt", ""),
        )


# ---------------------------------------------------------------------------
# Fork state
# ---------------------------------------------------------------------------


@dataclass
class SnapshotEntry:
    """One entry of a fork's snapshot stack."""

    index: int
    snapshot_id: str  # opaque id returned by evm_snapshot
    command: str  # label of the step that follows this snapshot
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "snapshotId": self.snapshot_id,
            "command": self.command,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotEntry":
        return cls(
            index=int(data["index"]),
            snapshot_id=data["snapshotId"],
            command=data["command"],
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class ForkEntry:
    """An active fork of one network."""

    network: str
    chain_id: int
    env_var_name: str  # env var the project uses for this network's RPC URL
    original_rpc: str  # upstream URL the fork was created from
    fork_url: str  # local URL of the forked node
    pid: int
    pid_file: str
    log_file: str
    entered_at: str = ""
    snapshots: List[SnapshotEntry] = field(default_factory=list)

    @property
    def port(self) -> int:
        return int(self.fork_url.rsplit(":", 1)[-1])

    @property
    def top(self) -> SnapshotEntry:
        return self.snapshots[-1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "chainId": self.chain_id,
            "envVarName": self.env_var_name,
            "originalRpc": self.original_rpc,
            "forkUrl": self.fork_url,
            "pid": self.pid,
            "pidFile": self.pid_file,
            "logFile": self.log_file,
            "enteredAt": self.entered_at,
            "snapshots": [s.to_dict() for s in self.snapshots],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForkEntry":
        return cls(
            network=data["network"],
            chain_id=int(data["chainId"]),
            env_var_name=data.get("envVarName", ""),
            original_rpc=data.get("originalRpc", ""),
            fork_url=data["forkUrl"],
            pid=int(data.get("pid", 0)),
            pid_file=data.get("pidFile", ""),
            log_file=data.get("logFile", ""),
            entered_at=data.get("enteredAt", ""),
            snapshots=[SnapshotEntry.from_dict(s) for s in data.get("snapshots", [])],
        )


@dataclass
class ForkState:
    """All active forks, keyed by network name."""

    forks: Dict[str, ForkEntry] = field(default_factory=dict)

    def is_active(self, network: str) -> bool:
        return network in self.forks

    def get(self, network: str) -> Optional[ForkEntry]:
        return self.forks.get(network)

    def to_dict(self) -> Dict[str, Any]:
        return {"forks": {name: entry.to_dict() for name, entry in self.forks.items()}}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForkState":
        forks = data.get("forks") or {}
        return cls(forks={name: ForkEntry.from_dict(e) for name, e in forks.items()})


# ---------------------------------------------------------------------------
# Network configuration
# ---------------------------------------------------------------------------


@dataclass
class NetworkConfig:
    """A network resolved from foundry.toml [rpc_endpoints]."""

    name: str
    rpc_url: str  # expanded URL
    raw_rpc: str  # value as written, e.g. "${SEPOLIA_RPC_URL}"
    env_var_name: Optional[str] = None  # set when raw_rpc is a pure env var reference
    chain_id: Optional[int] = None
