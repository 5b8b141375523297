"""
chain-deployments: deployment orchestration with a local contract registry and forkable networks
"""

from importlib.metadata import PackageNotFoundError, version

from .exceptions import (
    AmbiguousDeploymentError,
    ConfigError,
    ConflictError,
    CrashError,
    DeploymentError,
    DeploymentNotFoundError,
    NodeUnavailableError,
    NotFoundError,
    RPCError,
    ScriptExecutionError,
    SetupFailure,
    StateError,
    ValidationError,
)
from .executor import ForgeScriptRunner, StepExecutor
from .forks import ForkSessionManager
from .orchestration import (
    DependencyGraph,
    OrchestrationConfig,
    create_execution_plan,
    parse_orchestration,
    parse_orchestration_file,
)
from .registry import RegistryStore
from .snapshots import SnapshotSynchronizer
from .types import Deployment, ExecutionPlan, SafeTransaction, Transaction, TransactionStatus

try:
    __version__ = version("chain-deployments")
except PackageNotFoundError:
    __version__ = None

__all__ = [
    "RegistryStore",
    "ForkSessionManager",
    "SnapshotSynchronizer",
    "StepExecutor",
    "ForgeScriptRunner",
    "OrchestrationConfig",
    "DependencyGraph",
    "create_execution_plan",
    "parse_orchestration",
    "parse_orchestration_file",
    "Deployment",
    "Transaction",
    "SafeTransaction",
    "TransactionStatus",
    "ExecutionPlan",
    "DeploymentError",
    "ValidationError",
    "ConfigError",
    "ConflictError",
    "StateError",
    "CrashError",
    "SetupFailure",
    "NotFoundError",
    "DeploymentNotFoundError",
    "AmbiguousDeploymentError",
    "RPCError",
    "NodeUnavailableError",
    "ScriptExecutionError",
]
