"""Script running and step execution for chain-deployments library."""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from .constants import FORGE_BINARY, SCRIPT_TIMEOUT
from .exceptions import ScriptExecutionError, StateError
from .fork_state import ForkStateStore
from .parsers import ScriptResult, get_broadcast_path, parse_broadcast_file
from .registry import RegistryStore
from .senders import Sender, SettlementContext
from .snapshots import SnapshotSynchronizer
from .types import Deployment, ExecutionPlan, ExecutionStep

logger = logging.getLogger(__name__)


class ScriptRunner(Protocol):
    """Runs one deployment script against a network and reports what it did."""

    def run(
        self,
        script: str,
        network: str,
        env: Dict[str, str],
        chain_id: int,
    ) -> ScriptResult:
        ...


class ForgeScriptRunner:
    """
    ScriptRunner that shells out to `forge script`.

    The network is passed as its foundry.toml alias, so overriding the
    alias's env var (e.g. SEPOLIA_RPC_URL) redirects the run to a fork.
    """

    def __init__(
        self,
        project_root: Union[Path, str],
        binary: str = FORGE_BINARY,
        timeout: float = SCRIPT_TIMEOUT,
        extra_args: Optional[List[str]] = None,
    ):
        self.project_root = Path(project_root).absolute()
        self.binary = binary
        self.timeout = timeout
        self.extra_args = extra_args or []

    def build_command(self, script: str, network: str) -> List[str]:
        return [
            self.binary,
            "script",
            script,
            "--rpc-url",
            network,
            "--broadcast",
            *self.extra_args,
        ]

    def run(
        self,
        script: str,
        network: str,
        env: Dict[str, str],
        chain_id: int,
    ) -> ScriptResult:
        """
        Run a script and parse its broadcast.

        Returns:
            Facts from run-latest.json, or an empty result if the script
            broadcast nothing

        Raises:
            ScriptExecutionError: If forge is missing, fails, or times out
        """
        broadcast_path = get_broadcast_path(self.project_root, script, chain_id)
        previous_mtime = broadcast_path.stat().st_mtime_ns if broadcast_path.exists() else None

        command = self.build_command(script, network)
        logger.info("Running %s on %s", script, network)
        logger.debug("Command: %s", " ".join(command))

        try:
            completed = subprocess.run(
                command,
                cwd=self.project_root,
                env={**os.environ, **env},
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ScriptExecutionError(f"{self.binary} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ScriptExecutionError(f"script {script} timed out after {self.timeout}s") from e

        if completed.returncode != 0:
            output = (completed.stderr or completed.stdout or "").strip()
            raise ScriptExecutionError(
                f"script {script} failed with exit code {completed.returncode}:\n{output[-2000:]}"
            )

        if not broadcast_path.exists() or broadcast_path.stat().st_mtime_ns == previous_mtime:
            logger.info("Script %s broadcast no transactions", script)
            return ScriptResult(script=script, chain_id=chain_id)

        return parse_broadcast_file(broadcast_path, script, chain_id)


@dataclass
class StepOutcome:
    """What one executed step recorded."""

    name: str
    script: str
    deployments: List[Deployment] = field(default_factory=list)
    transaction_count: int = 0
    snapshot_index: Optional[int] = None  # set when the step ran on a fork


class StepExecutor:
    """
    Runs steps one at a time and records their results.

    On an active fork each step is wrapped in a snapshot; each step's
    records are committed to the registry as one unit.

    Scripts see NAMESPACE and, when a profile is given, FOUNDRY_PROFILE
    in their environment.
    """

    def __init__(
        self,
        registry: RegistryStore,
        runner: ScriptRunner,
        sender: Sender,
        namespace: str,
        fork_store: Optional[ForkStateStore] = None,
        synchronizer: Optional[SnapshotSynchronizer] = None,
        profile: str = "",
    ):
        self.registry = registry
        self.runner = runner
        self.sender = sender
        self.namespace = namespace
        self.fork_store = fork_store
        self.synchronizer = synchronizer
        self.profile = profile

    def run_step(
        self,
        step: ExecutionStep,
        network: str,
        chain_id: int,
        label: str = "",
    ) -> StepOutcome:
        """
        Execute one step.

        Args:
            step: Step to run
            network: foundry.toml network alias
            chain_id: Chain id of the network
            label: Label given to contracts the step deploys

        Raises:
            CrashError: If the network's fork node is gone
            ScriptExecutionError: If the script fails
            ConflictError, ValidationError: If the results contradict the registry
        """
        entry = self.fork_store.load().get(network) if self.fork_store else None
        if entry is not None:
            if self.synchronizer is None:
                raise StateError("a SnapshotSynchronizer is required to run on a fork")
            entry = self.synchronizer.ensure_alive(network)

        env = {"NAMESPACE": self.namespace}
        if self.profile:
            env["FOUNDRY_PROFILE"] = self.profile
        env.update(step.env)
        if entry is not None:
            env[entry.env_var_name] = entry.fork_url

        context = SettlementContext(
            namespace=self.namespace,
            label=label,
            default_contract_name=step.name,
            fork=entry is not None,
        )

        outcome = StepOutcome(name=step.name, script=step.script)

        if entry is not None:
            with self.synchronizer.step(network, f"run {step.script}") as snapshot:
                outcome.snapshot_index = snapshot.index
                self._run_and_record(step, network, chain_id, env, context, outcome)
        else:
            self._run_and_record(step, network, chain_id, env, context, outcome)

        logger.info(
            "Step %s recorded %d deployment(s) and %d transaction(s)",
            step.name,
            len(outcome.deployments),
            outcome.transaction_count,
        )
        return outcome

    def _run_and_record(
        self,
        step: ExecutionStep,
        network: str,
        chain_id: int,
        env: Dict[str, str],
        context: SettlementContext,
        outcome: StepOutcome,
    ) -> None:
        result = self.runner.run(step.script, network, env, chain_id)
        if result.failed:
            logger.warning(
                "%d transaction(s) of %s reverted on-chain", len(result.failed), step.script
            )

        records = self.sender.settle(result, context)
        # Documents on disk may have been restored by a fork revert since the last step
        self.registry.reload()
        outcome.deployments = self.registry.commit_step(
            transactions=records.transactions,
            deployments=records.deployments,
            safe_transactions=records.safe_transactions,
        )
        outcome.transaction_count = len(records.transactions)

    def run_plan(
        self,
        plan: ExecutionPlan,
        network: str,
        chain_id: int,
    ) -> List[StepOutcome]:
        """
        Execute a plan's steps in order, stopping at the first failure.

        Steps completed before a failure stay recorded.
        """
        outcomes: List[StepOutcome] = []
        for number, step in enumerate(plan.steps, start=1):
            logger.info("[%d/%d] %s (%s)", number, len(plan.steps), step.name, step.script)
            try:
                outcomes.append(self.run_step(step, network, chain_id))
            except Exception:
                logger.error(
                    "Group '%s' stopped at step %s; %d of %d step(s) completed",
                    plan.group,
                    step.name,
                    len(outcomes),
                    len(plan.steps),
                )
                raise
        return outcomes
