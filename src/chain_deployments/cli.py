"""Command line interface for chain-deployments.

Usage:
    chain-deployments fork enter <network>      Fork a network locally
    chain-deployments fork revert <network>     Undo the last run on a fork
    chain-deployments fork exit <network>       Close a fork, restoring the registry
    chain-deployments run <script> --network N  Run a deployment script
    chain-deployments orchestrate <file> --network N
    chain-deployments list / show / tag         Inspect the registry

Examples:
    chain-deployments fork enter sepolia
    chain-deployments run script/DeployCounter.s.sol --network sepolia
    chain-deployments fork revert sepolia --all
    chain-deployments show Counter:v2 --chain 11155111
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import load_project_config, resolve_network
from .constants import DEFAULT_NAMESPACE
from .exceptions import DeploymentError, StateError
from .executor import ForgeScriptRunner, StepExecutor
from .fork_state import ForkStateStore
from .forks import ForkSessionManager
from .orchestration import create_execution_plan, parse_orchestration_file
from .paths import resolve_data_dir
from .process import AnvilSupervisor
from .registry import RegistryStore
from .rpc import RPCClient
from .senders import sender_for_namespace
from .snapshots import SnapshotSynchronizer
from .types import Deployment, ExecutionStep

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chain-deployments",
        description="Deployment orchestration with a local registry and forkable networks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--data-dir", type=Path, help="Registry directory (default: ./.treb)")
    parser.add_argument(
        "--project-root", type=Path, default=Path.cwd(), help="Foundry project root"
    )
    parser.add_argument(
        "--verbose", "-v", action="count", default=0, help="More output (-vv for debug)"
    )
    parser.add_argument(
        "--non-interactive", action="store_true", help="Never prompt; fail on ambiguity"
    )

    sub = parser.add_subparsers(dest="command")

    # fork
    fork_p = sub.add_parser("fork", help="Manage local forks")
    fork_sub = fork_p.add_subparsers(dest="fork_command")

    enter_p = fork_sub.add_parser("enter", help="Fork a network")
    enter_p.add_argument("network")

    exit_p = fork_sub.add_parser("exit", help="Close a fork and restore the registry")
    exit_p.add_argument("network", nargs="?")
    exit_p.add_argument("--all", action="store_true", help="Exit every active fork")

    revert_p = fork_sub.add_parser("revert", help="Undo the last run on a fork")
    revert_p.add_argument("network")
    revert_p.add_argument("--all", action="store_true", help="Undo every run since fork enter")

    restart_p = fork_sub.add_parser("restart", help="Replace the fork's node with a fresh one")
    restart_p.add_argument("network")

    fork_sub.add_parser("status", help="Show active forks")

    history_p = fork_sub.add_parser("history", help="Show a fork's snapshot stack")
    history_p.add_argument("network")

    diff_p = fork_sub.add_parser("diff", help="Show registry changes made on a fork")
    diff_p.add_argument("network")

    # run
    run_p = sub.add_parser("run", help="Run one deployment script")
    run_p.add_argument("script")
    run_p.add_argument("--network", required=True)
    run_p.add_argument("--namespace", default=DEFAULT_NAMESPACE)
    run_p.add_argument("--label", default="", help="Label for deployed contracts")

    # orchestrate
    orch_p = sub.add_parser("orchestrate", help="Run a dependency-ordered group of scripts")
    orch_p.add_argument("file", type=Path)
    orch_p.add_argument("--network", required=True)
    orch_p.add_argument("--namespace", default=DEFAULT_NAMESPACE)
    orch_p.add_argument("--dry-run", action="store_true", help="Print the plan only")

    # list
    list_p = sub.add_parser("list", help="List deployments")
    list_p.add_argument("--namespace")
    list_p.add_argument("--chain", type=int)
    list_p.add_argument("--contract")
    list_p.add_argument("--tag")
    fork_group = list_p.add_mutually_exclusive_group()
    fork_group.add_argument("--fork", dest="fork", action="store_true", default=None)
    fork_group.add_argument("--no-fork", dest="fork", action="store_false")

    # show
    show_p = sub.add_parser("show", help="Show one deployment")
    show_p.add_argument("reference")
    show_p.add_argument("--namespace")
    show_p.add_argument("--chain", type=int)

    # tag
    tag_p = sub.add_parser("tag", help="Add or remove a deployment tag")
    tag_p.add_argument("reference")
    tag_p.add_argument("tag")
    tag_p.add_argument("--remove", action="store_true")
    tag_p.add_argument("--namespace")
    tag_p.add_argument("--chain", type=int)

    return parser


def configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _fork_manager(args: argparse.Namespace) -> ForkSessionManager:
    project = load_project_config(args.project_root)
    return ForkSessionManager(
        data_dir=resolve_data_dir(args.data_dir),
        project_root=args.project_root,
        supervisor=AnvilSupervisor(),
        runner=ForgeScriptRunner(args.project_root),
        setup_script=project.fork_setup,
    )


def _format_uptime(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    return f"{minutes}m{secs:02d}s"


def _run_fork(args: argparse.Namespace) -> int:
    manager = _fork_manager(args)

    match args.fork_command:
        case "enter":
            entry = manager.enter(args.network)
            print(f"Fork mode entered for network '{entry.network}'")
            print(f"  Fork URL:  {entry.fork_url}")
            print(f"  Chain ID:  {entry.chain_id}")
            print(f"  Env var:   {entry.env_var_name} -> {entry.fork_url}")
        case "exit":
            if args.all:
                exited = manager.exit_all()
                print(f"All {len(exited)} fork(s) exited")
            elif args.network:
                manager.exit(args.network)
                print(f"Fork mode exited for network '{args.network}'")
            else:
                raise StateError("no network specified. Use 'fork exit <network>' or 'fork exit --all'")
        case "revert":
            if args.all:
                count = manager.revert_all(args.network)
                print(f"Reverted {count} run(s) on fork '{args.network}' - restored to initial fork state")
            else:
                snapshot = manager.revert(args.network)
                print(f"Reverted '{snapshot.command}' on fork '{args.network}'")
        case "restart":
            entry = manager.restart(args.network)
            print(f"Fork restarted for network '{entry.network}' at {entry.fork_url}")
        case "status":
            statuses = manager.status()
            if not statuses:
                print("No active forks")
            for s in statuses:
                health = "healthy" if s.healthy else "dead"
                uptime = _format_uptime(s.uptime.total_seconds()) if s.uptime else "-"
                print(f"{s.network} ({health})")
                print(f"  Chain ID:     {s.chain_id}")
                print(f"  Fork URL:     {s.fork_url}")
                print(f"  PID:          {s.pid}")
                print(f"  Uptime:       {uptime}")
                print(f"  Snapshots:    {s.snapshot_count}")
                print(f"  Deployments:  {s.fork_deployments} added on fork")
                if not s.healthy:
                    print(f"  Run 'fork restart {s.network}' or 'fork exit {s.network}'")
        case "history":
            for h in reversed(manager.history(args.network)):
                marker = " (current)" if h.is_current else ""
                marker += " (initial)" if h.is_initial else ""
                print(f"  [{h.index}] {h.command}  {h.timestamp}{marker}")
        case "diff":
            diff = manager.diff(args.network)
            if not diff.has_changes:
                print(f"No changes on fork '{args.network}'")
            for d in diff.new_deployments:
                print(f"  + {d.id} at {d.address}")
            for d in diff.modified_deployments:
                print(f"  ~ {d.id} at {d.address}")
            if diff.new_transactions:
                print(f"  {diff.new_transactions} new transaction(s)")
        case _:
            print("usage: chain-deployments fork {enter,exit,revert,restart,status,history,diff}")
            return 2
    return 0


def _executor(args: argparse.Namespace, registry: RegistryStore) -> StepExecutor:
    project = load_project_config(args.project_root)
    fork_store = ForkStateStore(registry.data_dir)
    return StepExecutor(
        registry=registry,
        runner=ForgeScriptRunner(args.project_root),
        sender=sender_for_namespace(project, args.namespace),
        namespace=args.namespace,
        fork_store=fork_store,
        synchronizer=SnapshotSynchronizer(fork_store, AnvilSupervisor()),
        profile=project.profile_for(args.namespace),
    )


def _chain_id(args: argparse.Namespace, registry: RegistryStore) -> int:
    entry = ForkStateStore(registry.data_dir).load().get(args.network)
    if entry is not None:
        return entry.chain_id
    return RPCClient(resolve_network(args.project_root, args.network).rpc_url).chain_id()


def _print_deployments(deployments: List[Deployment]) -> None:
    for d in deployments:
        print(f"  {d.id}  {d.address}")


def _run_script(args: argparse.Namespace) -> int:
    registry = RegistryStore(args.data_dir)
    step = ExecutionStep(name=Path(args.script).stem.split(".")[0], script=args.script)
    outcome = _executor(args, registry).run_step(
        step, args.network, _chain_id(args, registry), label=args.label
    )
    print(f"Ran {args.script}: {outcome.transaction_count} transaction(s)")
    _print_deployments(outcome.deployments)
    return 0


def _run_orchestrate(args: argparse.Namespace) -> int:
    plan = create_execution_plan(parse_orchestration_file(args.file))
    print(f"Group '{plan.group}': {' -> '.join(plan.names)}")
    if args.dry_run:
        return 0

    registry = RegistryStore(args.data_dir)
    outcomes = _executor(args, registry).run_plan(plan, args.network, _chain_id(args, registry))
    for outcome in outcomes:
        print(f"{outcome.name}: {outcome.transaction_count} transaction(s)")
        _print_deployments(outcome.deployments)
    return 0


def _run_list(args: argparse.Namespace) -> int:
    deployments = RegistryStore(args.data_dir).list_deployments(
        namespace=args.namespace,
        chain_id=args.chain,
        contract_name=args.contract,
        tag=args.tag,
        fork=args.fork,
    )
    if not deployments:
        print("No deployments found")
    for d in deployments:
        tags = f"  [{', '.join(d.tags)}]" if d.tags else ""
        fork = "  (fork)" if d.fork else ""
        print(f"{d.id}  {d.address}  {d.type.value}{tags}{fork}")
    return 0


def _select_deployment(candidates: List[Deployment], reference: str) -> Deployment:
    print(f"Multiple deployments match '{reference}':")
    for i, d in enumerate(candidates, start=1):
        print(f"  {i}) {d.id} at {d.address}")
    while True:
        choice = input("Select a deployment: ").strip()
        if choice.isdigit() and 1 <= int(choice) <= len(candidates):
            return candidates[int(choice) - 1]


def _resolve(args: argparse.Namespace, registry: RegistryStore) -> Deployment:
    interactive = not args.non_interactive and sys.stdin.isatty()
    return registry.resolve_deployment(
        args.reference,
        namespace=args.namespace,
        chain_id=args.chain,
        interactive=interactive,
        selector=_select_deployment,
    )


def _run_show(args: argparse.Namespace) -> int:
    d = _resolve(args, RegistryStore(args.data_dir))
    print(d.id)
    print(f"  Address:      {d.address}")
    print(f"  Type:         {d.type.value}")
    print(f"  Method:       {d.deployment_strategy.method.value}")
    print(f"  Transaction:  {d.transaction_id}")
    if d.proxy_info:
        print(f"  Implementation: {d.proxy_info.implementation}")
    if d.artifact.script_path:
        print(f"  Script:       {d.artifact.script_path}")
    if d.tags:
        print(f"  Tags:         {', '.join(d.tags)}")
    if d.fork:
        print("  Recorded on a fork")
    print(f"  Created:      {d.created_at}")
    return 0


def _run_tag(args: argparse.Namespace) -> int:
    registry = RegistryStore(args.data_dir)
    deployment = _resolve(args, registry)
    if args.remove:
        registry.untag_deployment(deployment.id, args.tag)
        print(f"Removed tag '{args.tag}' from {deployment.id}")
    else:
        registry.tag_deployment(deployment.id, args.tag)
        print(f"Tagged {deployment.id} with '{args.tag}'")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        "fork": _run_fork,
        "run": _run_script,
        "orchestrate": _run_orchestrate,
        "list": _run_list,
        "show": _run_show,
        "tag": _run_tag,
    }

    try:
        return commands[args.command](args)
    except DeploymentError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
