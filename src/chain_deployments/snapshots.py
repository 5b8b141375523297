"""Chain snapshot and registry backup synchronization for chain-deployments library."""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Tuple

from .exceptions import CrashError, NodeUnavailableError, StateError
from .fork_state import ForkStateStore
from .process import NodeSupervisor
from .rpc import RPCClient
from .types import ForkEntry, ForkState, SnapshotEntry, utc_now

logger = logging.getLogger(__name__)

RPCFactory = Callable[[str], RPCClient]


class SnapshotSynchronizer:
    """
    Keeps a fork's chain snapshots and registry backups in lockstep.

    Every entry on a fork's snapshot stack pairs an evm_snapshot id with a
    backup directory holding the registry documents as they were at the same
    moment. Reverting moves both back together.
    """

    def __init__(
        self,
        store: ForkStateStore,
        supervisor: NodeSupervisor,
        rpc_factory: RPCFactory = RPCClient,
    ):
        self.store = store
        self.supervisor = supervisor
        self.rpc_factory = rpc_factory

    def _load(self, network: str) -> Tuple[ForkState, ForkEntry]:
        state = self.store.load()
        entry = state.get(network)
        if entry is None:
            raise StateError(f"no active fork for network '{network}'")
        return state, entry

    def _check_alive(self, entry: ForkEntry) -> None:
        if not self.supervisor.is_alive(entry.pid):
            raise CrashError(entry.network)

    def ensure_alive(self, network: str) -> ForkEntry:
        """
        Return the fork entry if its node is still running.

        Raises:
            StateError: If no fork is active for the network
            CrashError: If the node process is gone
        """
        _, entry = self._load(network)
        self._check_alive(entry)
        return entry

    def _client(self, entry: ForkEntry) -> RPCClient:
        return self.rpc_factory(entry.fork_url)

    def _chain_call(self, entry: ForkEntry, fn: Callable[[RPCClient], object]):
        try:
            return fn(self._client(entry))
        except NodeUnavailableError as e:
            if not self.supervisor.is_alive(entry.pid):
                raise CrashError(entry.network, str(e)) from e
            raise

    def push(self, network: str, command: str) -> SnapshotEntry:
        """
        Capture the current state before a mutating step.

        Args:
            network: Forked network
            command: Label of the step about to run

        Returns:
            The new top entry
        """
        state, entry = self._load(network)
        self._check_alive(entry)

        snapshot_id = self._chain_call(entry, lambda client: client.snapshot())
        index = len(entry.snapshots)
        self.store.backup_documents(network, index)

        snapshot = SnapshotEntry(
            index=index, snapshot_id=snapshot_id, command=command, timestamp=utc_now()
        )
        entry.snapshots.append(snapshot)
        self.store.save(state)

        logger.info("Pushed snapshot %d for %s before '%s'", index, network, command)
        return snapshot

    def revert(self, network: str) -> SnapshotEntry:
        """
        Undo the most recent step.

        Returns:
            The popped entry (its command is the step that was undone)

        Raises:
            StateError: If only the fork-open entry remains
            CrashError: If the node process is gone
        """
        state, entry = self._load(network)
        if len(entry.snapshots) <= 1:
            raise StateError("nothing to revert - already at initial fork state")
        self._check_alive(entry)

        top = entry.top
        self._chain_call(entry, lambda client: client.revert(top.snapshot_id))
        self.store.restore_documents(network, top.index)
        self.store.remove_snapshot_dir(network, top.index)

        entry.snapshots.pop()
        self.store.save(state)

        logger.info("Reverted '%s' on fork %s", top.command, network)
        return top

    def revert_all(self, network: str) -> int:
        """
        Undo every step since the fork was opened.

        Returns:
            Number of steps undone

        Raises:
            StateError: If only the fork-open entry remains
            CrashError: If the node process is gone
        """
        state, entry = self._load(network)
        if len(entry.snapshots) <= 1:
            raise StateError("nothing to revert - already at initial fork state")
        self._check_alive(entry)

        base = entry.snapshots[0]
        reverted = entry.snapshots[1:]

        self._chain_call(entry, lambda client: client.revert(base.snapshot_id))
        self.store.restore_documents(network, base.index)
        for snapshot in reverted:
            self.store.remove_snapshot_dir(network, snapshot.index)

        # evm_revert consumed the base id; take a new one at the same state
        base.snapshot_id = self._chain_call(entry, lambda client: client.snapshot())
        entry.snapshots = [base]
        self.store.save(state)

        logger.info("Reverted %d step(s) on fork %s", len(reverted), network)
        return len(reverted)

    @contextmanager
    def step(self, network: str, command: str) -> Iterator[SnapshotEntry]:
        """
        Wrap one mutating step in a snapshot.

        The snapshot is pushed before the body runs. If the body raises, the
        entry stays on the stack so the partial step can be reverted.
        """
        snapshot = self.push(network, command)
        try:
            yield snapshot
        except Exception:
            logger.warning(
                "'%s' failed on fork %s; run 'fork revert %s' to undo partial changes",
                command,
                network,
                network,
            )
            raise
