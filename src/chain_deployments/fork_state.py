"""Fork state persistence and registry backups for chain-deployments library."""

import logging
import shutil
from pathlib import Path
from typing import Optional, Union

from .constants import REGISTRY_FILES
from .documents import load_document, remove_document, save_document
from .paths import get_fork_dir, get_fork_state_path, get_snapshot_dir, resolve_data_dir
from .types import ForkState

logger = logging.getLogger(__name__)


class ForkStateStore:
    """
    Reads and writes <data_dir>/priv/fork-state.json and the snapshot
    backup directories next to it.
    """

    def __init__(self, data_dir: Optional[Union[Path, str]] = None):
        self.data_dir = resolve_data_dir(data_dir)
        self.path = get_fork_state_path(self.data_dir)

    def load(self) -> ForkState:
        """Load fork state, or an empty state if no fork is active."""
        return ForkState.from_dict(load_document(self.path))

    def save(self, state: ForkState) -> None:
        """Persist fork state; an empty state deletes the file."""
        if not state.forks:
            self.delete()
            return
        save_document(state.to_dict(), self.path)

    def delete(self) -> None:
        remove_document(self.path)

    def snapshot_dir(self, network: str, index: int) -> Path:
        return get_snapshot_dir(network, index, self.data_dir)

    def backup_documents(self, network: str, index: int) -> Path:
        """
        Copy the registry documents into a snapshot's backup directory.

        Documents that don't exist yet are simply not copied; restore treats
        their absence as "did not exist at snapshot time".

        Returns:
            The backup directory
        """
        backup_dir = self.snapshot_dir(network, index)
        if backup_dir.exists():
            shutil.rmtree(backup_dir)
        backup_dir.mkdir(parents=True)

        for name in REGISTRY_FILES:
            source = self.data_dir / name
            if source.exists():
                shutil.copy2(source, backup_dir / name)
                logger.debug("Backed up %s to %s", source, backup_dir)

        return backup_dir

    def restore_documents(self, network: str, index: int) -> None:
        """
        Make the registry documents identical to a snapshot's backup.

        A document missing from the backup is deleted from the data dir.
        """
        backup_dir = self.snapshot_dir(network, index)

        for name in REGISTRY_FILES:
            source = backup_dir / name
            target = self.data_dir / name
            if source.exists():
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                logger.debug("Restored %s from %s", target, backup_dir)
            elif remove_document(target):
                logger.debug("Removed %s (absent from %s)", target, backup_dir)

    def remove_snapshot_dir(self, network: str, index: int) -> None:
        shutil.rmtree(self.snapshot_dir(network, index), ignore_errors=True)

    def cleanup_fork_dir(self, network: str) -> None:
        """Remove every backup of a network's fork."""
        shutil.rmtree(get_fork_dir(network, self.data_dir), ignore_errors=True)
