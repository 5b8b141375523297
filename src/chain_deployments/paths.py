"""Path management utilities for chain-deployments library."""

from pathlib import Path
from typing import Optional, Union

from .constants import (
    DEFAULT_DATA_DIR,
    DEPLOYMENTS_FILE,
    FORK_STATE_FILE,
    PRIVATE_DIR,
    SAFE_TRANSACTIONS_FILE,
    TRANSACTIONS_FILE,
)


def get_default_data_dir() -> Path:
    """
    Get default data directory (current project).

    Returns:
        Path to ./.treb
    """
    return Path.cwd() / DEFAULT_DATA_DIR


def resolve_data_dir(data_root: Optional[Union[Path, str]] = None) -> Path:
    """Return an absolute data directory, defaulting to get_default_data_dir()."""
    if data_root is None:
        return get_default_data_dir()
    return Path(data_root).absolute()


def get_registry_paths(
    data_root: Optional[Union[Path, str]] = None,
) -> tuple[Path, Path, Path]:
    """
    Get registry document paths.

    Args:
        data_root: Custom data directory (defaults to ./.treb)

    Returns:
        Tuple of (deployments_path, transactions_path, safe_transactions_path)
    """
    data_root = resolve_data_dir(data_root)

    return (
        data_root / DEPLOYMENTS_FILE,
        data_root / TRANSACTIONS_FILE,
        data_root / SAFE_TRANSACTIONS_FILE,
    )


def get_private_dir(data_root: Optional[Union[Path, str]] = None) -> Path:
    """Directory for machine-local state (fork state, pid and log files)."""
    return resolve_data_dir(data_root) / PRIVATE_DIR


def get_fork_state_path(data_root: Optional[Union[Path, str]] = None) -> Path:
    return get_private_dir(data_root) / FORK_STATE_FILE


def get_fork_dir(network: str, data_root: Optional[Union[Path, str]] = None) -> Path:
    """Directory holding every snapshot backup for one network's fork."""
    return get_private_dir(data_root) / "fork" / network


def get_snapshot_dir(
    network: str, index: int, data_root: Optional[Union[Path, str]] = None
) -> Path:
    """
    Get the backup directory for one snapshot.

    Args:
        network: Network name
        index: Snapshot index (0 is the fork-open state)
        data_root: Custom data directory

    Returns:
        Path to <data_root>/priv/fork/<network>/snapshots/<index>
    """
    return get_fork_dir(network, data_root) / "snapshots" / str(index)


def get_node_files(
    network: str, data_root: Optional[Union[Path, str]] = None
) -> tuple[Path, Path]:
    """
    Get pid and log file paths of a network's forked node.

    Returns:
        Tuple of (pid_file, log_file)
    """
    private_dir = get_private_dir(data_root)
    return (
        private_dir / f"fork-{network}.pid",
        private_dir / f"fork-{network}.log",
    )
