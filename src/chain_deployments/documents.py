"""JSON document persistence for chain-deployments library."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from .exceptions import ValidationError

logger = logging.getLogger(__name__)


def load_document(path: Path) -> Dict[str, Any]:
    """
    Load a JSON document or return empty dict.

    Args:
        path: Path to the document

    Returns:
        Parsed document, or an empty dict if the file doesn't exist

    Raises:
        ValidationError: If the file exists but is not a JSON object
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise ValidationError(f"Corrupted registry document {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(f"Registry document {path} must contain a JSON object")
    return data


def _write_temp(data: Dict[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return Path(tmp_name)


def save_document(data: Dict[str, Any], path: Path) -> None:
    """
    Save a JSON document to disk atomically.

    The document is written to a temporary file in the same directory,
    flushed and fsynced, then renamed over the target so a crash mid-write
    leaves either the old or the new content, never a truncated file.

    Creates parent directories if they don't exist.
    """
    save_documents({path: data})


def save_documents(documents: Dict[Path, Dict[str, Any]]) -> None:
    """
    Save several JSON documents together.

    Every document is serialized and fsynced to its temporary file before
    any target is replaced. A serialization or write failure therefore
    leaves all targets untouched; only a failing rename, after all content
    is safely on disk, can leave the set partially updated.

    Args:
        documents: Mapping of target path to document content
    """
    staged: Dict[Path, Path] = {}
    try:
        for path, data in documents.items():
            staged[path] = _write_temp(data, path)
        for path, tmp_path in staged.items():
            os.replace(tmp_path, path)
            logger.debug("Wrote %s", path)
    except BaseException:
        # Drop temp files that were not renamed
        for tmp_path in staged.values():
            tmp_path.unlink(missing_ok=True)
        raise


def remove_document(path: Path) -> bool:
    """
    Delete a document if it exists.

    Returns:
        True if a file was removed
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug("Removed %s", path)
    return True
