"""Durable JSON file helpers."""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog

from .exceptions import PersistenceError

logger = structlog.get_logger(__name__)

_write_lock = threading.Lock()


def atomic_write_json(path: Union[str, Path], data: Dict[str, Any]) -> None:
    """Write JSON so readers only ever see the old or the new file.

    The payload goes to a temporary file in the target directory, is
    fsync'd, and then replaces the target. Writers are serialized.

    Args:
        path: Destination file
        data: JSON-serializable payload

    Raises:
        PersistenceError: If the file could not be written
    """
    target = Path(path)
    with _write_lock:
        tmp_name: Optional[str] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to write {target}", {"error": str(e)}
            ) from e
        finally:
            if tmp_name and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temp file", path=tmp_name)


def load_json(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """Load a JSON object from ``path``.

    Returns:
        Parsed object, or None if the file does not exist

    Raises:
        ValueError: If the content is not a JSON object
    """
    target = Path(path)
    if not target.exists():
        return None
    with open(target, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{target} does not contain a JSON object")
    return data
