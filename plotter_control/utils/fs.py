"""File helpers for the queue store, program output and config files.

Every write goes to a sibling temp file that is fsynced and then renamed
over the target, so readers only ever see the old or the new content.
Backups of the queue file live next to it and are pruned oldest first.

Usage:
    from plotter_control.utils import fs
    fs.atomic_yaml_dump({"items": []}, "data/queue.yaml")
    fs.rotate_backup("data/queue.yaml", "data/backups", max_backups=5)
"""

import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Union

import yaml

PathLike = Union[str, Path]

# Microseconds keep two saves within one second distinct and sortable
STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


def utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime(STAMP_FORMAT)


def atomic_write_text(path: PathLike, text: str, encoding: str = "utf-8") -> None:
    """Replace *path* with *text* in one rename.

    Parameters
    ----------
    path : str or Path
        Target file; parent directories are created.
    text : str
        Full new content.
    encoding : str
        Text encoding, default utf-8.

    Raises
    ------
    OSError
        Write or rename failed. The temp file is gone and the previous
        content of *path* is untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_yaml_dump(obj: Any, path: PathLike) -> None:
    """Write *obj* as block-style YAML, keeping key order."""
    text = yaml.safe_dump(obj, default_flow_style=False, sort_keys=False, allow_unicode=True)
    atomic_write_text(path, text)


def load_yaml(path: PathLike) -> Any:
    """Parse a YAML (or JSON) file with ``safe_load``.

    An empty file yields None; callers decide whether that is an error.

    Raises
    ------
    FileNotFoundError
        *path* does not exist.
    yaml.YAMLError
        The content is not valid YAML; the message names the file.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"No such file: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"{path}: {e}") from e


def set_aside(path: PathLike, label: str) -> Optional[Path]:
    """Rename *path* to ``<stem>.<label>-<stamp><suffix>`` in place.

    Returns the new location, or None when *path* was already missing.
    """
    path = Path(path)
    target = path.with_name(f"{path.stem}.{label}-{utc_stamp()}{path.suffix}")
    try:
        path.replace(target)
    except FileNotFoundError:
        return None
    return target


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def list_backups(path: PathLike, backup_dir: PathLike) -> List[Path]:
    """Backups of *path* found in *backup_dir*, newest first."""
    path = Path(path)
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []
    return sorted(backup_dir.glob(f"{path.stem}-*{path.suffix}"), reverse=True)


def rotate_backup(path: PathLike, backup_dir: PathLike, max_backups: int) -> Optional[Path]:
    """Copy the current *path* into *backup_dir*, keeping *max_backups*.

    Nothing happens for a file that does not exist yet (first save).
    """
    path = Path(path)
    if not path.exists():
        return None

    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    target = backup_dir / f"{path.stem}-{utc_stamp()}{path.suffix}"
    shutil.copy2(path, target)

    for old in list_backups(path, backup_dir)[max_backups:]:
        old.unlink(missing_ok=True)
    return target
