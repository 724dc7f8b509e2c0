"""Persistent storage of the job queue.

The queue is one YAML document::

    version: "1.0"
    lastUpdated: 2026-10-18T13:45:12.345678+00:00
    itemCount: 2
    items:
      - id: 3f2a...
        type: image
        status: pending
        ...

Every save writes a temp file and renames it over the previous one, after
copying the previous file to a bounded backup directory.  Loading
validates the document with pydantic; a corrupt file is set aside and the
newest valid backup is used instead.

Jobs found in ``processing`` at load time were interrupted by a crash or
power loss; they come back as ``failed`` with error ``"interrupted"``.
"""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from plotter_control.utils import fs

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"
INTERRUPTED = "interrupted"


# ============================================================================
# SCHEMA
# ============================================================================

class JobRecordV1(BaseModel):
    """One queued job as stored on disk."""
    id: str = Field(..., min_length=1)
    type: Literal["image", "text", "drawing"]
    status: Literal["pending", "processing", "completed", "failed"]
    name: str = ""
    createdAt: str
    currentLine: int = Field(0, ge=0)
    error: Optional[str] = None
    startedAt: Optional[str] = None
    finishedAt: Optional[str] = None
    program: Dict[str, Any]

    @model_validator(mode='after')
    def validate_program(self) -> 'JobRecordV1':
        missing = {"instructions", "feedRate", "penUpZ", "penDownZ"} - set(self.program)
        if missing:
            raise ValueError(f"Job {self.id} program is missing {sorted(missing)}")
        return self


class QueueFileV1(BaseModel):
    """Whole queue file."""
    version: str = SCHEMA_VERSION
    lastUpdated: str
    itemCount: int = Field(..., ge=0)
    items: List[JobRecordV1]

    @model_validator(mode='after')
    def validate_count(self) -> 'QueueFileV1':
        if self.itemCount != len(self.items):
            raise ValueError(
                f"itemCount={self.itemCount} but {len(self.items)} items present"
            )
        if self.version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported queue file version {self.version!r}")
        return self


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# STORE
# ============================================================================

class QueueStore:
    """Atomic YAML store for queue items (plain dicts).

    Parameters
    ----------
    path : str | Path
        Queue file location.
    backup_enabled : bool
        Copy the previous file to ``<dir>/backups`` before each save.
    max_backups : int
        Number of backups kept.
    """

    def __init__(
        self,
        path: Union[str, Path],
        backup_enabled: bool = True,
        max_backups: int = 5,
    ) -> None:
        self.path = Path(path)
        self.backup_enabled = backup_enabled
        self.max_backups = max_backups
        self.backup_dir = self.path.parent / "backups"

    @classmethod
    def from_config(cls, cfg) -> 'QueueStore':
        return cls(
            cfg.queue.store_path,
            backup_enabled=cfg.queue.backup_enabled,
            max_backups=cfg.queue.max_backups,
        )

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def save(self, items: List[Dict[str, Any]]) -> None:
        """Validate and write *items* atomically.

        Raises
        ------
        ValidationError
            If an item does not match the schema (nothing is written).
        OSError
            If the file cannot be written.
        """
        document = QueueFileV1(
            version=SCHEMA_VERSION,
            lastUpdated=_now(),
            itemCount=len(items),
            items=items,
        )
        if self.backup_enabled and self.max_backups > 0:
            fs.rotate_backup(self.path, self.backup_dir, self.max_backups)
        fs.atomic_yaml_dump(document.model_dump(), self.path)
        logger.debug("Saved %d queue items to %s", len(items), self.path)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self) -> List[Dict[str, Any]]:
        """Load queue items, falling back to the newest valid backup.

        Returns an empty list when there is no queue file yet, or when
        neither the file nor any backup is readable (logged as an error).
        """
        if not self.path.exists():
            logger.info("Queue file %s not found, starting with an empty queue", self.path)
            return []

        try:
            items = self._read(self.path)
        except (OSError, yaml.YAMLError, ValidationError, TypeError) as exc:
            logger.error("Queue file %s is unreadable: %s", self.path, exc)
            self._set_aside()
            items = self._recover_from_backup()
            if items is None:
                logger.error("No valid queue backup found; starting with an empty queue")
                return []

        for item in items:
            if item["status"] == "processing":
                logger.warning("Job %s was interrupted while processing; marking failed", item["id"])
                item["status"] = "failed"
                item["error"] = INTERRUPTED
                item["finishedAt"] = item.get("finishedAt") or _now()

        logger.info("Loaded %d queue items from %s", len(items), self.path)
        return items

    def _read(self, path: Path) -> List[Dict[str, Any]]:
        data = fs.load_yaml(path)
        if not isinstance(data, dict):
            raise TypeError(f"Queue file root must be a mapping, got {type(data).__name__}")
        document = QueueFileV1(**data)
        return [item.model_dump() for item in document.items]

    def _recover_from_backup(self) -> Optional[List[Dict[str, Any]]]:
        for backup in fs.list_backups(self.path, self.backup_dir):
            try:
                items = self._read(backup)
            except (OSError, yaml.YAMLError, ValidationError, TypeError) as exc:
                logger.warning("Backup %s is unreadable: %s", backup, exc)
                continue
            logger.warning("Recovered %d queue items from backup %s", len(items), backup)
            shutil.copy2(backup, self.path)
            return items
        return None

    def _set_aside(self) -> None:
        try:
            target = fs.set_aside(self.path, "corrupt")
        except OSError as exc:
            logger.error("Could not move unreadable queue file aside: %s", exc)
            return
        logger.warning("Moved unreadable queue file to %s", target)
