"""Tests for the queue file store: atomic saves, backups, recovery."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from plotter_control.configs.loader import MachineConfig
from plotter_control.jobs.persistence import QueueFileV1, QueueStore
from plotter_control.utils import fs


def _item(job_id: str, status: str = "pending") -> dict[str, Any]:
    return {
        "id": job_id,
        "type": "drawing",
        "status": status,
        "name": job_id,
        "createdAt": "2026-10-18T10:00:00+00:00",
        "currentLine": 0,
        "error": None,
        "startedAt": None,
        "finishedAt": None,
        "program": {
            "feedRate": 1500.0,
            "penUpZ": -2.3,
            "penDownZ": 0.0,
            "header": [],
            "instructions": [{"op": "Move", "x": 1.0, "y": 2.0}],
            "stats": None,
        },
    }


class TestSchema:
    def test_item_count_must_match(self) -> None:
        with pytest.raises(ValidationError):
            QueueFileV1(lastUpdated="now", itemCount=2, items=[_item("a")])

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValidationError):
            QueueFileV1(lastUpdated="now", itemCount=1, items=[_item("a", "paused")])

    def test_program_fields_required(self) -> None:
        item = _item("a")
        del item["program"]["penUpZ"]
        with pytest.raises(ValidationError):
            QueueFileV1(lastUpdated="now", itemCount=1, items=[item])


class TestQueueStore:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert QueueStore(tmp_path / "queue.yaml").load() == []

    def test_save_writes_envelope(self, tmp_path: Path) -> None:
        path = tmp_path / "queue.yaml"
        QueueStore(path).save([_item("a"), _item("b")])

        data = yaml.safe_load(path.read_text())
        assert data["version"] == "1.0"
        assert data["itemCount"] == 2
        assert data["lastUpdated"]
        assert [i["id"] for i in data["items"]] == ["a", "b"]
        assert not list(tmp_path.glob("*.tmp"))

    def test_round_trip(self, tmp_path: Path) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        store.save([_item("a")])
        assert store.load() == [_item("a")]

    def test_backups_are_bounded(self, tmp_path: Path) -> None:
        store = QueueStore(tmp_path / "queue.yaml", max_backups=2)
        for n in range(5):
            store.save([_item(f"job{n}")])
        backups = fs.list_backups(store.path, store.backup_dir)
        assert len(backups) == 2

    def test_backups_disabled(self, tmp_path: Path) -> None:
        store = QueueStore(tmp_path / "queue.yaml", backup_enabled=False)
        store.save([_item("a")])
        store.save([_item("b")])
        assert not store.backup_dir.exists() or not any(store.backup_dir.iterdir())

    def test_corrupt_file_recovered_from_backup(self, tmp_path: Path) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        store.save([_item("a")])
        store.save([_item("a"), _item("b")])
        store.path.write_text("items: [unterminated\n")

        items = store.load()

        assert [i["id"] for i in items] == ["a"]
        assert list(tmp_path.glob("queue.corrupt-*.yaml"))
        # the recovered copy is now the live file
        assert [i["id"] for i in QueueStore(store.path).load()] == ["a"]

    def test_invalid_schema_without_backup_is_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "queue.yaml"
        path.write_text(yaml.safe_dump({"version": "1.0", "itemCount": 1, "items": []}))
        assert QueueStore(path, backup_enabled=False).load() == []

    def test_processing_becomes_interrupted(self, tmp_path: Path) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        store.save([_item("a", "processing"), _item("b")])

        a, b = store.load()
        assert a["status"] == "failed"
        assert a["error"] == "interrupted"
        assert a["finishedAt"]
        assert b["status"] == "pending"

    def test_from_config(self, config: MachineConfig) -> None:
        store = QueueStore.from_config(config)
        assert store.path == Path(config.queue.store_path)
        assert store.max_backups == config.queue.max_backups
