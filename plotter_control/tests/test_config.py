"""Tests for machine configuration loading and validation."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest
import yaml

from plotter_control.configs.loader import ConfigError, build_config, load_config

from conftest import FAST_CONFIG


def _with(path: str, value: Any) -> dict[str, Any]:
    data = copy.deepcopy(FAST_CONFIG)
    section, key = path.split(".")
    data.setdefault(section, {})[key] = value
    return data


class TestDefaultConfig:
    def test_shipped_config_loads(self) -> None:
        cfg = load_config()
        assert cfg.connection.baud_rate == 115200
        assert cfg.connection.ack_timeout_s == 5.0
        assert cfg.motion.feed_rate_mm_min == 1500
        assert cfg.pen.up_z == -2.3
        assert cfg.work_area.width_mm > 0
        assert cfg.logging.format in ("human", "json")

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "machine.yaml"
        path.write_text(yaml.safe_dump(FAST_CONFIG))
        cfg = load_config(path)
        assert cfg.connection.port == "/dev/fake0"
        assert cfg.connection.settle_s == 0

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "machine.yaml"
        path.write_text("")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_config_is_frozen(self, config) -> None:
        with pytest.raises(AttributeError):
            config.connection.port = "/dev/other"

    def test_work_area_contains(self, config) -> None:
        assert config.work_area.contains(0, 0)
        assert config.work_area.contains(100, 100)
        assert not config.work_area.contains(100.1, 50)


class TestValidation:
    def test_defaults_fill_optional_keys(self) -> None:
        cfg = build_config({
            "connection": {"port": "COM3"},
            "auxiliary": {"enabled": False},
            "work_area": {"width_mm": 95, "height_mm": 130},
        })
        assert cfg.connection.settle_s == 3.0
        assert cfg.queue.max_backups == 5
        assert cfg.color.dominance_margin == 50

    def test_missing_port(self) -> None:
        data = copy.deepcopy(FAST_CONFIG)
        del data["connection"]["port"]
        with pytest.raises(ConfigError, match="port"):
            build_config(data)

    def test_missing_work_area(self) -> None:
        data = copy.deepcopy(FAST_CONFIG)
        del data["work_area"]
        with pytest.raises(ConfigError, match="width_mm"):
            build_config(data)

    @pytest.mark.parametrize(
        "path, value",
        [
            ("connection.ack_timeout_s", 0),
            ("connection.health_interval_s", -1),
            ("connection.settle_s", -0.5),
            ("connection.baud_rate", "fast"),
            ("work_area.width_mm", 0),
            ("pen.down_z", -2.3),
            ("motion.feed_rate_mm_min", 0),
            ("simplify.tolerance_mm", -1),
            ("color.channel_min", 300),
            ("queue.max_backups", -1),
            ("logging.level", "LOUD"),
            ("logging.format", "xml"),
        ],
    )
    def test_invalid_values(self, path: str, value: Any) -> None:
        with pytest.raises(ConfigError):
            build_config(_with(path, value))

    def test_auxiliary_port_required_when_enabled(self) -> None:
        with pytest.raises(ConfigError, match="auxiliary.port"):
            build_config(_with("auxiliary.port", ""))

    def test_section_must_be_mapping(self) -> None:
        data = copy.deepcopy(FAST_CONFIG)
        data["pen"] = [1, 2]
        with pytest.raises(ConfigError, match="pen"):
            build_config(data)

    def test_error_code(self) -> None:
        with pytest.raises(ConfigError) as info:
            build_config(_with("logging.format", "xml"))
        assert info.value.code == "config_error"
