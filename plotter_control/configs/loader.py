"""Configuration loader for the plotter.

Loads and validates ``machine.yaml`` into typed, frozen dataclasses.
Serial settings, the working area, pen heights, feed rates and the
classifier thresholds all come from the config.

Feed rates are stored in **mm/min** throughout, matching the GRBL ``F``
word, so the generator writes them without conversion.

Usage::

    from plotter_control.configs.loader import load_config
    cfg = load_config()                        # default path
    cfg = load_config("/custom/machine.yaml")  # explicit path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from plotter_control.errors import PlotterError
from plotter_control.utils.fs import load_yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(PlotterError):
    """Raised when configuration validation fails."""

    code = "config_error"


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionConfig:
    """Serial link to the CNC controller.

    ``settle_s`` is the wait after opening the port (the controller resets
    when DTR toggles).  ``completion_grace_s`` is the delay between the
    completion event and closing a transient link.
    """

    port: str
    baud_rate: int = 115200
    settle_s: float = 3.0
    ack_timeout_s: float = 5.0
    completion_grace_s: float = 1.0
    health_interval_s: float = 1.0
    reopen_delay_s: float = 0.5
    command_response_window_s: float = 1.0


@dataclass(frozen=True)
class AuxiliaryConfig:
    """Secondary controller (paper box) that must be present to plot."""

    enabled: bool = True
    port: str = ""
    baud_rate: int = 9600


@dataclass(frozen=True)
class WorkAreaConfig:
    """Drawable area in mm, origin at (0, 0)."""

    width_mm: float
    height_mm: float

    def contains(self, x: float, y: float, eps: float = 1e-6) -> bool:
        """True when (x, y) lies inside the area (inclusive edges)."""
        return (
            -eps <= x <= self.width_mm + eps
            and -eps <= y <= self.height_mm + eps
        )


@dataclass(frozen=True)
class PenConfig:
    """Pen Z heights in mm."""

    up_z: float = -2.3
    down_z: float = 0.0


@dataclass(frozen=True)
class MotionConfig:
    """Feed rates (mm/min) and path ordering."""

    feed_rate_mm_min: float = 1500.0
    recovery_feed_mm_min: float = 1500.0
    optimize_order: bool = True


@dataclass(frozen=True)
class SimplifyConfig:
    """Polyline reduction parameters (mm)."""

    tolerance_mm: float = 0.5
    min_path_length_mm: float = 1.0
    remove_noise: bool = True


@dataclass(frozen=True)
class ColorConfig:
    """Color classifier thresholds (0-255 channel values)."""

    sample_size_px: int = 300
    background_min: int = 250
    channel_min: int = 100
    dominance_margin: int = 50


@dataclass(frozen=True)
class QueueConfig:
    """Queue persistence settings."""

    store_path: str = "data/queue.yaml"
    backup_enabled: bool = True
    max_backups: int = 5


@dataclass(frozen=True)
class LoggingConfig:
    """Root logger settings consumed by ``setup_from_config``."""

    level: str = "INFO"
    format: str = "human"
    file: str = ""
    max_bytes: int = 5_000_000
    backup_count: int = 5

    @property
    def json(self) -> bool:
        return self.format == "json"


@dataclass(frozen=True)
class MachineConfig:
    """Top-level machine configuration."""

    connection: ConnectionConfig
    auxiliary: AuxiliaryConfig
    work_area: WorkAreaConfig
    pen: PenConfig
    motion: MotionConfig
    simplify: SimplifyConfig
    color: ColorConfig
    queue: QueueConfig
    logging: LoggingConfig


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(
            f"Section '{name}' must be a mapping, got {type(section).__name__}"
        )
    return section


def _parse_connection(data: dict[str, Any]) -> ConnectionConfig:
    return ConnectionConfig(
        port=str(data["port"]),
        baud_rate=int(data.get("baud_rate", 115200)),
        settle_s=float(data.get("settle_s", 3.0)),
        ack_timeout_s=float(data.get("ack_timeout_s", 5.0)),
        completion_grace_s=float(data.get("completion_grace_s", 1.0)),
        health_interval_s=float(data.get("health_interval_s", 1.0)),
        reopen_delay_s=float(data.get("reopen_delay_s", 0.5)),
        command_response_window_s=float(
            data.get("command_response_window_s", 1.0)
        ),
    )


def _parse_color(data: dict[str, Any]) -> ColorConfig:
    return ColorConfig(
        sample_size_px=int(data.get("sample_size_px", 300)),
        background_min=int(data.get("background_min", 250)),
        channel_min=int(data.get("channel_min", 100)),
        dominance_margin=int(data.get("dominance_margin", 50)),
    )


def build_config(data: dict[str, Any]) -> MachineConfig:
    """Build a validated :class:`MachineConfig` from a parsed mapping.

    Raises
    ------
    ConfigError
        If a required key is missing or a value fails validation.
    """
    try:
        # -- connection -----------------------------------------------------
        connection = _parse_connection(_section(data, "connection"))

        # -- auxiliary ------------------------------------------------------
        ad = _section(data, "auxiliary")
        auxiliary = AuxiliaryConfig(
            enabled=bool(ad.get("enabled", True)),
            port=str(ad.get("port", "")),
            baud_rate=int(ad.get("baud_rate", 9600)),
        )

        # -- work area ------------------------------------------------------
        wa = _section(data, "work_area")
        work_area = WorkAreaConfig(
            width_mm=float(wa["width_mm"]),
            height_mm=float(wa["height_mm"]),
        )

        # -- pen ------------------------------------------------------------
        pd = _section(data, "pen")
        pen = PenConfig(
            up_z=float(pd.get("up_z", -2.3)),
            down_z=float(pd.get("down_z", 0.0)),
        )

        # -- motion ---------------------------------------------------------
        md = _section(data, "motion")
        motion = MotionConfig(
            feed_rate_mm_min=float(md.get("feed_rate_mm_min", 1500.0)),
            recovery_feed_mm_min=float(
                md.get("recovery_feed_mm_min", 1500.0)
            ),
            optimize_order=bool(md.get("optimize_order", True)),
        )

        # -- simplify -------------------------------------------------------
        sd = _section(data, "simplify")
        simplify = SimplifyConfig(
            tolerance_mm=float(sd.get("tolerance_mm", 0.5)),
            min_path_length_mm=float(sd.get("min_path_length_mm", 1.0)),
            remove_noise=bool(sd.get("remove_noise", True)),
        )

        # -- color ----------------------------------------------------------
        color = _parse_color(_section(data, "color"))

        # -- queue ----------------------------------------------------------
        qd = _section(data, "queue")
        queue = QueueConfig(
            store_path=str(qd.get("store_path", "data/queue.yaml")),
            backup_enabled=bool(qd.get("backup_enabled", True)),
            max_backups=int(qd.get("max_backups", 5)),
        )

        # -- logging --------------------------------------------------------
        ld = _section(data, "logging")
        logging_cfg = LoggingConfig(
            level=str(ld.get("level", "INFO")).upper(),
            format=str(ld.get("format", "human")),
            file=str(ld.get("file", "") or ""),
            max_bytes=int(ld.get("max_bytes", 5_000_000)),
            backup_count=int(ld.get("backup_count", 5)),
        )

    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc

    config = MachineConfig(
        connection=connection,
        auxiliary=auxiliary,
        work_area=work_area,
        pen=pen,
        motion=motion,
        simplify=simplify,
        color=color,
        queue=queue,
        logging=logging_cfg,
    )
    _validate_config(config)
    return config


def load_config(path: str | Path | None = None) -> MachineConfig:
    """Load and validate machine configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``machine.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    MachineConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "machine.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    data = load_yaml(path)
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")

    config = build_config(data)
    logger.info("Configuration loaded successfully")
    return config


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _validate_config(cfg: MachineConfig) -> None:
    """Validate cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid combination.
    """
    c = cfg.connection
    if not c.port:
        raise ConfigError("connection.port must not be empty")
    if c.baud_rate <= 0:
        raise ConfigError(f"connection.baud_rate must be positive, got {c.baud_rate}")
    for name in ("settle_s", "completion_grace_s", "reopen_delay_s"):
        if getattr(c, name) < 0:
            raise ConfigError(f"connection.{name} must be >= 0")
    for name in ("ack_timeout_s", "health_interval_s", "command_response_window_s"):
        if getattr(c, name) <= 0:
            raise ConfigError(f"connection.{name} must be positive")

    if cfg.auxiliary.enabled and not cfg.auxiliary.port:
        raise ConfigError("auxiliary.port is required when auxiliary.enabled is true")

    if cfg.work_area.width_mm <= 0 or cfg.work_area.height_mm <= 0:
        raise ConfigError(
            f"Work area must be positive, got "
            f"{cfg.work_area.width_mm} x {cfg.work_area.height_mm}"
        )

    if cfg.pen.up_z == cfg.pen.down_z:
        raise ConfigError(
            f"pen.up_z and pen.down_z must differ (both {cfg.pen.up_z})"
        )

    if cfg.motion.feed_rate_mm_min <= 0:
        raise ConfigError("motion.feed_rate_mm_min must be positive")
    if cfg.motion.recovery_feed_mm_min <= 0:
        raise ConfigError("motion.recovery_feed_mm_min must be positive")

    if cfg.simplify.tolerance_mm < 0:
        raise ConfigError("simplify.tolerance_mm must be >= 0")
    if cfg.simplify.min_path_length_mm < 0:
        raise ConfigError("simplify.min_path_length_mm must be >= 0")

    col = cfg.color
    if col.sample_size_px <= 0:
        raise ConfigError("color.sample_size_px must be positive")
    for name in ("background_min", "channel_min", "dominance_margin"):
        value = getattr(col, name)
        if not 0 <= value <= 255:
            raise ConfigError(f"color.{name} must be within 0..255, got {value}")

    if cfg.queue.max_backups < 0:
        raise ConfigError("queue.max_backups must be >= 0")

    if cfg.logging.level not in _LEVELS:
        raise ConfigError(
            f"logging.level must be one of {_LEVELS}, got {cfg.logging.level!r}"
        )
    if cfg.logging.format not in ("human", "json"):
        raise ConfigError(
            f"logging.format must be 'human' or 'json', got {cfg.logging.format!r}"
        )
