"""Machine configuration loading and validation."""

from plotter_control.configs.loader import (
    ColorConfig,
    ConfigError,
    ConnectionConfig,
    MachineConfig,
    MotionConfig,
    PenConfig,
    SimplifyConfig,
    WorkAreaConfig,
    build_config,
    load_config,
)

__all__ = [
    "ColorConfig",
    "ConfigError",
    "ConnectionConfig",
    "MachineConfig",
    "MotionConfig",
    "PenConfig",
    "SimplifyConfig",
    "WorkAreaConfig",
    "build_config",
    "load_config",
]
