"""Cross-cutting utilities (lowest dependency layer).

    fs: atomic writes, YAML load/dump, queue file backups
    logging_config: root logger setup and per-thread context fields

Nothing in utils/ imports from the layers above it.
"""

from . import fs
from . import logging_config

__all__ = ["fs", "logging_config"]
