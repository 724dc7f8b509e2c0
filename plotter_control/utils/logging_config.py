"""Root logger setup shared by the CLI and the queue worker.

Every module logs through ``logging.getLogger(__name__)``; only entrypoints
call :func:`setup_from_config`.  Records carry contextual fields pushed
with :func:`push_context` (``app``, ``job``), rendered either as a human
line on stderr or as one JSON object per line in the log file:

    2026-10-18T13:45:12.345Z | INFO     | app=run_job job=3f2a1b9c | Sending 480 lines
    {"t": "2026-10-18T13:45:12.345+00:00", "lvl": "INFO", "job": "3f2a1b9c", "msg": "..."}

Context lives in a ``contextvars.ContextVar``.  The device reader and
health threads start with an empty context, so a job id pushed by the
streaming thread only tags lines logged on that thread.
"""

import contextvars
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

_context: contextvars.ContextVar = contextvars.ContextVar("plotter_log_context", default={})

# Handlers installed by the last setup call; replaced, never stacked
_installed: List[logging.Handler] = []

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"

# Chatty third-party loggers kept at WARNING
NOISY_LOGGERS = ("PIL", "serial")


class ContextFormatter(logging.Formatter):
    """Render records with the current context fields.

    Parameters
    ----------
    fmt_mode : str
        ``"human"`` for the pipe-separated console line, ``"json"`` for
        one JSON object per record.
    use_color : bool
        Color the level name; ignored unless stderr is a terminal.
    tz : str
        ``"UTC"`` or ``"local"`` timestamps.
    """

    def __init__(self, fmt_mode: str = "human", use_color: bool = True, tz: str = "UTC"):
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"Unknown log format {fmt_mode!r}; use 'human' or 'json'")
        self.fmt_mode = fmt_mode
        self.use_color = use_color and sys.stderr.isatty()
        self.tz = tz

    def _timestamp(self, record: logging.LogRecord) -> datetime:
        if self.tz == "UTC":
            return datetime.fromtimestamp(record.created, tz=timezone.utc)
        return datetime.fromtimestamp(record.created).astimezone()

    def format(self, record: logging.LogRecord) -> str:
        ts = self._timestamp(record)
        fields = _context.get()

        if self.fmt_mode == "json":
            payload: Dict[str, Any] = {
                "t": ts.isoformat(timespec="milliseconds"),
                "lvl": record.levelname,
                "name": record.name,
                "pid": os.getpid(),
                "thread": record.threadName,
            }
            payload.update(fields)
            payload["msg"] = record.getMessage()
            if record.exc_info:
                payload["exc"] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)

        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{_LEVEL_COLORS.get(record.levelname, '')}{level}{_RESET}"
        stamp = ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"
        parts = [stamp, level]
        if fields:
            parts.append(" ".join(f"{k}={v}" for k, v in fields.items()))
        parts.append(record.getMessage())
        line = " | ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    file_format: str = "human",
    max_bytes: int = 0,
    backup_count: int = 5,
    console: bool = True,
    color: bool = True,
    quiet: Iterable[str] = NOISY_LOGGERS,
    context: Optional[Dict[str, Any]] = None,
) -> List[logging.Handler]:
    """Install console and file handlers on the root logger.

    Calling it again replaces the handlers from the previous call, so a
    test or a long-lived worker can reconfigure without duplicate lines.

    Parameters
    ----------
    level : str
        Root level name.
    log_file : str, optional
        File to append to; its directory is created.
    file_format : str
        ``"human"`` or ``"json"`` for the file handler. The console
        always gets the human format.
    max_bytes : int
        Rotate the file at this size (0 disables rotation).
    backup_count : int
        Rotated files kept.
    console : bool
        Also log to stderr.
    color : bool
        Color console level names.
    quiet : iterable of str
        Logger names pinned to WARNING.
    context : dict, optional
        Fields pushed for the rest of the process (e.g. ``app``).

    Returns
    -------
    list of logging.Handler
        The handlers now attached to the root logger.
    """
    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    root.setLevel(level.upper())

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(ContextFormatter("human", use_color=color))
        _installed.append(stream)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        if max_bytes > 0:
            handler: logging.Handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        else:
            handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(ContextFormatter(file_format, use_color=False))
        _installed.append(handler)

    for handler in _installed:
        root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)

    if context:
        push_context(**context)
    return list(_installed)


def setup_from_config(logging_cfg: Any, **context: Any) -> List[logging.Handler]:
    """Configure logging from the ``logging`` section of ``machine.yaml``."""
    return setup_logging(
        logging_cfg.level,
        logging_cfg.file or None,
        file_format=logging_cfg.format,
        max_bytes=logging_cfg.max_bytes,
        backup_count=logging_cfg.backup_count,
        context=context or None,
    )


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def push_context(**fields: Any) -> None:
    """Tag subsequent records on this thread with *fields*."""
    _context.set({**_context.get(), **fields})


def pop_context(keys: Optional[Iterable[str]] = None) -> None:
    """Drop *keys* from the context, or all fields when None."""
    if keys is None:
        _context.set({})
        return
    remaining = dict(_context.get())
    for key in keys:
        remaining.pop(key, None)
    _context.set(remaining)


def get_context() -> Dict[str, Any]:
    return dict(_context.get())


def install_excepthook() -> None:
    """Log uncaught exceptions at CRITICAL before the interpreter exits.

    Ctrl+C keeps the default traceback-free behaviour.
    """
    def _hook(exc_type, exc_value, tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, tb)
            return
        logging.getLogger("plotter_control").critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, tb)
        )

    sys.excepthook = _hook
