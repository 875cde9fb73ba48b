"""File-only logging for Penumbra.

The capture loop and the inference worker must never block on a console, so
``setup_logging`` installs exactly one :class:`logging.FileHandler` on the root
logger and nothing else. Modules log through ``logging.getLogger(__name__)``.

Log file lookup, first writable wins:

1. ``PENUMBRA_LOG_FILE``
2. ``$XDG_STATE_HOME/penumbra/penumbra.log`` (``%LOCALAPPDATA%`` on Windows)
3. ``~/.local/state/penumbra/penumbra.log``
4. ``<tempdir>/penumbra.log``
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional, cast

os.environ.setdefault("ORT_LOGGING_LEVEL", "3")
try:
    import onnxruntime as _ort  # type: ignore

    if hasattr(_ort, "set_default_logger_severity"):
        cast(Any, _ort).set_default_logger_severity(3)  # type: ignore[attr-defined]
except Exception:
    pass

__all__ = ["get_log_path", "setup_logging"]

LOG_NAME = "penumbra.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_log_path: Optional[Path] = None


def _candidate_log_paths(file_env: str) -> List[Path]:
    paths: List[Path] = []
    override = os.getenv(file_env)
    if override:
        paths.append(Path(override).expanduser())
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            paths.append(Path(base) / "penumbra" / LOG_NAME)
    else:
        state = os.getenv("XDG_STATE_HOME")
        if state:
            paths.append(Path(state) / "penumbra" / LOG_NAME)
    try:
        paths.append(Path.home() / ".local" / "state" / "penumbra" / LOG_NAME)
    except RuntimeError:
        pass
    paths.append(Path(tempfile.gettempdir()) / LOG_NAME)
    return paths


def _open_handler(candidates: List[Path]) -> logging.FileHandler:
    last_exc: Optional[BaseException] = None
    for path in candidates:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            last_exc = exc
    raise OSError(f"no writable log location among {[str(p) for p in candidates]}: {last_exc}")


def _level_from_env(level_env: str) -> int:
    level = logging.getLevelName(os.getenv(level_env, "WARNING").strip().upper())
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(
    *,
    level_env: str = "PENUMBRA_LOG_LEVEL",
    file_env: str = "PENUMBRA_LOG_FILE",
) -> Path:
    """
    Route all records to a single log file and return its path.

    The level comes from ``PENUMBRA_LOG_LEVEL`` (default WARNING, so provider
    fallbacks are always recorded). Calling it again is a no-op.
    """
    global _log_path

    if _log_path is not None:
        return _log_path

    handler = _open_handler(_candidate_log_paths(file_env))
    level = _level_from_env(level_env)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    _log_path = Path(handler.baseFilename)
    return _log_path


def get_log_path() -> Optional[Path]:
    """Path of the active log file, ``None`` before ``setup_logging``."""
    return _log_path
