"""
Lightweight package init.

Avoid importing heavy optional deps (onnxruntime, torch, OpenCV) at import
time. Submodules import what they need locally.

Exports:
    __version__ : best-effort package version (falls back to "0+unknown")
    ROOT        : project root (./projects/umbra)
    models_dir  : helper that honours PENUMBRA_MODELS_DIR
"""

from __future__ import annotations

import os
from pathlib import Path

try:
    from importlib.metadata import version as _pkg_version
except Exception:  # pragma: no cover
    _pkg_version = None  # type: ignore[assignment]

__all__ = ["__version__", "ROOT", "models_dir"]


def _detect_version() -> str:
    if _pkg_version is None:
        return "0+unknown"
    for dist in ("umbra", "Umbra"):
        try:
            return _pkg_version(dist)
        except Exception:
            continue
    return "0+unknown"


ROOT = Path(__file__).resolve().parents[1]

__version__ = _detect_version()


def models_dir() -> Path:
    """
    Return the directory searched for bare model file names.

    ``PENUMBRA_MODELS_DIR`` wins; otherwise ``projects/umbra/models``.
    """
    override = os.getenv("PENUMBRA_MODELS_DIR")
    if override:
        return Path(override).expanduser()
    return ROOT / "models"
