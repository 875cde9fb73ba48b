"""
GPU capability detection.

``detect()`` looks at the first CUDA device once at startup and derives the
buffering/precision defaults the rest of the pipeline starts from. The
resulting :class:`GpuProfile` is immutable and is passed down explicitly;
nothing here keeps process-wide state.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Tuple

try:
    import torch  # type: ignore
except Exception:  # pragma: no cover
    torch = None  # type: ignore

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BufferingMode",
    "GpuArchitecture",
    "GpuProfile",
    "PrecisionMode",
    "architecture_label",
    "classify",
    "detect",
]


class GpuArchitecture(enum.IntEnum):
    """Capability class; values are the minimum SM score of the class."""

    UNKNOWN = 0
    TURING = 75
    AMPERE = 80
    ADA_LOVELACE = 89


class BufferingMode(enum.IntEnum):
    DOUBLE = 2
    TRIPLE = 3


class PrecisionMode(str, enum.Enum):
    FP32 = "fp32"
    FP16 = "fp16"


# class -> (buffering, precision)
_DEFAULTS = {
    GpuArchitecture.ADA_LOVELACE: (BufferingMode.TRIPLE, PrecisionMode.FP16),
    GpuArchitecture.AMPERE: (BufferingMode.DOUBLE, PrecisionMode.FP16),
    GpuArchitecture.TURING: (BufferingMode.DOUBLE, PrecisionMode.FP32),
    GpuArchitecture.UNKNOWN: (BufferingMode.DOUBLE, PrecisionMode.FP32),
}

_LABELS = {
    GpuArchitecture.ADA_LOVELACE: "Ada Lovelace+",
    GpuArchitecture.AMPERE: "Ampere",
    GpuArchitecture.TURING: "Turing",
    GpuArchitecture.UNKNOWN: "Unknown",
}


@dataclass(frozen=True)
class GpuProfile:
    name: str
    device_id: int
    compute_capability: Tuple[int, int]
    total_memory_mb: int
    architecture: GpuArchitecture
    buffering: BufferingMode
    precision: PrecisionMode

    @property
    def sm(self) -> int:
        major, minor = self.compute_capability
        return major * 10 + minor

    def describe(self) -> str:
        return (
            f"{self.name} (sm_{self.sm}, {self.total_memory_mb}MB, "
            f"{architecture_label(self.architecture)})"
        )


def architecture_label(arch: GpuArchitecture) -> str:
    return _LABELS.get(arch, "Unknown")


def classify(major: int, minor: int) -> GpuArchitecture:
    """Map a compute capability onto the monotonic capability classes."""
    sm = int(major) * 10 + int(minor)
    for arch in (GpuArchitecture.ADA_LOVELACE, GpuArchitecture.AMPERE, GpuArchitecture.TURING):
        if sm >= int(arch):
            return arch
    return GpuArchitecture.UNKNOWN


def _gpu_disabled() -> bool:
    return os.getenv("PENUMBRA_DISABLE_GPU", "").strip().lower() in {"1", "true", "yes", "on"}


def _query_properties(device_id: int) -> Optional[Any]:
    if torch is None:
        return None
    try:
        if not torch.cuda.is_available():
            return None
        if int(torch.cuda.device_count()) <= device_id:
            return None
        return torch.cuda.get_device_properties(device_id)
    except Exception as exc:
        LOGGER.warning("gpu.detect.failed reason=%s", exc)
        return None


def detect(device_id: int = 0) -> Optional[GpuProfile]:
    """
    Query the first CUDA device and derive its policy defaults.

    Returns ``None`` when no accelerator is usable; the caller then decides on
    a CPU-only or disabled path.
    """
    if _gpu_disabled():
        LOGGER.info("gpu.detect.disabled env=PENUMBRA_DISABLE_GPU")
        return None
    props = _query_properties(device_id)
    if props is None:
        LOGGER.warning("gpu.detect.none no CUDA-capable device")
        return None

    major = int(getattr(props, "major", 0))
    minor = int(getattr(props, "minor", 0))
    arch = classify(major, minor)
    buffering, precision = _DEFAULTS[arch]
    profile = GpuProfile(
        name=str(getattr(props, "name", "CUDA")),
        device_id=device_id,
        compute_capability=(major, minor),
        total_memory_mb=int(getattr(props, "total_memory", 0)) // (1024 * 1024),
        architecture=arch,
        buffering=buffering,
        precision=precision,
    )
    LOGGER.info("gpu.detect %s", profile.describe())
    return profile
