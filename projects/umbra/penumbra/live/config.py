"""
Filter settings for live mask inference.

``FilterSettings`` is the single place that normalises user input (CLI flags
or ``PENUMBRA_*`` environment variables) into typed values. Buffering and
precision left as ``None`` mean "use the GPU profile's suggestion".
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple, Union

from penumbra.models import build_descriptor, canonical_model_key
from penumbra.models.base import NetworkDescriptor
from penumbra.runtime.gpu_profile import BufferingMode, GpuProfile, PrecisionMode
from penumbra.runtime.session_builder import AccelerationMode

SizeLike = Union[str, int, Tuple[int, int], None]

_SIZE_SPLIT = re.compile(r"[x×,\s]+", re.IGNORECASE)
_PREPROCESS_DEVICES = {"auto", "cpu", "gpu"}


def parse_size(value: SizeLike) -> Optional[Tuple[int, int]]:
    """Accept ``640``, ``640x480``, ``640,480`` or a (w, h) pair; ``None``/empty passes through."""
    if value is None:
        return None
    if isinstance(value, tuple):
        if len(value) != 2:
            raise ValueError(f"size must have two values, got {value!r}")
        w, h = int(value[0]), int(value[1])
    elif isinstance(value, int):
        w = h = int(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        parts = [p for p in _SIZE_SPLIT.split(text) if p]
        try:
            dims = [int(p) for p in parts]
        except ValueError:
            raise ValueError(f"cannot parse size {value!r}; use WIDTHxHEIGHT") from None
        if len(dims) == 1:
            w = h = dims[0]
        elif len(dims) == 2:
            w, h = dims
        else:
            raise ValueError(f"cannot parse size {value!r}; use WIDTHxHEIGHT")
    if w <= 0 or h <= 0:
        raise ValueError(f"size must be positive, got {w}x{h}")
    return w, h


def parse_buffering(value: Union[str, int, BufferingMode, None]) -> Optional[BufferingMode]:
    if value is None or isinstance(value, BufferingMode):
        return value
    token = str(value).strip().lower()
    if not token or token == "auto":
        return None
    table = {"double": BufferingMode.DOUBLE, "2": BufferingMode.DOUBLE, "triple": BufferingMode.TRIPLE, "3": BufferingMode.TRIPLE}
    if token not in table:
        raise ValueError(f"buffering must be double or triple, got {value!r}")
    return table[token]


def parse_precision(value: Union[str, PrecisionMode, None]) -> Optional[PrecisionMode]:
    if value is None or isinstance(value, PrecisionMode):
        return value
    token = str(value).strip().lower()
    if not token or token == "auto":
        return None
    aliases = {"half": "fp16", "float16": "fp16", "float": "fp32", "float32": "fp32"}
    try:
        return PrecisionMode(aliases.get(token, token))
    except ValueError:
        raise ValueError(f"precision must be fp16 or fp32, got {value!r}") from None


@dataclass
class FilterSettings:
    model: str = "rvm"
    model_path: Optional[Union[str, Path]] = None
    acceleration: Union[str, AccelerationMode] = AccelerationMode.CUDA
    working_size: SizeLike = None
    downsample_ratio: Optional[float] = None
    buffering: Union[str, int, BufferingMode, None] = None
    precision: Union[str, PrecisionMode, None] = None
    preprocess_device: str = "auto"

    def __post_init__(self) -> None:
        self.model = canonical_model_key(self.model)
        if self.model_path is not None and str(self.model_path).strip():
            self.model_path = Path(self.model_path).expanduser()
        else:
            self.model_path = None
        self.acceleration = AccelerationMode.parse(self.acceleration)
        self.working_size = parse_size(self.working_size)
        if self.downsample_ratio is not None:
            ratio = float(self.downsample_ratio)
            if not (0.0 < ratio <= 1.0):
                raise ValueError(f"downsample_ratio must be in (0, 1], got {self.downsample_ratio!r}")
            self.downsample_ratio = ratio
        self.buffering = parse_buffering(self.buffering)
        self.precision = parse_precision(self.precision)
        device = (self.preprocess_device or "auto").strip().lower()
        if device not in _PREPROCESS_DEVICES:
            raise ValueError(f"preprocess device must be auto, cpu or gpu, got {self.preprocess_device!r}")
        self.preprocess_device = device

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: object) -> "FilterSettings":
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            raw = env.get(name)
            if raw is None:
                return None
            raw = raw.strip()
            return raw or None

        values: dict = {
            "model": _get("PENUMBRA_MODEL") or "rvm",
            "model_path": _get("PENUMBRA_MODEL_PATH"),
            "acceleration": _get("PENUMBRA_ACCELERATION") or AccelerationMode.CUDA,
            "working_size": _get("PENUMBRA_SIZE"),
            "buffering": _get("PENUMBRA_BUFFERING"),
            "precision": _get("PENUMBRA_PRECISION"),
            "preprocess_device": _get("PENUMBRA_PREPROCESS") or "auto",
        }
        ratio = _get("PENUMBRA_DOWNSAMPLE")
        if ratio is not None:
            try:
                values["downsample_ratio"] = float(ratio)
            except ValueError:
                raise ValueError(f"PENUMBRA_DOWNSAMPLE must be a number, got {ratio!r}") from None
        for key, value in overrides.items():
            if value is not None:
                values[key] = value
        return cls(**values)  # type: ignore[arg-type]

    # ------------------------------------------------------------------ resolution
    def descriptor(self) -> NetworkDescriptor:
        return build_descriptor(self.model, downsample_ratio=self.downsample_ratio)

    def resolved_buffering(self, profile: Optional[GpuProfile]) -> BufferingMode:
        if self.buffering is not None:
            return self.buffering  # type: ignore[return-value]
        return profile.buffering if profile is not None else BufferingMode.DOUBLE

    def resolved_precision(self, profile: Optional[GpuProfile]) -> PrecisionMode:
        if self.precision is not None:
            return self.precision  # type: ignore[return-value]
        return profile.precision if profile is not None else PrecisionMode.FP32
