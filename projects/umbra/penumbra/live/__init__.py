"""
Penumbra live package.

Building blocks for running a mask network on a live feed:
  - read frames from a camera, video file or synthetic source,
  - preprocess them straight into the session's input tensor,
  - run inference on a worker thread and hand back the newest mask.

The CLI entrypoint lives in penumbra.cli.
"""

from __future__ import annotations

from .camera import FrameSource, open_source, synthetic_source
from .config import FilterSettings, parse_size
from .filter import MaskFilter, quantize_mask
from .preprocess import FrameAccelerator

__all__ = [
    "FilterSettings",
    "FrameAccelerator",
    "FrameSource",
    "MaskFilter",
    "open_source",
    "parse_size",
    "quantize_mask",
    "synthetic_source",
]
