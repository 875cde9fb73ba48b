"""
Robust Video Matting (MobileNetV3 backbone) descriptor.

Graph IO, in order:
    inputs  src, r1i, r2i, r3i, r4i, downsample_ratio
    outputs fgr, pha, r1o, r2o, r3o, r4o

``fgr`` is never requested; only the alpha matte and the four ConvGRU states
are read back. The model runs its backbone at ``downsample_ratio`` of the
working resolution and its guided-filter refiner upsamples ``pha`` back to the
full working size, so ``src``/``pha`` follow the working resolution while the
recurrent states follow the internal one.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from .base import NetworkDescriptor, PreprocessParams, TensorShape, halve_ceil

REC_CHANNELS: Tuple[int, int, int, int] = (16, 20, 40, 64)
DEFAULT_DOWNSAMPLE_RATIO = 0.25


class RobustVideoMatting(NetworkDescriptor):
    key = "rvm"
    label = "Robust Video Matting"
    model_file = "rvm_mobilenetv3_fp32.onnx"
    default_size = (1920, 1080)
    input_names = ("src", "r1i", "r2i", "r3i", "r4i", "downsample_ratio")
    expected_inputs = 6
    expected_outputs = 5
    outputs_alpha_matte = True
    skip_leading_outputs = 1
    state_slots = ((1, 1), (2, 2), (3, 3), (4, 4))

    RATIO_INPUT = 5

    def __init__(self, downsample_ratio: float = DEFAULT_DOWNSAMPLE_RATIO) -> None:
        ratio = float(downsample_ratio)
        if not (0.0 < ratio <= 1.0):
            raise ValueError(f"downsample_ratio must be in (0, 1], got {downsample_ratio!r}")
        self.downsample_ratio = ratio

    def internal_size(self, width: int, height: int) -> Tuple[int, int]:
        return int(math.floor(width * self.downsample_ratio)), int(math.floor(height * self.downsample_ratio))

    def state_sizes(self, width: int, height: int) -> List[Tuple[int, int]]:
        """(height, width) of each recurrent level, one stride-2 stage apart."""
        w, h = self.internal_size(width, height)
        sizes: List[Tuple[int, int]] = []
        for _ in REC_CHANNELS:
            h = halve_ceil(h)
            w = halve_ceil(w)
            sizes.append((h, w))
        return sizes

    def _shapes(self, width: int, height: int) -> Tuple[List[TensorShape], List[TensorShape]]:
        states = [[1, ch, h, w] for ch, (h, w) in zip(REC_CHANNELS, self.state_sizes(width, height))]
        inputs: List[TensorShape] = [[1, 3, height, width]] + [list(s) for s in states] + [[1]]
        outputs: List[TensorShape] = [[1, 1, height, width]] + [list(s) for s in states]
        return inputs, outputs

    def derive_shapes(self, session: Any, width: int, height: int) -> Tuple[List[TensorShape], List[TensorShape]]:
        graph_inputs, graph_outputs = super().derive_shapes(session, width, height)
        inputs, outputs = self._shapes(width, height)
        # Anything beyond the known layout keeps the generic resolution.
        return inputs + graph_inputs[len(inputs):], outputs + graph_outputs[len(outputs):]

    def get_profile_shapes(self, width: int, height: int) -> Dict[str, TensorShape]:
        inputs, _ = self._shapes(width, height)
        return dict(zip(self.input_names or (), inputs))

    def get_preprocess_params(self) -> PreprocessParams:
        return PreprocessParams(mean=(0.0, 0.0, 0.0), scale=(255.0, 255.0, 255.0), channel_major=True)

    def set_extra_scalar_inputs(self, input_buffers: Sequence[np.ndarray]) -> None:
        input_buffers[self.RATIO_INPUT].reshape(-1)[0] = self.downsample_ratio
