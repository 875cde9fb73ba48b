"""
Network descriptor contract.

A descriptor tells the session builder and the mask filter everything that is
specific to one network family: which graph inputs/outputs matter, how dynamic
dimensions become concrete, how frames are normalised, which output channel
carries the mask, and which tensors form recurrent state between frames.

Variants subclass :class:`NetworkDescriptor` directly and override only what
differs; there is no deeper hierarchy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

TensorShape = List[int]

__all__ = [
    "NetworkDescriptor",
    "PreprocessParams",
    "TensorShape",
    "halve_ceil",
    "is_dynamic_dim",
]


@dataclass(frozen=True)
class PreprocessParams:
    """Per-channel affine normalisation ``(pixel - mean[c]) / scale[c]`` in RGB order."""

    mean: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    scale: Tuple[float, float, float] = (255.0, 255.0, 255.0)
    channel_major: bool = True


def is_dynamic_dim(value: Any) -> bool:
    return not (isinstance(value, (int, np.integer)) and not isinstance(value, bool) and int(value) > 0)


def halve_ceil(value: int) -> int:
    """One stride-2 stage: ceil(value / 2)."""
    return (int(value) + 1) // 2


def _resolve_shape(raw: Sequence[Any], width: int, height: int, channels: int) -> TensorShape:
    dims = list(raw)
    if len(dims) == 4:
        fill = [1, channels, height, width]
    elif len(dims) == 3:
        fill = [1, height, width]
    elif len(dims) == 2:
        fill = [height, width]
    else:
        fill = [1] * len(dims)
    return [int(fill[i]) if is_dynamic_dim(d) else int(d) for i, d in enumerate(dims)]


class NetworkDescriptor:
    key: str = "generic"
    label: str = "Generic"
    model_file: str = ""
    default_size: Tuple[int, int] = (640, 480)
    # When set, the built session must expose exactly these inputs in this order.
    input_names: Optional[Tuple[str, ...]] = None
    expected_inputs: Optional[int] = None
    expected_outputs: Optional[int] = None
    outputs_alpha_matte: bool = False
    skip_leading_outputs: int = 0
    output_channel: int = 0
    # (input index, output index) pairs fed back after every inference.
    state_slots: Tuple[Tuple[int, int], ...] = ()

    # ------------------------------------------------------------------ graph IO
    def _io_nodes(self, session: Any) -> Tuple[List[Any], List[Any]]:
        inputs = list(session.get_inputs())
        outputs = list(session.get_outputs())[self.skip_leading_outputs:]
        return inputs, outputs

    def name_io(self, session: Any) -> Tuple[List[str], List[str]]:
        inputs, outputs = self._io_nodes(session)
        return [str(n.name) for n in inputs], [str(n.name) for n in outputs]

    def derive_shapes(self, session: Any, width: int, height: int) -> Tuple[List[TensorShape], List[TensorShape]]:
        """Copy graph shapes, replacing dynamic batch/channel/spatial dims."""
        inputs, outputs = self._io_nodes(session)
        input_shapes = [_resolve_shape(list(n.shape or []), width, height, channels=3) for n in inputs]
        output_shapes = [_resolve_shape(list(n.shape or []), width, height, channels=1) for n in outputs]
        return input_shapes, output_shapes

    def get_profile_shapes(self, width: int, height: int) -> Dict[str, TensorShape]:
        return {}

    def network_input_size(self, input_shapes: Sequence[TensorShape]) -> Tuple[int, int]:
        """(width, height) of the primary image tensor."""
        shape = input_shapes[0]
        if self.get_preprocess_params().channel_major:
            return int(shape[-1]), int(shape[-2])
        return int(shape[-2]), int(shape[-3])

    # ------------------------------------------------------------------ per frame
    def get_preprocess_params(self) -> PreprocessParams:
        return PreprocessParams()

    def set_extra_scalar_inputs(self, input_buffers: Sequence[np.ndarray]) -> None:
        return None

    def extract_output(self, output_shapes: Sequence[TensorShape], output_buffers: Sequence[np.ndarray]) -> np.ndarray:
        shape = [int(d) for d in output_shapes[0]]
        flat = output_buffers[0].reshape(-1)
        if len(shape) == 4:
            _, c, h, w = shape
            plane = flat.reshape(c, h, w)[self.output_channel]
        elif len(shape) == 3:
            plane = flat.reshape(shape[-2], shape[-1])
        else:
            plane = flat.reshape(shape[-2:])
        return np.array(plane, dtype=np.float32, copy=True)

    def carry_state(self, output_buffers: Sequence[np.ndarray], input_buffers: Sequence[np.ndarray]) -> None:
        for in_idx, out_idx in self.state_slots:
            src = output_buffers[out_idx]
            dst = input_buffers[in_idx]
            if src.size != dst.size:
                raise ValueError(
                    f"recurrent slot size mismatch: output[{out_idx}]={src.size} input[{in_idx}]={dst.size}"
                )
            np.copyto(dst, src.reshape(dst.shape))

    def postprocess(self, image: np.ndarray) -> np.ndarray:
        np.clip(image, 0.0, 1.0, out=image)
        return image

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r})"
