"""
Fused frame preprocessing for the mask filter.

``FrameAccelerator.preprocess`` takes a raw BGR/BGRA pixel buffer (rows may be
padded, hence the explicit stride), converts it to RGB, resizes it bilinearly
to the network's working size, applies the per-channel affine normalisation
``(value - mean[c]) / scale[c]`` and writes the result straight into a
pre-allocated input tensor, channel-major or pixel-major.

Scratch storage only grows: a larger frame raises the high-water mark, a
smaller one reuses what is already there. The CPU path uses OpenCV; the GPU
path uses PyTorch CUDA with a persistent device staging buffer.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import numpy as np

try:
    import cv2  # type: ignore
except Exception:  # pragma: no cover
    cv2 = None  # type: ignore

try:
    import torch  # type: ignore
    import torch.nn.functional as F  # type: ignore
except Exception:  # pragma: no cover
    torch = None  # type: ignore
    F = None  # type: ignore

from penumbra.models.base import PreprocessParams

LOGGER = logging.getLogger(__name__)

_DEVICES = ("auto", "cpu", "gpu")


def _cuda_ready() -> bool:
    if torch is None:
        return False
    try:
        return bool(torch.cuda.is_available())
    except Exception:
        return False


def resolve_device(device: Optional[str]) -> str:
    """Map ``auto``/``cpu``/``gpu`` to the concrete path that will run."""
    choice = (device or "auto").strip().lower()
    if choice not in _DEVICES:
        raise ValueError(f"preprocess device must be one of {', '.join(_DEVICES)}, got {device!r}")
    if choice == "auto":
        return "gpu" if _cuda_ready() else "cpu"
    if choice == "gpu" and not _cuda_ready():
        raise RuntimeError("GPU preprocessing requested but torch.cuda is not available.")
    return choice


class FrameAccelerator:
    """
    Color conversion, bilinear resize and normalisation in one call.

    Parameters
    ----------
    device:
        ``"cpu"`` (OpenCV), ``"gpu"`` (PyTorch CUDA) or ``"auto"`` (GPU when
        CUDA is available).
    torch_device:
        Torch device holding the staging buffer on the GPU path.
    """

    def __init__(self, device: str = "auto", *, torch_device: str = "cuda") -> None:
        self.device = resolve_device(device)
        if self.device == "cpu" and cv2 is None:
            raise RuntimeError("OpenCV is required for CPU preprocessing.")
        self._scratch: Dict[str, np.ndarray] = {}
        self._torch_device = torch_device
        self._device_staging: Any = None
        self._device_capacity = 0
        LOGGER.info("preprocess.device device=%s", self.device)

    # ------------------------------------------------------------------ helpers
    @property
    def capacity(self) -> int:
        """Bytes of host scratch currently held (monotonic)."""
        return int(sum(buf.nbytes for buf in self._scratch.values()))

    @property
    def device_capacity(self) -> int:
        return int(self._device_capacity)

    def _scratch_view(self, slot: str, shape: Tuple[int, ...], dtype: Any) -> np.ndarray:
        need = int(np.prod(shape)) * np.dtype(dtype).itemsize
        buf = self._scratch.get(slot)
        if buf is None or buf.size < need:
            buf = np.empty(need, dtype=np.uint8)
            self._scratch[slot] = buf
            LOGGER.debug("preprocess.scratch.grow slot=%s bytes=%d", slot, need)
        return buf[:need].view(dtype).reshape(shape)

    def _device_buffer(self, nbytes: int) -> Any:
        if self._device_staging is None or self._device_capacity < nbytes:
            self._device_staging = torch.empty(nbytes, dtype=torch.uint8, device=self._torch_device)
            self._device_capacity = nbytes
            LOGGER.debug("preprocess.staging.grow bytes=%d", nbytes)
        return self._device_staging

    def _packed(self, src: np.ndarray) -> np.ndarray:
        """Tightly packed pixels; padded rows are repacked into scratch."""
        if src.flags.c_contiguous:
            return src
        packed = self._scratch_view("packed", src.shape, np.uint8)
        np.copyto(packed, src)
        return packed

    @staticmethod
    def _source_view(
        source: Any, width: int, height: int, stride: int, channels: int
    ) -> np.ndarray:
        if channels not in (3, 4):
            raise ValueError(f"channels must be 3 (BGR) or 4 (BGRA), got {channels}")
        if width <= 0 or height <= 0:
            raise ValueError(f"invalid source size {width}x{height}")
        row_bytes = width * channels
        if stride < row_bytes:
            raise ValueError(f"source stride {stride} is smaller than one row ({row_bytes} bytes)")
        flat = np.asarray(source, dtype=np.uint8).reshape(-1)
        required = stride * (height - 1) + row_bytes
        if flat.size < required:
            raise ValueError(f"source buffer holds {flat.size} bytes, need at least {required}")
        return np.lib.stride_tricks.as_strided(
            flat, shape=(height, width, channels), strides=(stride, channels, 1)
        )

    # ------------------------------------------------------------------ public
    def preprocess(
        self,
        source: Any,
        source_width: int,
        source_height: int,
        source_stride: int,
        dest: np.ndarray,
        dest_width: int,
        dest_height: int,
        params: PreprocessParams,
        *,
        channels: int = 4,
    ) -> None:
        src = self._source_view(source, int(source_width), int(source_height), int(source_stride), int(channels))
        dw, dh = int(dest_width), int(dest_height)
        if dw <= 0 or dh <= 0:
            raise ValueError(f"invalid destination size {dw}x{dh}")
        if dest.size != dw * dh * 3:
            raise ValueError(f"destination holds {dest.size} values, expected {dw * dh * 3}")
        if not dest.flags.c_contiguous:
            raise ValueError("destination tensor must be C-contiguous")

        if self.device == "gpu":
            result = self._run_gpu(src, dw, dh, params)
        else:
            result = self._run_cpu(src, dw, dh, params)

        target = dest.reshape((3, dh, dw) if params.channel_major else (dh, dw, 3))
        np.copyto(target, result, casting="unsafe")

    def preprocess_frame(
        self,
        frame: np.ndarray,
        dest: np.ndarray,
        dest_width: int,
        dest_height: int,
        params: PreprocessParams,
    ) -> None:
        """Convenience wrapper for (H, W, C) frames straight from OpenCV capture."""
        image = np.asarray(frame, dtype=np.uint8)
        if image.ndim != 3:
            raise ValueError(f"expected an (H, W, C) frame, got shape {image.shape}")
        if not image.flags.c_contiguous:
            image = np.ascontiguousarray(image)
        height, width, channels = image.shape
        self.preprocess(
            image,
            width,
            height,
            int(image.strides[0]),
            dest,
            dest_width,
            dest_height,
            params,
            channels=channels,
        )

    # ------------------------------------------------------------------ paths
    def _run_cpu(self, src: np.ndarray, dw: int, dh: int, params: PreprocessParams) -> np.ndarray:
        height, width, channels = src.shape
        rgb = self._scratch_view("rgb", (height, width, 3), np.uint8)
        code = cv2.COLOR_BGRA2RGB if channels == 4 else cv2.COLOR_BGR2RGB
        cv2.cvtColor(self._packed(src), code, dst=rgb)
        if (width, height) != (dw, dh):
            resized = self._scratch_view("resized", (dh, dw, 3), np.uint8)
            cv2.resize(rgb, (dw, dh), dst=resized, interpolation=cv2.INTER_LINEAR)
        else:
            resized = rgb
        out = self._scratch_view("float", (dh, dw, 3), np.float32)
        np.subtract(resized, np.asarray(params.mean, dtype=np.float32), out=out)
        np.divide(out, np.asarray(params.scale, dtype=np.float32), out=out)
        return out.transpose(2, 0, 1) if params.channel_major else out

    def _run_gpu(self, src: np.ndarray, dw: int, dh: int, params: PreprocessParams) -> np.ndarray:
        height, width, channels = src.shape
        nbytes = height * width * channels
        staging = self._device_buffer(nbytes)[:nbytes].view(height, width, channels)
        staging.copy_(torch.from_numpy(self._packed(src)))
        rgb = staging[..., :3].flip(-1)
        x = rgb.permute(2, 0, 1).unsqueeze(0).float()
        if (width, height) != (dw, dh):
            x = F.interpolate(x, size=(dh, dw), mode="bilinear", align_corners=False)
        mean = torch.tensor(params.mean, dtype=torch.float32, device=x.device).view(1, 3, 1, 1)
        scale = torch.tensor(params.scale, dtype=torch.float32, device=x.device).view(1, 3, 1, 1)
        x = (x - mean) / scale
        out = x[0] if params.channel_major else x[0].permute(1, 2, 0)
        return out.contiguous().cpu().numpy()
