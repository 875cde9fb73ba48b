"""
Frame sources for the live CLI.

``open_source("synthetic")`` gives a deterministic moving-gradient feed that
always works (CI/headless); camera indices and video paths go through OpenCV.
Frames are BGR ``uint8`` arrays of shape (H, W, 3).
"""

from __future__ import annotations

import logging
import math
import os
import time
from typing import Any, Iterator, Optional, Protocol, Tuple, Union

import numpy as np

os.environ.setdefault("OPENCV_VIDEOIO_ENABLE_OBSENSOR", "0")

try:
    import cv2  # type: ignore
except Exception:  # pragma: no cover
    cv2 = None  # type: ignore

LOGGER = logging.getLogger(__name__)

FramePacket = Tuple[np.ndarray, float]


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class FrameSource(Protocol):
    def frames(self) -> Iterator[FramePacket]: ...
    def release(self) -> None: ...


class _SyntheticSource:
    """Deterministic gradient with a drifting bright disc as the foreground."""

    def __init__(self, size: Tuple[int, int] = (640, 480), fps: Optional[int] = 30) -> None:
        self.w, self.h = int(size[0]), int(size[1])
        if self.w <= 0 or self.h <= 0:
            raise ValueError(f"invalid synthetic size {self.w}x{self.h}")
        self.fps = max(1, int(fps)) if fps else None
        self._n = 0
        y = np.linspace(0, 255, self.h, dtype=np.float32)[:, None]
        x = np.linspace(0, 255, self.w, dtype=np.float32)[None, :]
        self._base = ((y + x) / 2.0).astype(np.uint8)
        self._yy, self._xx = np.mgrid[0 : self.h, 0 : self.w]
        _log("live.camera.synthetic", size=f"{self.w}x{self.h}", fps=self.fps)

    def render(self, index: int) -> np.ndarray:
        phase = index / 30.0
        cx = self.w * (0.5 + 0.3 * math.sin(phase))
        cy = self.h * (0.5 + 0.2 * math.cos(phase * 0.7))
        radius = 0.2 * min(self.w, self.h)
        disc = (self._xx - cx) ** 2 + (self._yy - cy) ** 2 <= radius * radius
        b = self._base.copy()
        g = ((self._base.astype(np.int16) + index) % 256).astype(np.uint8)
        r = self._base[:, ::-1].copy()
        frame = np.dstack([b, g, r])
        frame[disc] = 255
        return frame

    def frames(self) -> Iterator[FramePacket]:
        period = 1.0 / self.fps if self.fps else 0.0
        while True:
            now = time.time()
            frame = self.render(self._n)
            self._n += 1
            yield frame, now
            if period:
                delay = period - (time.time() - now)
                if delay > 0:
                    time.sleep(delay)

    def release(self) -> None:
        return


class _CVCamera:
    cap: Any

    def __init__(self, source: Union[str, int], width: Optional[int] = None, height: Optional[int] = None) -> None:
        if cv2 is None:
            raise RuntimeError("OpenCV not available for camera capture.")
        self._source = str(source)
        if isinstance(source, str):
            try:
                src_val: Union[str, int] = int(source)
            except ValueError:
                src_val = source
        else:
            src_val = source
        _log("live.camera.open.start", source=self._source, width=width, height=height)
        self.cap = cv2.VideoCapture(src_val)
        if not self.cap or not self.cap.isOpened():
            raise RuntimeError(f"Failed to open camera/source: {source}")
        if width:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(width))
        if height:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(height))
        self._is_file = not isinstance(src_val, int)

    def frames(self) -> Iterator[FramePacket]:
        misses = 0
        while True:
            ok, frame = self.cap.read()
            if not ok or frame is None:
                # Files end; cameras sometimes need a few warm-up reads.
                if self._is_file:
                    return
                misses += 1
                if misses > 30:
                    raise RuntimeError(f"camera {self._source} stopped delivering frames")
                time.sleep(0.01)
                continue
            misses = 0
            arr = np.asarray(frame)
            if arr.ndim == 2:
                arr = cv2.cvtColor(arr, cv2.COLOR_GRAY2BGR)
            yield np.ascontiguousarray(arr[:, :, :3]), time.time()

    def release(self) -> None:
        try:
            self.cap.release()
        except Exception:
            LOGGER.debug("live.camera.release failed", exc_info=True)


def synthetic_source(size: Tuple[int, int] = (640, 480), fps: Optional[int] = 30) -> FrameSource:
    return _SyntheticSource(size=size, fps=fps)


def open_source(
    source: Union[str, int],
    *,
    size: Optional[Tuple[int, int]] = None,
    fps: Optional[int] = 30,
) -> FrameSource:
    """``synthetic`` → generated frames; anything else → OpenCV camera index or path."""
    if isinstance(source, str) and source.strip().lower().startswith("synthetic"):
        return synthetic_source(size=size or (640, 480), fps=fps)
    width, height = size if size else (None, None)
    return _CVCamera(source, width=width, height=height)
