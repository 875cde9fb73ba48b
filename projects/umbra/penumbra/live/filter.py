"""
MaskFilter: one network, one session, one worker.

Owns the :class:`SessionHandle`, the frame accelerator and the
:class:`AsyncInferenceQueue`. ``infer`` is the per-frame function the worker
runs; it always follows the same order::

    preprocess -> set_extra_scalar_inputs -> run -> extract_output
    -> carry_state -> postprocess -> uint8 mask

Settings changes go through ``rebuild``: the queue is stopped, the session is
rebuilt from scratch (recurrent state starts at zero again) and the queue is
restarted if it was running. Sessions are never swapped under a live worker.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from penumbra.runtime.gpu_profile import GpuProfile
from penumbra.runtime.inference_queue import AsyncInferenceQueue, QueueStats
from penumbra.runtime.session_builder import SessionBuilder, SessionError, SessionHandle
from penumbra.runtime.telemetry import Telemetry

from .config import FilterSettings
from .preprocess import FrameAccelerator

LOGGER = logging.getLogger(__name__)

STATUS_DISABLED = "disabled"
STATUS_READY = "ready"
STATUS_DEGRADED = "degraded"


def quantize_mask(image: np.ndarray) -> np.ndarray:
    """[0, 1] float image -> rounded uint8 mask."""
    scaled = np.multiply(image, 255.0, dtype=np.float32)
    np.clip(scaled, 0.0, 255.0, out=scaled)
    return np.rint(scaled).astype(np.uint8)


class MaskFilter:
    def __init__(
        self,
        settings: Optional[FilterSettings] = None,
        gpu_profile: Optional[GpuProfile] = None,
        *,
        builder: Optional[SessionBuilder] = None,
        accelerator: Optional[FrameAccelerator] = None,
    ) -> None:
        self.settings = settings if settings is not None else FilterSettings()
        self.gpu_profile = gpu_profile
        self._builder = builder if builder is not None else SessionBuilder()
        self._accelerator = accelerator
        self.queue = AsyncInferenceQueue()
        self.telemetry = Telemetry()
        self.handle: Optional[SessionHandle] = None
        self.last_error: Optional[SessionError] = None

    # ------------------------------------------------------------------ lifecycle
    @property
    def status(self) -> str:
        handle = self.handle
        if handle is None:
            return STATUS_DISABLED
        return STATUS_DEGRADED if handle.degraded else STATUS_READY

    @property
    def accelerator(self) -> FrameAccelerator:
        if self._accelerator is None:
            self._accelerator = FrameAccelerator(self.settings.preprocess_device)
        return self._accelerator

    def build(self) -> bool:
        """Build a fresh session for the current settings; False leaves the filter disabled."""
        if self.queue.is_running:
            raise RuntimeError("stop the inference queue before rebuilding the session")
        self.handle = None
        settings = self.settings
        descriptor = settings.descriptor()
        model_path = settings.model_path if settings.model_path is not None else descriptor.model_file
        try:
            handle = self._builder.build(
                model_path,
                descriptor,
                self.gpu_profile,
                settings.acceleration,
                working_size=settings.working_size,
                precision=settings.resolved_precision(self.gpu_profile),
            )
        except SessionError as exc:
            self.last_error = exc
            LOGGER.error("filter.build.failed model=%s kind=%s detail=%s", settings.model, exc.kind.value, exc.detail)
            return False
        self.handle = handle
        self.last_error = None
        self.telemetry.reset()
        LOGGER.info(
            "filter.build.ok model=%s providers=%s size=%sx%s status=%s",
            settings.model,
            handle.providers,
            handle.working_size[0],
            handle.working_size[1],
            self.status,
        )
        return True

    def start(self) -> bool:
        if self.handle is None and not self.build():
            return False
        self.queue.start(self.infer, self.settings.resolved_buffering(self.gpu_profile))
        return True

    def stop(self) -> QueueStats:
        return self.queue.stop()

    def rebuild(self, settings: Optional[FilterSettings] = None) -> bool:
        was_running = self.queue.is_running
        self.stop()
        if settings is not None:
            if settings.preprocess_device != self.settings.preprocess_device:
                self._accelerator = None
            self.settings = settings
        ok = self.build()
        if ok and was_running:
            self.start()
        return ok

    # ------------------------------------------------------------------ frames
    def push_frame(self, frame: np.ndarray) -> bool:
        return self.queue.push_frame(frame)

    def get_latest_mask(self) -> Optional[np.ndarray]:
        return self.queue.get_latest_mask()

    def infer(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Run one full cycle on a BGR/BGRA frame; ``None`` when no session is built."""
        handle = self.handle
        if handle is None:
            return None
        descriptor = handle.descriptor
        params = descriptor.get_preprocess_params()
        width, height = descriptor.network_input_size(handle.input_shapes)

        with self.telemetry.span("preprocess"):
            self.accelerator.preprocess_frame(frame, handle.input_buffers[0], width, height, params)
        descriptor.set_extra_scalar_inputs(handle.input_buffers)
        with self.telemetry.span("infer"):
            handle.run()
        with self.telemetry.span("extract"):
            image = descriptor.extract_output(handle.output_shapes, handle.output_buffers)
        descriptor.carry_state(handle.output_buffers, handle.input_buffers)
        with self.telemetry.span("postprocess"):
            image = descriptor.postprocess(image)
            mask = quantize_mask(image)
        return mask

    def reset_state(self) -> None:
        if self.queue.is_running:
            raise RuntimeError("stop the inference queue before resetting recurrent state")
        if self.handle is not None:
            self.handle.reset_state()
