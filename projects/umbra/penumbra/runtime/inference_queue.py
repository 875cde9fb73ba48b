"""
Latest-frame-wins inference queue.

One producer (the capture/render tick) hands frames in with ``push_frame`` and
pulls finished masks with ``get_latest_mask``; one daemon worker thread runs
the inference function on whatever frame is newest. The queue holds exactly
one pending input slot and one published output slot:

* a frame pushed before the worker picked up the previous one replaces it and
  bumps ``frames_dropped``;
* each completed mask is handed to exactly one ``get_latest_mask`` call.

Neither producer call ever blocks on the worker. ``BufferingMode`` is carried
for the render loop to pace itself; it does not change the queue depth.

The input slot and the output slot have separate locks, and the worker holds
neither while inference runs.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, NamedTuple, Optional

import numpy as np

from .gpu_profile import BufferingMode

LOGGER = logging.getLogger(__name__)

InferenceFn = Callable[[np.ndarray], Optional[np.ndarray]]

__all__ = ["AsyncInferenceQueue", "InferenceFn", "QueueStats"]


class QueueStats(NamedTuple):
    processed: int
    dropped: int
    failed: int


class AsyncInferenceQueue:
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"

    def __init__(self, thread_name: str = "penumbra-infer") -> None:
        self._thread_name = thread_name
        self._input_lock = threading.Lock()
        self._input_ready = threading.Condition(self._input_lock)
        self._pending: Optional[np.ndarray] = None
        self._has_input = False
        self._shutdown = False

        self._output_lock = threading.Lock()
        self._published: Optional[np.ndarray] = None
        self._has_output = False

        self._lifecycle = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._fn: Optional[InferenceFn] = None
        self._buffering = BufferingMode.DOUBLE
        self._state = self.IDLE

        self._processed = 0
        self._dropped = 0
        self._failed = 0

    # ------------------------------------------------------------------ lifecycle
    def start(self, inference_fn: InferenceFn, buffering: BufferingMode = BufferingMode.DOUBLE) -> None:
        """Start a worker running ``inference_fn``; a previous run is stopped first."""
        if inference_fn is None:
            raise ValueError("inference_fn is required")
        self.stop()
        with self._lifecycle:
            with self._input_lock:
                self._pending = None
                self._has_input = False
                self._shutdown = False
                self._dropped = 0
            with self._output_lock:
                self._published = None
                self._has_output = False
            self._processed = 0
            self._failed = 0
            self._fn = inference_fn
            self._buffering = BufferingMode(buffering)
            self._thread = threading.Thread(target=self._worker, name=self._thread_name, daemon=True)
            self._state = self.RUNNING
            self._thread.start()
        LOGGER.info("queue.start buffering=%s", self._buffering.name.lower())

    def stop(self) -> QueueStats:
        """Stop the worker and return the run's counters; no-op when idle."""
        with self._lifecycle:
            thread = self._thread
            if thread is None:
                return self.stats()
            self._state = self.STOPPING
            with self._input_ready:
                self._shutdown = True
                self._input_ready.notify_all()
            thread.join()
            self._thread = None
            self._fn = None
            self._state = self.IDLE
        stats = self.stats()
        LOGGER.info(
            "queue.stop processed=%d dropped=%d failed=%d", stats.processed, stats.dropped, stats.failed
        )
        return stats

    # ------------------------------------------------------------------ producer side
    def push_frame(self, frame: np.ndarray) -> bool:
        """Offer a frame to the worker; returns False when the queue is not running."""
        if self._state != self.RUNNING:
            return False
        # Copy outside the lock; the slot swap itself is O(1).
        owned = np.array(frame, copy=True)
        with self._input_ready:
            if self._has_input:
                self._dropped += 1
            self._pending = owned
            self._has_input = True
            self._input_ready.notify()
        return True

    def get_latest_mask(self) -> Optional[np.ndarray]:
        """Take the newest unconsumed mask, or ``None`` when nothing new is ready."""
        with self._output_lock:
            if not self._has_output:
                return None
            mask, self._published = self._published, None
            self._has_output = False
        return mask

    # ------------------------------------------------------------------ worker
    def _worker(self) -> None:
        fn = self._fn
        while True:
            with self._input_ready:
                while not self._has_input and not self._shutdown:
                    self._input_ready.wait()
                if self._shutdown and not self._has_input:
                    return
                frame, self._pending = self._pending, None
                self._has_input = False

            try:
                result = fn(frame) if fn is not None and frame is not None else None
            except Exception:
                LOGGER.debug("queue.cycle.error", exc_info=True)
                result = None

            if result is None:
                self._failed += 1
                continue

            with self._output_lock:
                self._published = result
                self._has_output = True
            self._processed += 1

    # ------------------------------------------------------------------ introspection
    def stats(self) -> QueueStats:
        return QueueStats(self._processed, self._dropped, self._failed)

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and self._state == self.RUNNING

    @property
    def buffering_mode(self) -> BufferingMode:
        return self._buffering

    @property
    def frames_processed(self) -> int:
        return self._processed

    @property
    def frames_dropped(self) -> int:
        return self._dropped

    @property
    def frames_failed(self) -> int:
        return self._failed
