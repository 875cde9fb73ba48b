from __future__ import annotations

import numpy as np
import pytest
from pytest import MonkeyPatch

from penumbra.live import preprocess as preprocess_mod
from penumbra.live.preprocess import FrameAccelerator, resolve_device
from penumbra.models.base import PreprocessParams

IDENTITY = PreprocessParams(mean=(0.0, 0.0, 0.0), scale=(1.0, 1.0, 1.0), channel_major=True)


@pytest.fixture
def accel() -> FrameAccelerator:
    return FrameAccelerator("cpu")


def _bgra(width: int, height: int, bgra: tuple) -> np.ndarray:
    frame = np.empty((height, width, 4), np.uint8)
    frame[...] = bgra
    return frame


def test_constant_bgra_resized_to_rgb_chw(accel: FrameAccelerator) -> None:
    frame = _bgra(8, 4, (10, 20, 30, 255))
    dest = np.zeros((1, 3, 2, 4), np.float32)
    accel.preprocess(frame, 8, 4, 8 * 4, dest, 4, 2, IDENTITY)
    assert np.allclose(dest[0, 0], 30.0)
    assert np.allclose(dest[0, 1], 20.0)
    assert np.allclose(dest[0, 2], 10.0)


def test_stride_padding_is_ignored(accel: FrameAccelerator) -> None:
    width, height, stride = 6, 3, 6 * 4 + 8
    rng = np.random.default_rng(3)
    pixels = rng.integers(0, 255, size=(height, width, 4), dtype=np.uint8)
    # Last row carries no padding; the buffer ends right after its pixels.
    buf = np.full(stride * (height - 1) + width * 4, 255, np.uint8)
    for row in range(height):
        buf[row * stride : row * stride + width * 4] = pixels[row].reshape(-1)

    dest = np.zeros(width * height * 3, np.float32)
    accel.preprocess(buf, width, height, stride, dest, width, height, IDENTITY)

    expected = pixels[:, :, [2, 1, 0]].transpose(2, 0, 1).astype(np.float32)
    assert np.array_equal(dest.reshape(3, height, width), expected)


def test_pixel_major_layout(accel: FrameAccelerator) -> None:
    frame = np.zeros((2, 3, 3), np.uint8)
    frame[..., 0] = 1  # B
    frame[..., 1] = 2  # G
    frame[..., 2] = 3  # R
    dest = np.zeros((2, 3, 3), np.float32)
    params = PreprocessParams(mean=(0.0, 0.0, 0.0), scale=(1.0, 1.0, 1.0), channel_major=False)
    accel.preprocess(frame, 3, 2, 9, dest, 3, 2, params, channels=3)
    assert np.array_equal(dest[0, 0], [3.0, 2.0, 1.0])


def test_affine_normalisation_per_channel(accel: FrameAccelerator) -> None:
    params = PreprocessParams(mean=(100.0, 50.0, 10.0), scale=(2.0, 4.0, 5.0))
    frame = _bgra(4, 4, (60, 90, 120, 0))
    dest = np.zeros((1, 3, 4, 4), np.float32)
    accel.preprocess(frame, 4, 4, 16, dest, 4, 4, params)
    assert np.allclose(dest[0, 0], (120 - 100) / 2.0)
    assert np.allclose(dest[0, 1], (90 - 50) / 4.0)
    assert np.allclose(dest[0, 2], (60 - 10) / 5.0)


def test_float16_destination_receives_cast(accel: FrameAccelerator) -> None:
    frame = _bgra(4, 2, (0, 0, 255, 255))
    dest = np.zeros((1, 3, 2, 4), np.float16)
    accel.preprocess(frame, 4, 2, 16, dest, 4, 2, PreprocessParams())
    assert dest.dtype == np.float16
    assert np.allclose(dest[0, 0], 1.0)
    assert np.allclose(dest[0, 2], 0.0)


def test_scratch_only_grows(accel: FrameAccelerator) -> None:
    dest = np.zeros((1, 3, 8, 8), np.float32)
    accel.preprocess(_bgra(64, 48, (1, 2, 3, 4)), 64, 48, 256, dest, 8, 8, IDENTITY)
    high = accel.capacity
    assert high > 0

    accel.preprocess(_bgra(16, 12, (1, 2, 3, 4)), 16, 12, 64, dest, 8, 8, IDENTITY)
    assert accel.capacity == high

    accel.preprocess(_bgra(128, 96, (1, 2, 3, 4)), 128, 96, 512, dest, 8, 8, IDENTITY)
    assert accel.capacity > high


def test_preprocess_frame_accepts_bgr_capture(accel: FrameAccelerator) -> None:
    frame = np.zeros((10, 20, 3), np.uint8)
    frame[..., 2] = 200
    dest = np.zeros((1, 3, 5, 10), np.float32)
    accel.preprocess_frame(frame, dest, 10, 5, PreprocessParams())
    assert np.allclose(dest[0, 0], 200 / 255.0, atol=1e-6)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"stride": 10},  # smaller than one row
        {"buffer_size": 20},  # short buffer
        {"dest_size": 11},  # wrong destination size
        {"channels": 2},
    ],
)
def test_invalid_geometry_raises(accel: FrameAccelerator, kwargs: dict) -> None:
    width, height = 4, 2
    channels = kwargs.get("channels", 4)
    stride = kwargs.get("stride", width * 4)
    buf = np.zeros(kwargs.get("buffer_size", width * height * 4), np.uint8)
    dest = np.zeros(kwargs.get("dest_size", width * height * 3), np.float32)
    with pytest.raises(ValueError):
        accel.preprocess(buf, width, height, stride, dest, width, height, IDENTITY, channels=channels)


def test_device_resolution(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setattr(preprocess_mod, "torch", None)
    assert resolve_device("auto") == "cpu"
    assert resolve_device("CPU") == "cpu"
    with pytest.raises(RuntimeError):
        resolve_device("gpu")
    with pytest.raises(ValueError):
        resolve_device("tpu")
    assert FrameAccelerator("auto").device == "cpu"


def test_padded_rows_are_repacked_into_scratch(accel: FrameAccelerator) -> None:
    width, height, stride = 6, 4, 6 * 4 + 12
    pixels = np.arange(height * width * 4, dtype=np.uint8).reshape(height, width, 4)
    buf = np.zeros(stride * height, np.uint8)
    for row in range(height):
        buf[row * stride : row * stride + width * 4] = pixels[row].reshape(-1)
    dest = np.zeros(width * height * 3, np.float32)

    accel.preprocess(buf, width, height, stride, dest, width, height, IDENTITY)
    assert "packed" in accel._scratch
    high = accel.capacity
    accel.preprocess(buf, width, height, stride, dest, width, height, IDENTITY)
    assert accel.capacity == high

    expected = pixels[:, :, [2, 1, 0]].transpose(2, 0, 1).astype(np.float32)
    assert np.array_equal(dest.reshape(3, height, width), expected)


@pytest.fixture
def torch_accel(monkeypatch: MonkeyPatch) -> FrameAccelerator:
    pytest.importorskip("torch")
    monkeypatch.setattr(preprocess_mod, "_cuda_ready", lambda: True)
    return FrameAccelerator("gpu", torch_device="cpu")


@pytest.mark.parametrize(
    "src_size,channel_major",
    [((50, 30), True), ((20, 12), True), ((32, 20), False)],
)
def test_torch_path_matches_opencv(
    accel: FrameAccelerator, torch_accel: FrameAccelerator, src_size: tuple, channel_major: bool
) -> None:
    width, height = src_size
    rng = np.random.default_rng(11)
    frame = rng.integers(0, 255, size=(height, width, 4), dtype=np.uint8)
    params = PreprocessParams(mean=(0.0, 0.0, 0.0), scale=(1.0, 1.0, 1.0), channel_major=channel_major)
    cpu_dest = np.zeros(32 * 20 * 3, np.float32)
    gpu_dest = np.zeros(32 * 20 * 3, np.float32)

    accel.preprocess(frame, width, height, width * 4, cpu_dest, 32, 20, params)
    torch_accel.preprocess(frame, width, height, width * 4, gpu_dest, 32, 20, params)

    assert torch_accel.device == "gpu"
    assert np.allclose(cpu_dest, gpu_dest, atol=1.5)


def test_device_staging_only_grows(torch_accel: FrameAccelerator) -> None:
    dest = np.zeros((1, 3, 8, 8), np.float32)
    assert torch_accel.device_capacity == 0

    torch_accel.preprocess(_bgra(64, 48, (1, 2, 3, 4)), 64, 48, 256, dest, 8, 8, IDENTITY)
    high = torch_accel.device_capacity
    assert high == 64 * 48 * 4

    torch_accel.preprocess(_bgra(16, 12, (1, 2, 3, 4)), 16, 12, 64, dest, 8, 8, IDENTITY)
    assert torch_accel.device_capacity == high
    assert np.allclose(dest[0, 0], 3.0)

    torch_accel.preprocess(_bgra(80, 60, (1, 2, 3, 4)), 80, 60, 320, dest, 8, 8, IDENTITY)
    assert torch_accel.device_capacity == 80 * 60 * 4
