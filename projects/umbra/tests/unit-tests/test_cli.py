from __future__ import annotations

from pathlib import Path
from typing import Any

import cv2
from pytest import MonkeyPatch
from typer.testing import CliRunner

from penumbra import cli
from penumbra.runtime.gpu_profile import BufferingMode, GpuArchitecture, GpuProfile, PrecisionMode

runner = CliRunner()


def _no_gpu(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "detect", lambda: None)


def test_probe_without_gpu(fake_ort: Any, monkeypatch: MonkeyPatch) -> None:
    _no_gpu(monkeypatch)
    result = runner.invoke(cli.app, ["probe"])
    assert result.exit_code == 0, result.output
    assert "gpu: none" in result.output
    assert "onnxruntime: 1.99.0-fake" in result.output
    assert "TensorRT, CUDA, CPU" in result.output


def test_probe_with_gpu(fake_ort: Any, monkeypatch: MonkeyPatch) -> None:
    profile = GpuProfile(
        name="Test GPU",
        device_id=0,
        compute_capability=(8, 6),
        total_memory_mb=12288,
        architecture=GpuArchitecture.AMPERE,
        buffering=BufferingMode.DOUBLE,
        precision=PrecisionMode.FP16,
    )
    monkeypatch.setattr(cli, "detect", lambda: profile)
    result = runner.invoke(cli.app, ["probe"])
    assert result.exit_code == 0, result.output
    assert "sm_86" in result.output
    assert "buffering=double precision=fp16" in result.output


def test_probe_reports_missing_runtime(monkeypatch: MonkeyPatch) -> None:
    _no_gpu(monkeypatch)
    monkeypatch.setenv("PENUMBRA_DISABLE_ONNX", "1")
    result = runner.invoke(cli.app, ["probe"])
    assert result.exit_code == 0, result.output
    assert "onnxruntime: unavailable" in result.output


def test_run_synthetic_saves_mask(fake_ort: Any, model_file: Path, tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    _no_gpu(monkeypatch)
    out = tmp_path / "out" / "mask.png"
    result = runner.invoke(
        cli.app,
        [
            "run",
            "synthetic",
            "--model-path",
            str(model_file),
            "--size",
            "64x48",
            "--frames",
            "5",
            "--fps",
            "0",
            "--save-mask",
            str(out),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "processed=" in result.output
    assert "infer: ema=" in result.output
    # Without a GPU the CLI drops to the CPU provider.
    assert fake_ort.attempts[0]["providers"] == ["CPUExecutionProvider"]
    mask = cv2.imread(str(out), cv2.IMREAD_GRAYSCALE)
    assert mask is not None and mask.shape == (48, 64)


def test_run_missing_model_fails(fake_ort: Any, tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    _no_gpu(monkeypatch)
    result = runner.invoke(cli.app, ["run", "synthetic", "--model-path", str(tmp_path / "missing.onnx"), "--frames", "1"])
    assert result.exit_code == 1
    assert "file_not_found" in result.output
    assert fake_ort.attempts == []


def test_run_rejects_bad_size(fake_ort: Any, model_file: Path, monkeypatch: MonkeyPatch) -> None:
    _no_gpu(monkeypatch)
    result = runner.invoke(cli.app, ["run", "synthetic", "--model-path", str(model_file), "--size", "wide"])
    assert result.exit_code == 2
