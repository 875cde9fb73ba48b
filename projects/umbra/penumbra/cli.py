# penumbra.cli: "probe" and "run" entrypoints
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import typer

from penumbra.logging_config import get_log_path, setup_logging
from penumbra.runtime.backend_probe import ort_available, pretty_provider_label
from penumbra.runtime.gpu_profile import detect

setup_logging()
LOGGER = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Penumbra: real-time neural mask filter for live video.")


@app.command()
def probe() -> None:
    """Report the detected GPU profile and the installed ONNX Runtime providers."""
    profile = detect()
    if profile is None:
        typer.echo("gpu: none (CPU only)")
    else:
        typer.echo(f"gpu: {profile.describe()}")
        typer.echo(f"defaults: buffering={profile.buffering.name.lower()} precision={profile.precision.value}")
    status = ort_available()
    if not status.ok:
        typer.echo(f"onnxruntime: unavailable ({status.reason})")
        return
    typer.echo(f"onnxruntime: {status.version or 'unknown'}")
    labels = [pretty_provider_label(p) or p for p in (status.providers or [])]
    typer.echo(f"providers: {', '.join(labels) if labels else 'none'}")


@app.command()
def run(
    source: str = typer.Argument("synthetic", help="'synthetic', a camera index, or a video path."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="rvm | sinet | tcmonodepth"),
    model_path: Optional[Path] = typer.Option(None, "--model-path", help="ONNX file; defaults to the model's file under the models dir."),
    accel: Optional[str] = typer.Option(None, "--accel", help="cpu | cuda | tensorrt"),
    size: Optional[str] = typer.Option(None, "--size", help="Working resolution WxH."),
    downsample: Optional[float] = typer.Option(None, "--downsample", help="RVM downsample ratio in (0, 1]."),
    preprocess_device: Optional[str] = typer.Option(None, "--preprocess-device", help="auto | cpu | gpu"),
    frames: int = typer.Option(300, "--frames", min=1, help="Stop after this many source frames."),
    fps: int = typer.Option(30, "--fps", min=0, help="Synthetic source pacing; 0 = as fast as possible."),
    save_mask: Optional[Path] = typer.Option(None, "--save-mask", help="Write the last mask as an image."),
) -> None:
    """Drive a source through the mask filter and report throughput."""
    from penumbra.live.camera import open_source
    from penumbra.live.config import FilterSettings
    from penumbra.live.filter import MaskFilter

    profile = detect()
    overrides: Dict[str, object] = {
        "model": model,
        "model_path": model_path,
        "acceleration": accel,
        "working_size": size,
        "downsample_ratio": downsample,
        "preprocess_device": preprocess_device,
    }
    if profile is None and not (accel or os.getenv("PENUMBRA_ACCELERATION")):
        overrides["acceleration"] = "cpu"
        if not preprocess_device and not os.getenv("PENUMBRA_PREPROCESS"):
            overrides["preprocess_device"] = "cpu"
    try:
        settings = FilterSettings.from_env(**overrides)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None

    mask_filter = MaskFilter(settings, profile)
    if not mask_filter.start():
        err = mask_filter.last_error
        typer.echo(f"session build failed: {err}", err=True)
        log_path = get_log_path()
        if log_path is not None:
            typer.echo(f"log: {log_path}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"model: {settings.model} status: {mask_filter.status}")

    try:
        src = open_source(source, fps=fps or None)
    except Exception as exc:
        mask_filter.stop()
        typer.echo(f"cannot open source {source!r}: {exc}", err=True)
        raise typer.Exit(code=1) from None

    last_mask = None
    try:
        for idx, (frame, _ts) in enumerate(src.frames()):
            if idx >= frames:
                break
            mask_filter.push_frame(frame)
            mask = mask_filter.get_latest_mask()
            if mask is not None:
                last_mask = mask
    except KeyboardInterrupt:
        typer.echo("interrupted")
    finally:
        stats = mask_filter.stop()
        src.release()

    mask = mask_filter.get_latest_mask()
    if mask is not None:
        last_mask = mask

    typer.echo(f"processed={stats.processed} dropped={stats.dropped} failed={stats.failed}")
    for stage, values in mask_filter.telemetry.snapshot().items():
        typer.echo(f"{stage}: ema={values['ema_ms']:.3f}ms p95={values['p95_ms']:.3f}ms")

    if save_mask is not None:
        if last_mask is None:
            typer.echo("no mask produced; nothing saved", err=True)
            raise typer.Exit(code=1)
        import cv2  # type: ignore

        save_mask.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(save_mask), last_mask):
            typer.echo(f"failed to write {save_mask}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"mask: {save_mask}")


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
