"""
Lightweight ONNX Runtime availability probes.

These helpers avoid importing onnxruntime at module import time. The session
builder uses them to decide whether the TensorRT provider can be configured at
all, and the CLI uses them to report what the installed build offers.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, List, NamedTuple, Optional, Sequence, Tuple, cast

LOG = logging.getLogger(__name__)

TENSORRT_PROVIDER = "TensorrtExecutionProvider"
CUDA_PROVIDER = "CUDAExecutionProvider"
CPU_PROVIDER = "CPUExecutionProvider"


class OrtProbeStatus(NamedTuple):
    ok: bool
    version: Optional[str]
    providers: Optional[List[str]]
    reason: Optional[str]


def _try_import_ort() -> Tuple[bool, Optional[str], Optional[List[str]], Optional[str]]:
    try:
        import onnxruntime as ort  # type: ignore
    except Exception as exc:
        return False, None, None, f"{type(exc).__name__}: {exc}"
    version = getattr(ort, "__version__", None)
    try:
        providers_getter = cast(Optional[Callable[[], Sequence[str]]], getattr(ort, "get_available_providers", None))
        if providers_getter is None:
            return True, version, None, "providers unavailable: missing get_available_providers"
        providers_iter = cast(Iterable[str], providers_getter())
        providers = [str(p) for p in providers_iter]
    except Exception as exc:
        return True, version, None, f"providers unavailable: {exc}"
    return True, version, providers, None


def ort_available() -> OrtProbeStatus:
    """Attempt to import ONNX Runtime and report availability details."""
    if os.environ.get("PENUMBRA_DISABLE_ONNX"):
        return OrtProbeStatus(False, None, None, "disabled via PENUMBRA_DISABLE_ONNX")
    ok, version, providers, reason = _try_import_ort()
    if ok:
        LOG.info("onnxruntime ready version=%s providers=%s", version, providers or [])
    else:
        LOG.error("onnxruntime not-ready reason=%s", reason or "unknown")
    return OrtProbeStatus(ok, version, providers, reason)


def provider_available(name: str, providers: Optional[Sequence[str]] = None) -> bool:
    """Return True if ``name`` is among the installed build's providers."""
    if providers is None:
        providers = ort_available().providers
    if not providers:
        return False
    wanted = name.lower()
    return any(str(p).lower() == wanted for p in providers)


def pretty_provider_label(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    mapping = {
        "cudaexecutionprovider": "CUDA",
        "cpuexecutionprovider": "CPU",
        "tensorrtexecutionprovider": "TensorRT",
        "dmlexecutionprovider": "DirectML",
    }
    return mapping.get(raw.strip().lower(), raw.strip())
