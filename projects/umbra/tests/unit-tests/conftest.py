# projects/umbra/tests/unit-tests/conftest.py
from __future__ import annotations

import os
import sys
import tempfile
import types
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pytest
from pytest import MonkeyPatch

# The CLI configures file logging at import time; keep it out of the user's data dir.
os.environ.setdefault("PENUMBRA_LOG_FILE", str(Path(tempfile.gettempdir()) / "penumbra-tests" / "penumbra.log"))

TRT = "TensorrtExecutionProvider"
CUDA = "CUDAExecutionProvider"
CPU = "CPUExecutionProvider"


def _node(name: str, shape: Sequence[Any], *, like: Optional[str] = None, fill: float = 0.0, kind: str = "tensor(float)") -> Any:
    return types.SimpleNamespace(name=name, shape=list(shape), type=kind, like=like, fill=fill)


class FakeOrt:
    """
    Scriptable stand-in for the onnxruntime module.

    * ``available``: what ``get_available_providers`` reports.
    * ``fail_providers``: a session whose chain contains any of these fails to start.
    * ``inactive_providers``: accepted by the constructor but missing from ``get_providers``.
    * ``runner``: optional ``(session, output_names, feed) -> outputs`` override.
    """

    def __init__(self) -> None:
        self.available: List[str] = [TRT, CUDA, CPU]
        self.fail_providers: set = set()
        self.fail_all = False
        self.inactive_providers: set = set()
        self.attempts: List[Dict[str, Any]] = []
        self.sessions: List[Any] = []
        self.runner: Optional[Callable[..., List[np.ndarray]]] = None
        self.run_calls = 0
        self.inputs: List[Any] = []
        self.outputs: List[Any] = []
        self.use_rvm()
        self.module = self._build_module()

    # ------------------------------------------------------------------ graphs
    node = staticmethod(_node)

    def use_rvm(self, pha_fill: float = 0.75) -> None:
        self.inputs = [
            _node("src", [1, 3, "height", "width"]),
            _node("r1i", ["batch", "channels", "height", "width"]),
            _node("r2i", ["batch", "channels", "height", "width"]),
            _node("r3i", ["batch", "channels", "height", "width"]),
            _node("r4i", ["batch", "channels", "height", "width"]),
            _node("downsample_ratio", [1]),
        ]
        self.outputs = [
            _node("fgr", ["batch", 3, "height", "width"]),
            _node("pha", ["batch", 1, "height", "width"], fill=pha_fill),
            _node("r1o", ["batch", "channels", "height", "width"], like="r1i"),
            _node("r2o", ["batch", "channels", "height", "width"], like="r2i"),
            _node("r3o", ["batch", "channels", "height", "width"], like="r3i"),
            _node("r4o", ["batch", "channels", "height", "width"], like="r4i"),
        ]

    def use_sinet(self) -> None:
        self.inputs = [_node("data", [1, 3, 320, 320])]
        self.outputs = [_node("output", [1, 2, 320, 320], fill=0.25)]

    def use_tcmonodepth(self) -> None:
        self.inputs = [_node("input", [1, 3, 192, 320])]
        self.outputs = [_node("output", [1, 1, 192, 320], fill=3.0)]

    # ------------------------------------------------------------------ module
    def _default_run(self, session: Any, output_names: Sequence[str], feed: Dict[str, np.ndarray]) -> List[np.ndarray]:
        by_name = {n.name: n for n in session._outputs}
        primary = feed[session._inputs[0].name]
        h, w = int(primary.shape[-2]), int(primary.shape[-1])
        results: List[np.ndarray] = []
        for name in output_names:
            node = by_name[name]
            if node.like:
                results.append(np.asarray(feed[node.like], dtype=np.float32) + 1.0)
                continue
            fallback = [1, 1, h, w]
            shape = [d if isinstance(d, int) and d > 0 else fallback[i] for i, d in enumerate(node.shape)]
            results.append(np.full(shape, node.fill, dtype=np.float32))
        return results

    def _build_module(self) -> types.ModuleType:
        fake = self

        class SessionOptions:
            def __init__(self) -> None:
                self.graph_optimization_level = None
                self.execution_mode = None
                self.enable_mem_pattern = True
                self.intra_op_num_threads = 0

        class InferenceSession:
            def __init__(
                self,
                path: str,
                sess_options: Any = None,
                providers: Optional[List[str]] = None,
                provider_options: Optional[List[Dict[str, Any]]] = None,
            ) -> None:
                chain = list(providers or [])
                fake.attempts.append(
                    {"path": path, "providers": chain, "provider_options": list(provider_options or []), "options": sess_options}
                )
                if fake.fail_all or any(p in fake.fail_providers for p in chain):
                    raise RuntimeError(f"cannot start session with {chain}")
                self.path = path
                self._providers = [p for p in chain if p not in fake.inactive_providers]
                self._inputs = list(fake.inputs)
                self._outputs = list(fake.outputs)
                fake.sessions.append(self)

            def get_inputs(self) -> List[Any]:
                return list(self._inputs)

            def get_outputs(self) -> List[Any]:
                return list(self._outputs)

            def get_providers(self) -> List[str]:
                return list(self._providers)

            def run(self, output_names: Sequence[str], feed: Dict[str, np.ndarray]) -> List[np.ndarray]:
                fake.run_calls += 1
                runner = fake.runner or fake._default_run
                return runner(self, list(output_names), feed)

        module = types.ModuleType("onnxruntime")
        module.__version__ = "1.99.0-fake"  # type: ignore[attr-defined]
        module.get_available_providers = lambda: list(fake.available)  # type: ignore[attr-defined]
        module.SessionOptions = SessionOptions  # type: ignore[attr-defined]
        module.InferenceSession = InferenceSession  # type: ignore[attr-defined]
        module.GraphOptimizationLevel = types.SimpleNamespace(ORT_ENABLE_ALL="ORT_ENABLE_ALL")  # type: ignore[attr-defined]
        module.ExecutionMode = types.SimpleNamespace(ORT_SEQUENTIAL="ORT_SEQUENTIAL")  # type: ignore[attr-defined]
        module.set_default_logger_severity = lambda level: None  # type: ignore[attr-defined]
        return module


@pytest.fixture
def fake_ort(monkeypatch: MonkeyPatch) -> FakeOrt:
    fake = FakeOrt()
    monkeypatch.setitem(sys.modules, "onnxruntime", fake.module)
    return fake


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "model.onnx"
    path.write_bytes(b"onnx")
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    """Keep caches, logs and env-driven settings inside the test's tmp dir."""
    for name in (
        "PENUMBRA_MODEL",
        "PENUMBRA_MODEL_PATH",
        "PENUMBRA_ACCELERATION",
        "PENUMBRA_SIZE",
        "PENUMBRA_DOWNSAMPLE",
        "PENUMBRA_BUFFERING",
        "PENUMBRA_PRECISION",
        "PENUMBRA_PREPROCESS",
        "PENUMBRA_DISABLE_GPU",
        "PENUMBRA_DISABLE_ONNX",
        "PENUMBRA_MODELS_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PENUMBRA_TRT_CACHE", str(tmp_path / "trt-cache"))
