"""
ONNX Runtime session construction with layered acceleration fallback.

``SessionBuilder.build`` turns a model file, a network descriptor and the GPU
profile into a :class:`SessionHandle` whose tensor buffers are allocated once
and reused for every frame.

Provider policy:

* ``tensorrt``: TensorRT first (engine cache on disk, fp16 flag from the
  resolved precision, explicit min=opt=max profile shapes from the
  descriptor), CUDA appended behind it for operators TensorRT cannot take.
  A TensorRT configuration problem is logged and skipped. If the session
  still fails to start, it is rebuilt once with CUDA alone.
* ``cuda``: CUDA only; a failure is final.
* ``cpu``: CPU only; a failure is final.

Build failures raise :class:`SessionError`; nothing half-built is returned.
"""

from __future__ import annotations

import enum
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

try:
    import psutil  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    psutil = None

from penumbra import models_dir
from penumbra.models.base import NetworkDescriptor, TensorShape

from .backend_probe import CPU_PROVIDER, CUDA_PROVIDER, TENSORRT_PROVIDER, provider_available
from .gpu_profile import GpuProfile, PrecisionMode

LOGGER = logging.getLogger(__name__)

ProviderConfig = Tuple[str, Dict[str, Any]]

__all__ = [
    "AccelerationMode",
    "SessionBuilder",
    "SessionError",
    "SessionErrorKind",
    "SessionHandle",
    "format_profile_shapes",
    "resolve_cache_dir",
    "resolve_model_path",
]


class AccelerationMode(str, enum.Enum):
    CPU = "cpu"
    CUDA = "cuda"
    TENSORRT = "tensorrt"

    @classmethod
    def parse(cls, value: Union[str, "AccelerationMode", None]) -> "AccelerationMode":
        if isinstance(value, AccelerationMode):
            return value
        token = (value or "cuda").strip().lower()
        aliases = {"trt": "tensorrt", "gpu": "cuda", "general": "cuda"}
        token = aliases.get(token, token)
        try:
            return cls(token)
        except ValueError:
            raise ValueError(f"Unknown acceleration mode {value!r}; expected cpu, cuda or tensorrt") from None


class SessionErrorKind(str, enum.Enum):
    INVALID_MODEL = "invalid_model"
    FILE_NOT_FOUND = "file_not_found"
    STARTUP_FAILURE = "startup_failure"
    SHAPE_MISMATCH = "shape_mismatch"


class SessionError(RuntimeError):
    """Fatal session construction failure; ``kind`` says which step failed."""

    def __init__(self, kind: SessionErrorKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail


def resolve_model_path(model_path: Union[str, Path, None]) -> Optional[Path]:
    """Return an existing model file, looking bare names up in the models directory."""
    if model_path is None or str(model_path).strip() == "":
        return None
    candidate = Path(model_path).expanduser()
    if candidate.is_file():
        return candidate
    if not candidate.is_absolute():
        fallback = models_dir() / candidate.name
        if fallback.is_file():
            return fallback
    return None


def resolve_cache_dir(precision: PrecisionMode = PrecisionMode.FP32) -> Path:
    """
    Locate (and create) the TensorRT engine cache directory.

    Order: ``PENUMBRA_TRT_CACHE``, ``$XDG_CACHE_HOME/penumbra/tensorrt``,
    ``~/.cache/penumbra/tensorrt``, then the temp directory. Engines are kept
    per precision so switching fp16/fp32 never invalidates the other set.
    """
    candidates: List[Path] = []
    override = os.getenv("PENUMBRA_TRT_CACHE")
    if override:
        candidates.append(Path(override).expanduser())
    xdg = os.getenv("XDG_CACHE_HOME")
    if xdg:
        candidates.append(Path(xdg) / "penumbra" / "tensorrt")
    try:
        candidates.append(Path.home() / ".cache" / "penumbra" / "tensorrt")
    except RuntimeError:
        pass
    candidates.append(Path(tempfile.gettempdir()) / "penumbra" / "tensorrt")

    last_exc: Optional[BaseException] = None
    for base in candidates:
        target = base / precision.value
        try:
            target.mkdir(parents=True, exist_ok=True)
            return target
        except OSError as exc:
            last_exc = exc
            continue
    raise OSError(f"no writable TensorRT cache directory: {last_exc}")


def format_profile_shapes(shapes: Dict[str, TensorShape]) -> str:
    return ",".join(f"{name}:{'x'.join(str(int(d)) for d in shape)}" for name, shape in shapes.items())


def _default_thread_count() -> Optional[int]:
    try:
        if psutil is not None:
            physical = psutil.cpu_count(logical=False)
            if physical:
                return int(physical)
    except Exception:
        pass
    count = os.cpu_count()
    return int(count) if count else None


def _dtype_for(element_type: Any) -> Any:
    if isinstance(element_type, str) and "float16" in element_type:
        return np.float16
    return np.float32


def _shape_ok(shape: Sequence[Any]) -> bool:
    if not shape:
        return False
    if any(not isinstance(d, (int, np.integer)) or int(d) <= 0 for d in shape):
        return False
    # [H, W] planes carry no batch axis; every other rank is batch-first.
    if len(shape) != 2 and int(shape[0]) != 1:
        return False
    return True


def _primary_output_error(descriptor: NetworkDescriptor, shape: Sequence[Any]) -> Optional[str]:
    if len(shape) < 2:
        return f"primary output must be at least [H, W], got {list(shape)}"
    if len(shape) == 4 and int(shape[1]) <= descriptor.output_channel:
        return (
            f"{descriptor.key} reads channel {descriptor.output_channel} of the primary output, "
            f"graph has {int(shape[1])}"
        )
    return None


@dataclass
class SessionHandle:
    session: Any
    descriptor: NetworkDescriptor
    model_path: Path
    acceleration: AccelerationMode
    providers: List[str]
    degraded: bool
    working_size: Tuple[int, int]
    input_names: List[str]
    output_names: List[str]
    input_shapes: List[TensorShape]
    output_shapes: List[TensorShape]
    input_buffers: List[np.ndarray] = field(repr=False)
    output_buffers: List[np.ndarray] = field(repr=False)

    def run(self) -> None:
        """Run one inference over the current input buffers into the output buffers."""
        feed = {name: buf for name, buf in zip(self.input_names, self.input_buffers)}
        results = self.session.run(self.output_names, feed)
        if len(results) != len(self.output_buffers):
            raise ValueError(f"session returned {len(results)} outputs, expected {len(self.output_buffers)}")
        for idx, (buf, value) in enumerate(zip(self.output_buffers, results)):
            arr = np.asarray(value)
            if arr.size != buf.size:
                raise ValueError(f"output {self.output_names[idx]} has {arr.size} values, expected {buf.size}")
            np.copyto(buf, arr.reshape(buf.shape), casting="unsafe")

    def reset_state(self) -> None:
        for in_idx, _ in self.descriptor.state_slots:
            self.input_buffers[in_idx].fill(0)

    @property
    def primary_provider(self) -> Optional[str]:
        return self.providers[0] if self.providers else None


class SessionBuilder:
    def __init__(self, cache_dir: Optional[Union[str, Path]] = None, device_id: int = 0) -> None:
        self._cache_dir = Path(cache_dir).expanduser() if cache_dir is not None else None
        self._device_id = int(device_id)

    # ------------------------------------------------------------------ providers
    def _cache_dir_for(self, precision: PrecisionMode) -> Path:
        if self._cache_dir is None:
            return resolve_cache_dir(precision)
        target = self._cache_dir / precision.value
        target.mkdir(parents=True, exist_ok=True)
        return target

    def _tensorrt_provider(
        self,
        ort: Any,
        descriptor: NetworkDescriptor,
        precision: PrecisionMode,
        width: int,
        height: int,
    ) -> ProviderConfig:
        available = [str(p) for p in ort.get_available_providers()]
        if not provider_available(TENSORRT_PROVIDER, available):
            raise RuntimeError(f"{TENSORRT_PROVIDER} not in available providers {available}")
        cache_dir = self._cache_dir_for(precision)
        opts: Dict[str, Any] = {
            "device_id": self._device_id,
            "trt_engine_cache_enable": True,
            "trt_engine_cache_path": str(cache_dir),
            "trt_timing_cache_enable": True,
            "trt_timing_cache_path": str(cache_dir),
            "trt_fp16_enable": precision is PrecisionMode.FP16,
        }
        # Dynamic-shape graphs need exact bounds for ahead-of-time compilation.
        profile = descriptor.get_profile_shapes(width, height)
        if profile:
            shapes = format_profile_shapes(profile)
            opts["trt_profile_min_shapes"] = shapes
            opts["trt_profile_opt_shapes"] = shapes
            opts["trt_profile_max_shapes"] = shapes
        return TENSORRT_PROVIDER, opts

    def _cuda_provider(self) -> ProviderConfig:
        return CUDA_PROVIDER, {
            "device_id": self._device_id,
            "arena_extend_strategy": "kNextPowerOfTwo",
            "cudnn_conv_algo_search": "DEFAULT",
        }

    def _provider_chain(
        self,
        ort: Any,
        mode: AccelerationMode,
        descriptor: NetworkDescriptor,
        precision: PrecisionMode,
        width: int,
        height: int,
    ) -> Tuple[List[ProviderConfig], bool]:
        if mode is AccelerationMode.CPU:
            return [(CPU_PROVIDER, {})], False
        chain: List[ProviderConfig] = []
        trt_configured = False
        if mode is AccelerationMode.TENSORRT:
            try:
                chain.append(self._tensorrt_provider(ort, descriptor, precision, width, height))
                trt_configured = True
            except Exception as exc:
                LOGGER.warning("session.tensorrt.configure_failed model=%s reason=%s", descriptor.key, exc)
        chain.append(self._cuda_provider())
        return chain, trt_configured

    def _session_options(self, ort: Any, providers: Sequence[ProviderConfig]) -> Any:
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        options.enable_mem_pattern = False
        if all(name == CPU_PROVIDER for name, _ in providers):
            threads = _default_thread_count()
            if threads:
                options.intra_op_num_threads = threads
        return options

    def _create_session(self, ort: Any, path: Path, providers: Sequence[ProviderConfig]) -> Any:
        LOGGER.info("session.create path=%s providers=%s", path, [name for name, _ in providers])
        return ort.InferenceSession(
            str(path),
            sess_options=self._session_options(ort, providers),
            providers=[name for name, _ in providers],
            provider_options=[dict(opts) for _, opts in providers],
        )

    # ------------------------------------------------------------------ build
    def build(
        self,
        model_path: Union[str, Path, None],
        descriptor: Optional[NetworkDescriptor],
        gpu_profile: Optional[GpuProfile] = None,
        acceleration: Union[str, AccelerationMode] = AccelerationMode.CUDA,
        *,
        working_size: Optional[Tuple[int, int]] = None,
        precision: Optional[PrecisionMode] = None,
    ) -> SessionHandle:
        if descriptor is None:
            raise SessionError(SessionErrorKind.INVALID_MODEL, "no network descriptor")

        path = resolve_model_path(model_path if model_path is not None else descriptor.model_file)
        if path is None:
            raise SessionError(SessionErrorKind.FILE_NOT_FOUND, f"model file {model_path!r} not found")

        mode = AccelerationMode.parse(acceleration)
        if precision is None:
            precision = gpu_profile.precision if gpu_profile is not None else PrecisionMode.FP32
        width, height = working_size or descriptor.default_size
        width, height = int(width), int(height)

        try:
            import onnxruntime as ort  # type: ignore
        except Exception as exc:
            raise SessionError(SessionErrorKind.STARTUP_FAILURE, f"onnxruntime unavailable: {exc}") from exc

        chain, trt_configured = self._provider_chain(ort, mode, descriptor, precision, width, height)
        fell_back = False
        try:
            session = self._create_session(ort, path, chain)
        except Exception as exc:
            if mode is not AccelerationMode.TENSORRT:
                LOGGER.error("session.startup_failed model=%s mode=%s reason=%s", descriptor.key, mode.value, exc)
                raise SessionError(SessionErrorKind.STARTUP_FAILURE, str(exc)) from exc
            LOGGER.warning("session.tensorrt.fallback model=%s reason=%s", descriptor.key, exc)
            try:
                session = self._create_session(ort, path, [self._cuda_provider()])
            except Exception as fallback_exc:
                LOGGER.error("session.startup_failed model=%s mode=cuda-fallback reason=%s", descriptor.key, fallback_exc)
                raise SessionError(SessionErrorKind.STARTUP_FAILURE, str(fallback_exc)) from fallback_exc
            fell_back = True

        handle = self._resolve(session, path, descriptor, mode, width, height)
        if mode is AccelerationMode.TENSORRT:
            handle.degraded = fell_back or not trt_configured or TENSORRT_PROVIDER not in handle.providers
            if handle.degraded:
                LOGGER.warning("session.degraded model=%s providers=%s", descriptor.key, handle.providers)
        return handle

    def _resolve(
        self,
        session: Any,
        path: Path,
        descriptor: NetworkDescriptor,
        mode: AccelerationMode,
        width: int,
        height: int,
    ) -> SessionHandle:
        try:
            input_names, output_names = descriptor.name_io(session)
        except Exception as exc:
            raise SessionError(SessionErrorKind.SHAPE_MISMATCH, f"cannot read graph IO: {exc}") from exc

        if descriptor.expected_inputs is not None and len(input_names) != descriptor.expected_inputs:
            raise SessionError(
                SessionErrorKind.SHAPE_MISMATCH,
                f"{descriptor.key} expects {descriptor.expected_inputs} inputs, graph has {len(input_names)}",
            )
        if descriptor.input_names is not None and tuple(input_names) != tuple(descriptor.input_names):
            raise SessionError(
                SessionErrorKind.SHAPE_MISMATCH,
                f"{descriptor.key} expects inputs {list(descriptor.input_names)}, graph has {input_names}",
            )
        if descriptor.expected_outputs is not None and len(output_names) != descriptor.expected_outputs:
            raise SessionError(
                SessionErrorKind.SHAPE_MISMATCH,
                f"{descriptor.key} expects {descriptor.expected_outputs} outputs, graph has {len(output_names)}",
            )

        try:
            input_shapes, output_shapes = descriptor.derive_shapes(session, width, height)
        except Exception as exc:
            raise SessionError(SessionErrorKind.SHAPE_MISMATCH, f"cannot derive shapes: {exc}") from exc
        if len(input_shapes) != len(input_names) or len(output_shapes) != len(output_names):
            raise SessionError(SessionErrorKind.SHAPE_MISMATCH, "shape count does not match tensor count")
        for name, shape in list(zip(input_names, input_shapes)) + list(zip(output_names, output_shapes)):
            if not _shape_ok(shape):
                raise SessionError(SessionErrorKind.SHAPE_MISMATCH, f"tensor {name} has invalid shape {shape}")
        if not output_shapes:
            raise SessionError(SessionErrorKind.SHAPE_MISMATCH, f"{descriptor.key} graph has no usable output")
        problem = _primary_output_error(descriptor, output_shapes[0])
        if problem is not None:
            raise SessionError(SessionErrorKind.SHAPE_MISMATCH, problem)

        in_types = {str(n.name): getattr(n, "type", None) for n in session.get_inputs()}
        out_types = {str(n.name): getattr(n, "type", None) for n in session.get_outputs()}
        input_buffers = [
            np.zeros(shape, dtype=_dtype_for(in_types.get(name))) for name, shape in zip(input_names, input_shapes)
        ]
        output_buffers = [
            np.zeros(shape, dtype=_dtype_for(out_types.get(name))) for name, shape in zip(output_names, output_shapes)
        ]

        for idx, (name, shape) in enumerate(zip(input_names, input_shapes)):
            LOGGER.info("session.input model=%s index=%d name=%s shape=%s", descriptor.key, idx, name, shape)
        for idx, (name, shape) in enumerate(zip(output_names, output_shapes)):
            LOGGER.info("session.output model=%s index=%d name=%s shape=%s", descriptor.key, idx, name, shape)

        try:
            providers = [str(p) for p in session.get_providers()]
        except Exception:
            providers = []

        return SessionHandle(
            session=session,
            descriptor=descriptor,
            model_path=path,
            acceleration=mode,
            providers=providers,
            degraded=False,
            working_size=(width, height),
            input_names=input_names,
            output_names=output_names,
            input_shapes=[list(s) for s in input_shapes],
            output_shapes=[list(s) for s in output_shapes],
            input_buffers=input_buffers,
            output_buffers=output_buffers,
        )
