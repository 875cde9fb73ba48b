"""
Network descriptor registry.

``build_descriptor("rvm")`` returns a fresh descriptor per pipeline instance;
descriptors hold per-instance options (e.g. the RVM downsample ratio) and must
not be shared between filters.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Type

from .base import NetworkDescriptor, PreprocessParams, TensorShape
from .rvm import RobustVideoMatting
from .sinet import SINet
from .tcmonodepth import TCMonoDepth

_REGISTRY: Dict[str, Type[NetworkDescriptor]] = {
    RobustVideoMatting.key: RobustVideoMatting,
    SINet.key: SINet,
    TCMonoDepth.key: TCMonoDepth,
}

_ALIASES: Dict[str, str] = {
    "matting": "rvm",
    "robust-video-matting": "rvm",
    "segment": "sinet",
    "seg": "sinet",
    "depth": "tcmonodepth",
    "tcmono": "tcmonodepth",
}


def canonical_model_key(name: str) -> str:
    token = (name or "").strip().lower()
    token = _ALIASES.get(token, token)
    if token not in _REGISTRY:
        raise ValueError(f"Unknown model {name!r}; expected one of {', '.join(available_models())}")
    return token


def available_models() -> List[str]:
    return sorted(_REGISTRY)


def descriptor_class(name: str) -> Type[NetworkDescriptor]:
    return _REGISTRY[canonical_model_key(name)]


def build_descriptor(name: str, *, downsample_ratio: Optional[float] = None) -> NetworkDescriptor:
    cls = descriptor_class(name)
    if cls is RobustVideoMatting and downsample_ratio is not None:
        return RobustVideoMatting(downsample_ratio=downsample_ratio)
    return cls()


__all__ = [
    "NetworkDescriptor",
    "PreprocessParams",
    "RobustVideoMatting",
    "SINet",
    "TCMonoDepth",
    "TensorShape",
    "available_models",
    "build_descriptor",
    "canonical_model_key",
    "descriptor_class",
]
