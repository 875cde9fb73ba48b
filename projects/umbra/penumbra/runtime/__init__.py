"""
Runtime pieces that sit between the capture loop and ONNX Runtime.

Modules in this package avoid importing onnxruntime or torch at import time so
the capability probe and the queue stay usable on hosts without a GPU build.
"""

from __future__ import annotations

__all__: list[str] = []
