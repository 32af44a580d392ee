from __future__ import annotations

from pathlib import Path
from typing import Callable

from wsi_dispatch.backends.engines import (
    InferenceEngine,
    OnnxRuntimeEngine,
    OpenVINOEngine,
    TensorFlowEngine,
    TensorRTEngine,
    TorchScriptEngine,
)
from wsi_dispatch.backends.registry import (
    BUILTIN_CAPABILITIES,
    BackendCapability,
    BackendRegistry,
    scan_library_dir,
)
from wsi_dispatch.backends.selector import PREFERENCE_ORDER, select_backend
from wsi_dispatch.backends.shapes import bind_shapes

__all__ = [
    "BUILTIN_CAPABILITIES",
    "PREFERENCE_ORDER",
    "BackendCapability",
    "BackendRegistry",
    "InferenceEngine",
    "bind_shapes",
    "build_default_registry",
    "scan_library_dir",
    "select_backend",
]

_BUILTIN_ENGINES = {
    "TensorRT": TensorRTEngine,
    "OpenVINO": OpenVINOEngine,
    "TensorFlow": TensorFlowEngine,
    "ONNXRuntime": OnnxRuntimeEngine,
    "PyTorch": TorchScriptEngine,
}


def build_default_registry(
    *,
    library_dir: Path | None = None,
    gpu_available: Callable[[], bool] | bool | None = None,
) -> BackendRegistry:
    """Factory that registers the built-in backends and their engines."""
    registry = BackendRegistry(
        BUILTIN_CAPABILITIES, library_dir=library_dir, gpu_available=gpu_available
    )
    for name, engine_cls in _BUILTIN_ENGINES.items():
        registry.register_engine(name, engine_cls)
    return registry
