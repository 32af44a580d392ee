"""Picks the backend and model format a model runs with."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Mapping

from wsi_dispatch.backends.registry import BUILTIN_CAPABILITIES
from wsi_dispatch.core.models import BackendChoice, BackendDescriptor, DeviceType

logger = logging.getLogger("wsi_dispatch.backends.selector")

_BUILTIN = {cap.name: cap for cap in BUILTIN_CAPABILITIES}

# Fixed order; the first pair whose backend is installed and whose format exists wins.
PREFERENCE_ORDER: tuple[tuple[str, str], ...] = (
    ("TensorRT", "onnx"),
    ("TensorRT", "uff"),
    ("OpenVINO", "onnx"),
    ("OpenVINO", "xml"),
    ("TensorFlow", "pb"),
    ("ONNXRuntime", "onnx"),
    ("PyTorch", "pt"),
)


def _normalize_formats(model_formats: Iterable[str]) -> set[str]:
    return {fmt.lower().lstrip(".") for fmt in model_formats}


def _device_for(
    devices: frozenset[DeviceType], *, cpu_only: bool, gpu_available: bool
) -> DeviceType:
    if cpu_only:
        return DeviceType.CPU
    if gpu_available and DeviceType.GPU in devices:
        return DeviceType.GPU
    if DeviceType.GPU in devices and DeviceType.CPU not in devices:
        return DeviceType.GPU
    return DeviceType.CPU


def select_backend(
    model_formats: Iterable[str],
    installed: Iterable[str] | Mapping[str, BackendDescriptor],
    *,
    cpu_only: bool = False,
    cpu_capable: Callable[[str], bool] | None = None,
    preferred: str | None = None,
    gpu_available: bool = False,
) -> BackendChoice | None:
    """Pick the backend + model format pair for a model.

    Parameters
    ----------
    model_formats : iterable of str
        File extensions present in the model folder (with or without dot).
    installed : iterable of str or mapping
        Installed backend names, or a name -> descriptor mapping which also
        supplies device capabilities.
    cpu_only : bool, default False
        Restrict candidates to CPU-capable backends before applying the order.
    cpu_capable : callable, optional
        Overrides the CPU capability test for a backend name.
    preferred : str, optional
        Backend tried first when it is installed and accepts an available format.
    gpu_available : bool, default False
        Whether the host has a usable GPU.

    Returns
    -------
    BackendChoice or None
        ``None`` when no pair matches; callers report that as "no usable backend".
    """
    formats = _normalize_formats(model_formats)
    if isinstance(installed, Mapping):
        descriptors: dict[str, BackendDescriptor] = dict(installed)
        names = set(descriptors)
    else:
        descriptors = {}
        names = set(installed)

    def _cpu_ok(name: str) -> bool:
        if cpu_capable is not None:
            return bool(cpu_capable(name))
        desc = descriptors.get(name)
        if desc is not None:
            return desc.supports(DeviceType.CPU)
        cap = _BUILTIN.get(name)
        return cap is not None and DeviceType.CPU in cap.devices

    if cpu_only:
        names = {name for name in names if _cpu_ok(name)}
        if not names:
            logger.info("No CPU-capable backend installed for a CPU-only model")
            return None

    candidates: list[tuple[str, str]] = []
    if preferred and preferred in names:
        desc = descriptors.get(preferred)
        extra = [
            (preferred, fmt)
            for backend, fmt in PREFERENCE_ORDER
            if backend == preferred and fmt in formats
        ]
        if not extra and desc is not None:
            extra = [(preferred, fmt) for fmt in sorted(desc.extensions & formats)]
        candidates.extend(extra)
    candidates.extend(PREFERENCE_ORDER)

    for backend, fmt in candidates:
        if backend in names and fmt in formats:
            desc = descriptors.get(backend)
            if desc is not None:
                devices = desc.devices
            else:
                devices = _BUILTIN[backend].devices if backend in _BUILTIN else frozenset()
            device = _device_for(devices, cpu_only=cpu_only, gpu_available=gpu_available)
            return BackendChoice(backend=backend, model_format=fmt, device=device)
    return None
