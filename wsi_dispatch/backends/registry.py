"""Installed inference backends and the engine factories that serve them."""

from __future__ import annotations

import importlib.util
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

from wsi_dispatch.backends.engines import InferenceEngine
from wsi_dispatch.core.models import BackendChoice, BackendDescriptor, DeviceType
from wsi_dispatch.errors import BackendUnavailableError
from wsi_dispatch.utils.locks import ReadWriteLock

logger = logging.getLogger("wsi_dispatch.backends")

EngineBuilder = Callable[[BackendChoice], InferenceEngine]

_CPU = frozenset({DeviceType.CPU})
_GPU = frozenset({DeviceType.GPU})
_ANY = frozenset({DeviceType.CPU, DeviceType.GPU})


@dataclass(frozen=True)
class BackendCapability:
    """Static description of a backend: the runtime modules it needs and what it accepts."""

    name: str
    modules: tuple[str, ...]
    devices: frozenset[DeviceType]
    extensions: frozenset[str]


BUILTIN_CAPABILITIES: tuple[BackendCapability, ...] = (
    BackendCapability("TensorRT", ("tensorrt", "onnxruntime"), _GPU, frozenset({"onnx", "uff"})),
    BackendCapability("OpenVINO", ("openvino",), _ANY, frozenset({"onnx", "xml"})),
    BackendCapability("TensorFlow", ("tensorflow",), _ANY, frozenset({"pb"})),
    BackendCapability("ONNXRuntime", ("onnxruntime",), _ANY, frozenset({"onnx"})),
    BackendCapability("PyTorch", ("torch",), _ANY, frozenset({"pt"})),
)


def module_installed(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


def cuda_available() -> bool:
    """True when torch can see a CUDA device."""
    import torch

    return bool(torch.cuda.is_available())


def scan_library_dir(library_dir: Path, system: str | None = None) -> list[str]:
    """Backend names advertised by ``InferenceEngine<Name>`` shared libraries.

    Linux looks for ``libInferenceEngine<Name>.so``, Windows for
    ``InferenceEngine<Name>.dll``. Any other system is reported and yields nothing.
    """
    system = (system or platform.system()).lower()
    if system == "linux":
        marker, suffix = "libInferenceEngine", ".so"
    elif system == "windows":
        marker, suffix = "InferenceEngine", ".dll"
    else:
        logger.warning(
            "Unsupported system '%s' for backend library discovery; expected linux or windows",
            system,
        )
        return []

    names: list[str] = []
    library_dir = Path(library_dir)
    if not library_dir.is_dir():
        logger.warning("Backend library directory not found: %s", library_dir)
        return names
    for entry in sorted(library_dir.iterdir()):
        if not entry.is_file() or marker not in entry.name:
            continue
        name = entry.name.split(marker)[-1].split(suffix)[0]
        if name and name not in names:
            names.append(name)
    return names


class BackendRegistry:
    """Installed inference backends and the engine builders that serve them.

    Discovery runs once, on first access, under the registry's write lock.
    Afterwards lookups only take the read side.
    """

    def __init__(
        self,
        capabilities: Iterable[BackendCapability] = BUILTIN_CAPABILITIES,
        *,
        library_dir: Path | None = None,
        module_available: Callable[[str], bool] = module_installed,
        gpu_available: Callable[[], bool] | bool | None = None,
    ) -> None:
        self._capabilities = list(capabilities)
        self._library_dir = library_dir
        self._module_available = module_available
        self._gpu_probe = gpu_available
        self._descriptors: dict[str, BackendDescriptor] | None = None
        self._gpu: bool | None = None
        self._builders: dict[str, EngineBuilder] = {}
        self._lock = ReadWriteLock()

    # discovery
    def _probe_gpu(self) -> bool:
        probe = self._gpu_probe
        if isinstance(probe, bool):
            return probe
        if probe is None:
            if not self._module_available("torch"):
                return False
            probe = cuda_available
        try:
            return bool(probe())
        except Exception as e:  # noqa: BLE001
            logger.warning("GPU probe failed, assuming CPU only: %s", e)
            return False

    def _discover(self) -> dict[str, BackendDescriptor]:
        found: dict[str, BackendDescriptor] = {}
        for cap in self._capabilities:
            available = all(self._module_available(mod) for mod in cap.modules)
            found[cap.name] = BackendDescriptor(
                name=cap.name,
                devices=cap.devices,
                extensions=cap.extensions,
                available=available,
            )
        if self._library_dir is not None:
            for name in scan_library_dir(self._library_dir):
                known = found.get(name)
                if known is not None:
                    if not known.available:
                        logger.info("Backend %s enabled by shared library plugin", name)
                    found[name] = BackendDescriptor(
                        name=name,
                        devices=known.devices,
                        extensions=known.extensions,
                        available=True,
                        origin="library",
                    )
                else:
                    logger.info("Shared library plugin %s has no capability descriptor", name)
                    found[name] = BackendDescriptor(
                        name=name,
                        devices=_CPU,
                        extensions=frozenset(),
                        available=True,
                        origin="library",
                    )
        return found

    def _ensure_discovered(self) -> None:
        with self._lock.read():
            if self._descriptors is not None:
                return
        with self._lock.write():
            if self._descriptors is not None:
                return
            self._gpu = self._probe_gpu()
            self._descriptors = self._discover()
            logger.info(
                "Installed backends: %s (gpu=%s)",
                ", ".join(d.name for d in self._descriptors.values() if d.available) or "none",
                self._gpu,
            )

    def refresh(self) -> None:
        """Forget the discovery result; the next lookup rediscovers."""
        with self._lock.write():
            self._descriptors = None
            self._gpu = None

    def add(self, descriptor: BackendDescriptor) -> None:
        """Register an externally supplied backend (replaces one with the same name)."""
        self._ensure_discovered()
        with self._lock.write():
            assert self._descriptors is not None
            self._descriptors[descriptor.name] = descriptor

    # lookups
    @property
    def has_gpu(self) -> bool:
        self._ensure_discovered()
        with self._lock.read():
            return bool(self._gpu)

    def descriptors(self) -> list[BackendDescriptor]:
        self._ensure_discovered()
        with self._lock.read():
            assert self._descriptors is not None
            return list(self._descriptors.values())

    def get(self, name: str) -> BackendDescriptor | None:
        self._ensure_discovered()
        with self._lock.read():
            assert self._descriptors is not None
            return self._descriptors.get(name)

    def installed(self) -> dict[str, BackendDescriptor]:
        return {d.name: d for d in self.descriptors() if d.available}

    # engines
    def register_engine(self, name: str, builder: EngineBuilder, *, replace: bool = False) -> None:
        with self._lock.write():
            if name in self._builders and not replace:
                raise ValueError(f"Engine for backend '{name}' already registered.")
            self._builders[name] = builder

    def engines(self) -> Mapping[str, EngineBuilder]:
        with self._lock.read():
            return dict(self._builders)

    def create_engine(self, choice: BackendChoice) -> InferenceEngine:
        with self._lock.read():
            builder = self._builders.get(choice.backend)
        if builder is None:
            raise BackendUnavailableError(
                f"No engine registered for backend '{choice.backend}'. "
                f"Available: {sorted(self.engines())}",
                stage="backend",
            )
        try:
            return builder(choice)
        except Exception:
            logger.exception("Failed to create engine for '%s'", choice.backend)
            raise
