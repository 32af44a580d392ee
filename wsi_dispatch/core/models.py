from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

import numpy as np

if TYPE_CHECKING:
    from wsi_dispatch.core.wsi.iwsi import IWSI
    from wsi_dispatch.pipeline.renderers import Renderer

logger = logging.getLogger("wsi_dispatch.slides")

RGB = tuple[int, int, int]


class ProblemKind(str, Enum):
    CLASSIFICATION = "classification"
    SEGMENTATION = "segmentation"
    OBJECT_DETECTION = "object_detection"


class ResolutionTier(str, Enum):
    LOW = "low"
    HIGH = "high"


class DeviceType(str, Enum):
    CPU = "cpu"
    GPU = "gpu"


class TissueFilter(str, Enum):
    """Where the patch generator gets its mask from."""

    NONE = "none"
    THRESHOLD = "threshold"
    EXISTING = "existing"


class ArtifactKind(str, Enum):
    PYRAMID = "pyramid"
    IMAGE = "image"
    TENSOR = "tensor"

    @property
    def extension(self) -> str:
        return _ARTIFACT_EXTENSIONS[self]


_ARTIFACT_EXTENSIONS = {
    ArtifactKind.PYRAMID: "tiff",
    ArtifactKind.IMAGE: "mhd",
    ArtifactKind.TENSOR: "hdf5",
}


class DispatchState(str, Enum):
    IDLE = "idle"
    BACKEND_RESOLVING = "backend_resolving"
    GRAPH_BUILDING = "graph_building"
    ATTACHED = "attached"
    FAILED = "failed"


@dataclass(frozen=True)
class PyramidLevel:
    width: int
    height: int
    downsample: float


@dataclass(frozen=True)
class ModelDescriptor:
    """Typed view over a model's metadata file. Built once by the catalog."""

    name: str
    problem: ProblemKind
    resolution: ResolutionTier
    input_width: int
    input_height: int
    nb_classes: int
    nb_channels: int = 3
    class_colors: tuple[RGB, ...] = ()
    display_name: str | None = None
    model_name: str | None = None
    magnification_level: int | None = None
    scale_factor: float | None = None
    tissue_filter: TissueFilter = TissueFilter.EXISTING
    tissue_threshold: int | None = None
    mask_threshold: float | None = None
    patch_overlap: float = 0.0
    interpolation: bool = False
    pred_threshold: float = 0.1
    nms_threshold: float = 0.5
    cpu_only: bool = False
    preferred_backend: str | None = None
    input_node: str | None = None
    output_nodes: tuple[str, ...] = ()
    batch_size: int = 1
    metadata: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def renderer_key(self) -> str:
        """Key under which this model's renderer is attached to a slide."""
        return self.model_name or self.name

    @property
    def input_size(self) -> tuple[int, int]:
        return (self.input_width, self.input_height)


@dataclass(frozen=True)
class BackendDescriptor:
    name: str
    devices: frozenset[DeviceType]
    extensions: frozenset[str]
    available: bool = False
    origin: str = "builtin"

    def supports(self, device: DeviceType) -> bool:
        return device in self.devices

    def accepts(self, model_format: str) -> bool:
        return model_format.lower().lstrip(".") in self.extensions


@dataclass(frozen=True)
class BackendChoice:
    backend: str
    model_format: str
    device: DeviceType = DeviceType.CPU


@dataclass(frozen=True)
class NodeShapes:
    """Explicit tensor node bindings; ``None`` shapes are inferred by the runtime."""

    input_node: str | None = None
    input_shape: tuple[int, ...] | None = None
    output_nodes: tuple[str, ...] = ()
    output_shapes: tuple[tuple[int, ...] | None, ...] = ()
    layout: str | None = None

    @property
    def explicit(self) -> bool:
        return self.input_shape is not None


@dataclass(frozen=True)
class ProcessingGraphSpec:
    model: str
    problem: ProblemKind
    resolution: ResolutionTier
    level: int
    resize: bool
    backend: BackendChoice
    shapes: NodeShapes
    tissue_filter: TissueFilter
    scale_factor: float | None = None
    stages: tuple[str, ...] = ()


@dataclass
class Mask:
    """Binary or label mask over a slide, usually computed on a thumbnail."""

    data: np.ndarray
    source_shape: tuple[int, int]  # level-0 (height, width)
    scale: tuple[float, float] = (1.0, 1.0)  # mask pixels per level-0 pixel (x, y)


@dataclass
class ResultArtifact:
    slide_uid: str
    pipeline: str
    name: str
    kind: ArtifactKind
    data: np.ndarray
    spacing: tuple[float, float] = (1.0, 1.0)
    path: Path | None = None


class SlideHandle:
    """A slide opened in the project, plus the renderers attached to it."""

    def __init__(
        self,
        uid: str,
        path: Path,
        *,
        levels: tuple[PyramidLevel, ...],
        magnification: float | None = None,
        mpp: float | None = None,
        wsi: IWSI | None = None,
    ) -> None:
        if not levels:
            raise ValueError(f"Slide {uid} has no pyramid levels")
        self.uid = uid
        self.path = Path(path)
        self.levels = tuple(levels)
        self.magnification = magnification
        self.mpp = mpp
        self.wsi = wsi
        self._renderers: dict[str, Renderer] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_wsi(cls, uid: str, wsi: IWSI) -> SlideHandle:
        levels = tuple(
            PyramidLevel(width=w, height=h, downsample=d) for w, h, d in wsi.pyramid()
        )
        return cls(
            uid,
            Path(wsi.path),
            levels=levels,
            magnification=float(wsi.mag) if wsi.mag is not None else None,
            mpp=wsi.mpp,
            wsi=wsi,
        )

    @property
    def full_size(self) -> tuple[int, int]:
        return (self.levels[0].width, self.levels[0].height)

    def has_renderer(self, key: str) -> bool:
        with self._lock:
            return key in self._renderers

    def get_renderer(self, key: str) -> Renderer | None:
        with self._lock:
            return self._renderers.get(key)

    def insert_renderer(self, key: str, renderer: Renderer) -> Renderer:
        """Attach ``renderer`` unless one is already attached; return the attached one."""
        with self._lock:
            return self._renderers.setdefault(key, renderer)

    @property
    def renderers(self) -> dict[str, Renderer]:
        with self._lock:
            return dict(self._renderers)

    def close(self) -> None:
        if self.wsi is not None:
            try:
                self.wsi.cleanup()
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to close slide %s: %s", self.uid, e)

    def __repr__(self) -> str:
        w, h = self.full_size
        return f"<SlideHandle {self.uid}: {w}x{h}, levels={len(self.levels)}>"


def as_metadata(values: Mapping[str, Any]) -> dict[str, str]:
    return {str(k).strip(): str(v).strip() for k, v in values.items()}
