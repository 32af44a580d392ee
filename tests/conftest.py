"""Shared fixtures: an in-memory slide, a scripted inference engine, and model folders."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Iterable, Mapping

import numpy as np
import pytest
from PIL import Image

from wsi_dispatch.backends.engines import InferenceEngine
from wsi_dispatch.backends.registry import BUILTIN_CAPABILITIES, BackendRegistry
from wsi_dispatch.core.config import DispatchConfig, TissueConfig
from wsi_dispatch.core.models import BackendChoice, NodeShapes, SlideHandle
from wsi_dispatch.core.wsi.iwsi import IWSI
from wsi_dispatch.orchestration.dispatcher import DispatchContext, ProcessDispatcher
from wsi_dispatch.services.catalog import ModelCatalog
from wsi_dispatch.services.pipelines import PipelineCatalog
from wsi_dispatch.services.segmentation import ThresholdTissueSegmenter

TISSUE_VALUE = 60

_STATS_LOCK = threading.Lock()


def tissue_image(size: int = 256, tissue: tuple[int, int, int, int] = (64, 64, 192, 192)):
    """White RGB square with one dark rectangle ``(x0, y0, x1, y1)`` of tissue."""
    img = np.full((size, size, 3), 255, dtype=np.uint8)
    x0, y0, x1, y1 = tissue
    img[y0:y1, x0:x1] = TISSUE_VALUE
    return img


class FakeWSI(IWSI):
    """Pyramid built by strided subsampling of one in-memory RGB array."""

    def __init__(
        self,
        base: np.ndarray,
        *,
        downsamples: Iterable[int] = (1,),
        mag: int | None = 40,
        path: str = "fake.svs",
    ) -> None:
        super().__init__(path=path, mpp=0.25)
        self._base = np.asarray(base)
        self._downsamples = [int(d) for d in downsamples]
        self._mag_value = mag
        self.extract_calls = 0

    def _setup(self) -> None:
        self.h, self.w = self._base.shape[:2]
        self.ds = [float(d) for d in self._downsamples]
        self.dims = [(self.w // d, self.h // d) for d in self._downsamples]
        self.nlvl = len(self.dims)
        self.mpp = self._extract_mpp()
        self.mag = self._extract_mag()

    def _extract_mpp(self):
        return self._mpp_manual

    def _extract_mag(self):
        return self._mag_value

    def _level(self, lv: int) -> np.ndarray:
        self._ensure_loaded()
        d = self._downsamples[lv]
        w, h = self.dims[lv]
        return self._base[::d, ::d][:h, :w]

    def extract(self, xy, lv, wh, *, mode="array"):
        self.extract_calls += 1
        d = self._downsamples[lv]
        x, y = xy[0] // d, xy[1] // d
        w, h = wh
        region = self._level(lv)[y : y + h, x : x + w].copy()
        if mode == "image":
            return Image.fromarray(region)
        return region

    def get_size(self, lv: int = 0):
        self._ensure_loaded()
        return self.dims[lv]

    def get_thumb(self, max_hw):
        img = Image.fromarray(self._level(0))
        img.thumbnail(max_hw)
        return img

    def cleanup(self) -> None:
        pass


class FakeEngine(InferenceEngine):
    """Engine whose outputs come from a Python callable over the NHWC batch."""

    name = "Fake"

    def __init__(
        self,
        choice: BackendChoice,
        fn: Callable[[np.ndarray], list[np.ndarray]],
        *,
        on_load: Callable[[], None] | None = None,
        stats: dict | None = None,
    ) -> None:
        super().__init__(choice)
        self.fn = fn
        self.on_load = on_load
        self.stats = stats if stats is not None else {}

    @property
    def input_layout(self) -> str:
        return "NHWC"

    def load(self, path: Path, shapes: NodeShapes) -> None:
        with _STATS_LOCK:
            self.stats["loads"] = self.stats.get("loads", 0) + 1
            self.stats["path"] = Path(path)
            self.stats["shapes"] = shapes
        if self.on_load is not None:
            self.on_load()
        self.shapes = shapes

    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        with _STATS_LOCK:
            self.stats["runs"] = self.stats.get("runs", 0) + 1
            self.stats["batch_sizes"] = self.stats.get("batch_sizes", []) + [batch.shape[0]]
        return self.fn(batch)


def dark_fraction(batch: np.ndarray) -> np.ndarray:
    """Per-pixel "is tissue" score for an NHWC batch."""
    return (batch[..., :3].mean(axis=-1) < 128).astype(np.float32)


def classify_fn(batch: np.ndarray) -> list[np.ndarray]:
    frac = dark_fraction(batch).mean(axis=(1, 2))
    return [np.stack([1.0 - frac, frac], axis=1)]


def segment_fn(batch: np.ndarray) -> list[np.ndarray]:
    dark = dark_fraction(batch)
    return [np.stack([1.0 - dark, dark], axis=-1)]


def write_model(
    models_dir: Path,
    name: str,
    metadata: Mapping[str, object],
    *,
    formats: Iterable[str] = ("xml",),
    anchors: str | None = None,
) -> Path:
    folder = models_dir / name
    folder.mkdir(parents=True, exist_ok=True)
    lines = [f"{key}={value}" for key, value in metadata.items()]
    (folder / f"{name}.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")
    for fmt in formats:
        (folder / f"{name}.{fmt}").write_bytes(b"weights")
    if anchors is not None:
        (folder / f"{name}.anchors").write_text(anchors, encoding="utf-8")
    return folder


CLASSIFIER = {
    "problem": "classification",
    "resolution": "high",
    "input_img_size_x": 64,
    "input_img_size_y": 64,
    "nb_classes": 2,
    "class_colors": "255,0,0;0,255,0",
    "magnification_level": 40,
    "tissue_threshold": "none",
}

SEGMENTER = {
    "problem": "segmentation",
    "resolution": "high",
    "input_img_size_x": 64,
    "input_img_size_y": 64,
    "nb_classes": 2,
    "class_colors": "255,0,0;0,255,0",
    "magnification_level": 40,
    "tissue_threshold": "none",
}

LOW_RES_SEGMENTER = {
    "problem": "segmentation",
    "resolution": "low",
    "input_img_size_x": 64,
    "input_img_size_y": 64,
    "nb_classes": 2,
    "class_colors": "0,0,0;0,0,255",
}


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def engine_stats() -> dict:
    return {}


@pytest.fixture
def engine_fn():
    """Scripted network; tests may swap ``holder["fn"]``."""
    return {"fn": classify_fn, "on_load": None}


@pytest.fixture
def registry(engine_fn, engine_stats) -> BackendRegistry:
    """OpenVINO and TensorFlow "installed", both served by the fake engine."""
    installed = {"openvino", "tensorflow"}
    reg = BackendRegistry(
        BUILTIN_CAPABILITIES,
        module_available=lambda mod: mod in installed,
        gpu_available=False,
    )
    for name in ("OpenVINO", "TensorFlow"):
        reg.register_engine(
            name,
            lambda choice: FakeEngine(
                choice, engine_fn["fn"], on_load=engine_fn["on_load"], stats=engine_stats
            ),
        )
    return reg


@pytest.fixture
def config(tmp_path: Path, models_dir: Path) -> DispatchConfig:
    return DispatchConfig(
        root=tmp_path,
        models_dir=models_dir,
        pipelines_dir=tmp_path / "pipelines",
        device="cpu",
        max_workers=2,
        tissue=TissueConfig(threshold=85, dilate=3, erode=3),
    ).validated()


@pytest.fixture
def context(config: DispatchConfig, registry: BackendRegistry) -> DispatchContext:
    catalog = ModelCatalog(config.models_dir)
    pipelines = PipelineCatalog(config.pipelines_dir)
    return DispatchContext(
        config=config,
        catalog=catalog,
        registry=registry,
        pipelines=pipelines,
        segmenter=ThresholdTissueSegmenter(config.tissue),
    )


@pytest.fixture
def dispatcher(context: DispatchContext):
    d = ProcessDispatcher(context)
    yield d
    d.shutdown()


@pytest.fixture
def slide() -> SlideHandle:
    wsi = FakeWSI(tissue_image(256), downsamples=(1, 2, 4), mag=40)
    return SlideHandle.from_wsi("slide-1", wsi)


@pytest.fixture
def gate():
    """Event pair for holding an engine inside ``load``."""
    return {"entered": threading.Event(), "release": threading.Event()}
