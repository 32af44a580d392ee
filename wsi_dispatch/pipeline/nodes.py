"""Processing stages of an inference graph and the data passed between them.

Coordinates: patches carry their top-left corner in pixels of the level they
were read from. ``spacing`` on outputs is the size of one output pixel in
level-0 pixels, ``(sx, sy)``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator, Sequence

import cv2
import numpy as np

from wsi_dispatch.backends.engines import InferenceEngine
from wsi_dispatch.core.models import Mask, ProblemKind
from wsi_dispatch.core.wsi.iwsi import IWSI
from wsi_dispatch.errors import ConfigurationError

if TYPE_CHECKING:
    # services re-exports the result store, which imports this module
    from wsi_dispatch.services.interfaces import SegmentationService

logger = logging.getLogger("wsi_dispatch.pipeline.nodes")

DEFAULT_MASK_THRESHOLD = 0.5
PAD_VALUE = 255


@dataclass
class ImageData:
    array: np.ndarray
    spacing: tuple[float, float] = (1.0, 1.0)


@dataclass
class TensorData:
    array: np.ndarray
    spacing: tuple[float, float] = (1.0, 1.0)


@dataclass
class BoxSet:
    """Axis-aligned boxes ``(x0, y0, x1, y1)`` with a score and class label each."""

    boxes: np.ndarray = field(default_factory=lambda: np.zeros((0, 4), dtype=np.float32))
    scores: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.float32))
    labels: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.int32))
    spacing: tuple[float, float] = (1.0, 1.0)

    def __len__(self) -> int:
        return int(self.boxes.shape[0])

    def to_array(self) -> np.ndarray:
        """``(N, 6)`` float array: box, score, label."""
        return np.concatenate(
            [
                self.boxes.reshape(-1, 4).astype(np.float32),
                self.scores.reshape(-1, 1).astype(np.float32),
                self.labels.reshape(-1, 1).astype(np.float32),
            ],
            axis=1,
        )

    @classmethod
    def from_array(cls, arr: np.ndarray, spacing: tuple[float, float] = (1.0, 1.0)) -> BoxSet:
        arr = np.asarray(arr, dtype=np.float32).reshape(-1, 6)
        return cls(
            boxes=arr[:, :4].copy(),
            scores=arr[:, 4].copy(),
            labels=arr[:, 5].astype(np.int32),
            spacing=spacing,
        )

    def select(self, keep: np.ndarray) -> BoxSet:
        return BoxSet(self.boxes[keep], self.scores[keep], self.labels[keep], self.spacing)


@dataclass
class Patch:
    image: np.ndarray
    x: int
    y: int
    row: int
    col: int
    width: int  # valid extent before padding
    height: int


def mask_from_labels(data: ImageData, full_size: tuple[int, int]) -> Mask:
    """Turn a label map attached to a slide into a patch-filter mask (non-zero = keep)."""
    sx, sy = data.spacing
    full_w, full_h = full_size
    return Mask(
        data=(np.asarray(data.array) > 0).astype(np.uint8),
        source_shape=(int(full_h), int(full_w)),
        scale=(1.0 / float(sx), 1.0 / float(sy)),
    )


class TissueSegmentation:
    """Threshold tissue detection feeding the patch generator."""

    def __init__(self, segmenter: SegmentationService, threshold: int | None = None) -> None:
        self.segmenter = segmenter
        self.threshold = threshold

    def process(self, wsi: IWSI) -> Mask:
        return self.segmenter.segment_thumbnail(wsi, threshold=self.threshold)


class PatchGenerator:
    """Tile one pyramid level, skipping tiles that fall outside the mask."""

    def __init__(
        self,
        wsi: IWSI,
        level: int,
        patch_size: tuple[int, int],
        *,
        overlap: float = 0.0,
        mask: Mask | None = None,
        mask_threshold: float | None = None,
    ) -> None:
        if not 0.0 <= overlap < 1.0:
            raise ConfigurationError(f"patch_overlap must be in [0, 1), got {overlap}")
        self.wsi = wsi
        self.level = level
        self.patch_w, self.patch_h = patch_size
        self.mask = mask
        self.mask_threshold = DEFAULT_MASK_THRESHOLD if mask_threshold is None else mask_threshold
        self.level_w, self.level_h = wsi.get_size(level)
        self.downsample = wsi.level_downsample(level)
        self.stride_x = max(1, int(round(self.patch_w * (1.0 - overlap))))
        self.stride_y = max(1, int(round(self.patch_h * (1.0 - overlap))))
        self.skipped = 0

    @property
    def grid_shape(self) -> tuple[int, int]:
        """``(rows, cols)`` of the tiling."""
        cols = 1 + math.ceil(max(0, self.level_w - self.patch_w) / self.stride_x)
        rows = 1 + math.ceil(max(0, self.level_h - self.patch_h) / self.stride_y)
        return rows, cols

    def _coverage(self, x: int, y: int, w: int, h: int) -> float:
        assert self.mask is not None
        sx, sy = self.mask.scale
        data = self.mask.data
        ds = self.downsample
        x0 = int(math.floor(x * ds * sx))
        y0 = int(math.floor(y * ds * sy))
        x1 = max(x0 + 1, int(math.ceil((x + w) * ds * sx)))
        y1 = max(y0 + 1, int(math.ceil((y + h) * ds * sy)))
        region = data[
            min(y0, data.shape[0] - 1) : min(y1, data.shape[0]),
            min(x0, data.shape[1] - 1) : min(x1, data.shape[1]),
        ]
        if region.size == 0:
            return 0.0
        return float(np.count_nonzero(region)) / float(region.size)

    def _read(self, x: int, y: int, w: int, h: int) -> np.ndarray:
        ds = self.downsample
        region = np.asarray(
            self.wsi.extract((int(round(x * ds)), int(round(y * ds))), self.level, (w, h))
        )
        if region.ndim == 2:
            region = region[..., None]
        if w == self.patch_w and h == self.patch_h:
            return region
        padded = np.full((self.patch_h, self.patch_w, region.shape[2]), PAD_VALUE, region.dtype)
        padded[:h, :w] = region[:h, :w]
        return padded

    def __iter__(self) -> Iterator[Patch]:
        rows, cols = self.grid_shape
        self.skipped = 0
        for row in range(rows):
            y = row * self.stride_y
            h = min(self.patch_h, self.level_h - y)
            for col in range(cols):
                x = col * self.stride_x
                w = min(self.patch_w, self.level_w - x)
                if self.mask is not None and self._coverage(x, y, w, h) < self.mask_threshold:
                    self.skipped += 1
                    continue
                yield Patch(self._read(x, y, w, h), x=x, y=y, row=row, col=col, width=w, height=h)


def _batched(items: Iterable[Patch], size: int) -> Iterator[list[Patch]]:
    batch: list[Patch] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class NeuralNetworkStage:
    """Normalise, batch and run patches through a loaded engine."""

    def __init__(
        self,
        engine: InferenceEngine,
        *,
        problem: ProblemKind,
        nb_classes: int,
        nb_channels: int = 3,
        scale_factor: float | None = None,
        batch_size: int = 1,
    ) -> None:
        self.engine = engine
        self.problem = problem
        self.nb_classes = nb_classes
        self.nb_channels = nb_channels
        self.scale_factor = scale_factor
        self.batch_size = max(1, int(batch_size))

    def preprocess(self, images: Sequence[np.ndarray]) -> np.ndarray:
        batch = np.stack([np.asarray(img) for img in images]).astype(np.float32)
        if batch.ndim == 3:
            batch = batch[..., None]
        if batch.shape[-1] != self.nb_channels:
            if self.nb_channels == 1:
                batch = batch.mean(axis=-1, keepdims=True)
            else:
                batch = batch[..., : self.nb_channels]
        if self.scale_factor is not None:
            batch *= self.scale_factor
        if self.engine.input_layout == "NCHW":
            batch = batch.transpose(0, 3, 1, 2)
        return np.ascontiguousarray(batch)

    def _to_nhwc(self, out: np.ndarray) -> np.ndarray:
        if out.ndim == 4 and out.shape[1] == self.nb_classes and out.shape[-1] != self.nb_classes:
            return out.transpose(0, 2, 3, 1)
        return out

    def infer(self, images: Sequence[np.ndarray]) -> list[list[np.ndarray]]:
        """Outputs per image, each a list with one array per output node."""
        outputs = self.engine.run(self.preprocess(images))
        if self.problem == ProblemKind.SEGMENTATION:
            outputs = [self._to_nhwc(np.asarray(o)) for o in outputs]
        return [[np.asarray(o)[i] for o in outputs] for i in range(len(images))]

    def run(self, patches: Iterable[Patch]) -> Iterator[tuple[Patch, list[np.ndarray]]]:
        for batch in _batched(patches, self.batch_size):
            for patch, outs in zip(batch, self.infer([p.image for p in batch])):
                yield patch, outs


def labels_from_scores(scores: np.ndarray) -> np.ndarray:
    scores = np.asarray(scores)
    if scores.ndim == 3:
        return np.argmax(scores, axis=-1).astype(np.uint8)
    return scores.astype(np.uint8)


class PatchStitcher:
    """Reassemble per-patch outputs into one map over the tiled level."""

    def __init__(
        self,
        problem: ProblemKind,
        generator: PatchGenerator,
        nb_classes: int,
    ) -> None:
        if problem == ProblemKind.OBJECT_DETECTION:
            raise ConfigurationError("Detections are accumulated, not stitched")
        self.problem = problem
        self.nb_classes = nb_classes
        ds = generator.downsample
        if problem == ProblemKind.CLASSIFICATION:
            rows, cols = generator.grid_shape
            self._out = np.zeros((rows, cols, nb_classes), dtype=np.float32)
            self.spacing = (generator.stride_x * ds, generator.stride_y * ds)
        else:
            self._out = np.zeros((generator.level_h, generator.level_w), dtype=np.uint8)
            self.spacing = (ds, ds)
        self.count = 0

    def add(self, patch: Patch, outputs: Sequence[np.ndarray]) -> None:
        out = np.asarray(outputs[0])
        if self.problem == ProblemKind.CLASSIFICATION:
            self._out[patch.row, patch.col] = out.reshape(-1)[: self.nb_classes]
        else:
            labels = labels_from_scores(out)
            self._out[patch.y : patch.y + patch.height, patch.x : patch.x + patch.width] = labels[
                : patch.height, : patch.width
            ]
        self.count += 1

    def result(self) -> TensorData | ImageData:
        if self.problem == ProblemKind.CLASSIFICATION:
            return TensorData(self._out, self.spacing)
        return ImageData(self._out, self.spacing)


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


class YoloDecoder:
    """Decode YOLO heads (three anchors per output level) into patch-space boxes."""

    def __init__(
        self,
        anchors: Sequence[Sequence[tuple[float, float]]],
        *,
        nb_classes: int,
        input_size: tuple[int, int],
        pred_threshold: float = 0.1,
    ) -> None:
        self.anchors = [np.asarray(level, dtype=np.float32).reshape(-1, 2) for level in anchors]
        self.nb_classes = nb_classes
        self.input_w, self.input_h = input_size
        self.pred_threshold = pred_threshold

    def _grid(self, out: np.ndarray, n_anchors: int) -> np.ndarray:
        depth = n_anchors * (5 + self.nb_classes)
        if out.ndim != 3:
            raise ConfigurationError(f"Detection output must be 3D per patch, got {out.shape}")
        if out.shape[-1] != depth and out.shape[0] == depth:
            out = out.transpose(1, 2, 0)
        if out.shape[-1] != depth:
            raise ConfigurationError(
                f"Detection output depth {out.shape[-1]} does not match "
                f"{n_anchors} anchors x (5 + {self.nb_classes})"
            )
        gh, gw = out.shape[:2]
        return out.reshape(gh, gw, n_anchors, 5 + self.nb_classes)

    def decode(self, outputs: Sequence[np.ndarray]) -> BoxSet:
        if len(outputs) != len(self.anchors):
            raise ConfigurationError(
                f"Network returned {len(outputs)} detection outputs for "
                f"{len(self.anchors)} anchor levels"
            )
        boxes, scores, labels = [], [], []
        for out, anchors in zip(outputs, self.anchors):
            grid = self._grid(np.asarray(out, dtype=np.float32), anchors.shape[0])
            gh, gw = grid.shape[:2]
            cy, cx = np.meshgrid(np.arange(gh), np.arange(gw), indexing="ij")
            bx = (_sigmoid(grid[..., 0]) + cx[..., None]) * (self.input_w / gw)
            by = (_sigmoid(grid[..., 1]) + cy[..., None]) * (self.input_h / gh)
            bw = np.exp(grid[..., 2]) * anchors[:, 0]
            bh = np.exp(grid[..., 3]) * anchors[:, 1]
            cls_prob = _sigmoid(grid[..., 5:])
            score = _sigmoid(grid[..., 4]) * cls_prob.max(axis=-1)
            keep = score >= self.pred_threshold
            if not np.any(keep):
                continue
            boxes.append(
                np.stack(
                    [
                        bx[keep] - bw[keep] / 2,
                        by[keep] - bh[keep] / 2,
                        bx[keep] + bw[keep] / 2,
                        by[keep] + bh[keep] / 2,
                    ],
                    axis=1,
                )
            )
            scores.append(score[keep])
            labels.append(cls_prob.argmax(axis=-1)[keep])
        if not boxes:
            return BoxSet()
        return BoxSet(
            np.concatenate(boxes).astype(np.float32),
            np.concatenate(scores).astype(np.float32),
            np.concatenate(labels).astype(np.int32),
        )


class NonMaximumSuppression:
    """Per-class greedy suppression through OpenCV."""

    def __init__(self, threshold: float = 0.5) -> None:
        self.threshold = threshold

    def process(self, boxes: BoxSet) -> BoxSet:
        if len(boxes) == 0:
            return boxes
        keep: list[int] = []
        xywh = boxes.boxes.copy()
        xywh[:, 2:] -= xywh[:, :2]
        for label in np.unique(boxes.labels):
            idx = np.flatnonzero(boxes.labels == label)
            picked = cv2.dnn.NMSBoxes(
                xywh[idx].tolist(), boxes.scores[idx].tolist(), 0.0, float(self.threshold)
            )
            keep.extend(idx[np.asarray(picked, dtype=np.int64).reshape(-1)].tolist())
        return boxes.select(np.asarray(sorted(keep), dtype=np.int64))


class BoxAccumulator:
    """Collect per-patch boxes in level-0 coordinates."""

    def __init__(self, downsample: float) -> None:
        self.downsample = downsample
        self._sets: list[BoxSet] = []

    def add(self, patch: Patch, boxes: BoxSet) -> None:
        if len(boxes) == 0:
            return
        shifted = boxes.boxes + np.array([patch.x, patch.y, patch.x, patch.y], dtype=np.float32)
        self._sets.append(
            BoxSet(shifted * self.downsample, boxes.scores, boxes.labels, (1.0, 1.0))
        )

    def result(self) -> BoxSet:
        if not self._sets:
            return BoxSet()
        return BoxSet(
            np.concatenate([s.boxes for s in self._sets]),
            np.concatenate([s.scores for s in self._sets]),
            np.concatenate([s.labels for s in self._sets]),
        )


class ImageResizer:
    def __init__(self, width: int, height: int, *, nearest: bool = False) -> None:
        self.width = int(width)
        self.height = int(height)
        self.interpolation = cv2.INTER_NEAREST if nearest else cv2.INTER_LINEAR

    def process(self, image: np.ndarray) -> np.ndarray:
        image = np.asarray(image)
        if image.shape[1] == self.width and image.shape[0] == self.height:
            return image
        return cv2.resize(image, (self.width, self.height), interpolation=self.interpolation)
