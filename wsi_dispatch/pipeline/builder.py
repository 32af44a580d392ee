"""Graph assembly: one strategy per (problem, resolution tier) pair.

A strategy knows which stages its graph has, which renderer displays the
result, and how to drive the stages once the network is loaded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from wsi_dispatch.backends.engines import InferenceEngine
from wsi_dispatch.backends.registry import BackendRegistry
from wsi_dispatch.backends.shapes import bind_shapes
from wsi_dispatch.core.models import (
    BackendChoice,
    Mask,
    ModelDescriptor,
    ProblemKind,
    ProcessingGraphSpec,
    ResolutionTier,
    SlideHandle,
    TissueFilter,
)
from wsi_dispatch.core.wsi.iwsi import IWSI
from wsi_dispatch.errors import ArtifactIOError, ConfigurationError, DispatchError
from wsi_dispatch.pipeline.nodes import (
    BoxAccumulator,
    ImageData,
    ImageResizer,
    NeuralNetworkStage,
    NonMaximumSuppression,
    PatchGenerator,
    PatchStitcher,
    TissueSegmentation,
    YoloDecoder,
    labels_from_scores,
    mask_from_labels,
)
from wsi_dispatch.pipeline.renderers import (
    BoundingBoxRenderer,
    HeatmapRenderer,
    Renderer,
    SegmentationRenderer,
)
from wsi_dispatch.services.catalog import Anchors, ModelCatalog
from wsi_dispatch.services.interfaces import SegmentationService
from wsi_dispatch.services.planning import LevelPlan

logger = logging.getLogger("wsi_dispatch.pipeline.builder")

TISSUE_KEY = "tissue"

HEATMAP_MAX_OPACITY = 0.6
HIGH_RES_SEGMENTATION_OPACITY = (0.7, 1.0)
LOW_RES_SEGMENTATION_OPACITY = 0.4


@dataclass
class ProcessingGraph:
    """A built graph; :meth:`execute` loads the network and fills the renderer."""

    spec: ProcessingGraphSpec
    renderer: Renderer
    slide: SlideHandle
    model: ModelDescriptor
    weights: Path
    registry: BackendRegistry
    segmenter: SegmentationService | None = None
    anchors: Anchors | None = None
    runner: Callable[[ProcessingGraph, InferenceEngine], Any] | None = field(
        default=None, repr=False
    )

    @property
    def wsi(self) -> IWSI:
        if self.slide.wsi is None:
            raise ArtifactIOError("Slide has no open reader", slide=self.slide.uid, stage="read")
        return self.slide.wsi

    def execute(self, before_load: Callable[[], None] | None = None) -> Renderer:
        """Load the network, run every stage and return the populated renderer.

        ``before_load`` runs right before the network is loaded; raising from
        it aborts the run with nothing loaded.
        """
        assert self.runner is not None
        engine = self.registry.create_engine(self.spec.backend)
        if before_load is not None:
            before_load()
        logger.info(
            "Loading %s on %s/%s (%s)",
            self.weights.name,
            self.spec.backend.backend,
            self.spec.backend.device.value,
            self.spec.backend.model_format,
        )
        try:
            engine.load(self.weights, self.spec.shapes)
            self.renderer.data = self.runner(self, engine)
        except DispatchError as e:
            raise e.with_context(slide=self.slide.uid, model=self.model.name, stage="execute")
        finally:
            engine.cleanup()
        return self.renderer

    def network_stage(self, engine: InferenceEngine) -> NeuralNetworkStage:
        return NeuralNetworkStage(
            engine,
            problem=self.model.problem,
            nb_classes=self.model.nb_classes,
            nb_channels=self.model.nb_channels,
            scale_factor=self.spec.scale_factor,
            batch_size=self.model.batch_size,
        )

    def patch_mask(self) -> Mask | None:
        """Mask feeding the patch generator, per the model's tissue filter."""
        if self.spec.tissue_filter == TissueFilter.NONE:
            logger.info("No tissue filtering before %s", self.model.name)
            return None
        if self.spec.tissue_filter == TissueFilter.THRESHOLD:
            if self.segmenter is None:
                raise ConfigurationError(
                    "tissue_threshold is set but no tissue segmenter is configured",
                    model=self.model.name,
                    stage="tissue",
                )
            logger.info(
                "Thresholding tissue at %s before %s", self.model.tissue_threshold, self.model.name
            )
            return TissueSegmentation(self.segmenter, self.model.tissue_threshold).process(self.wsi)
        return existing_mask(self.slide, exclude=self.model.renderer_key)

    def patches(self) -> PatchGenerator:
        return PatchGenerator(
            self.wsi,
            self.spec.level,
            self.model.input_size,
            overlap=self.model.patch_overlap,
            mask=self.patch_mask(),
            mask_threshold=self.model.mask_threshold,
        )


def existing_mask(slide: SlideHandle, *, exclude: str | None = None) -> Mask | None:
    """Mask from a label map already attached to ``slide``; the tissue result wins."""
    renderers = slide.renderers
    order = [TISSUE_KEY] + sorted(k for k in renderers if k != TISSUE_KEY)
    for key in order:
        if key == exclude:
            continue
        renderer = renderers.get(key)
        if isinstance(renderer, SegmentationRenderer) and isinstance(renderer.data, ImageData):
            logger.info("Filtering patches with existing map '%s'", key)
            return mask_from_labels(renderer.data, slide.full_size)
    logger.info("No existing segmentation on %s; every patch is processed", slide.uid)
    return None


def _colors(model: ModelDescriptor) -> dict[int, tuple[int, int, int]]:
    count = min(model.nb_classes, len(model.class_colors))
    return {i: model.class_colors[i] for i in range(count)}


# strategies
def _run_classification(graph: ProcessingGraph, engine: InferenceEngine):
    generator = graph.patches()
    stitcher = PatchStitcher(ProblemKind.CLASSIFICATION, generator, graph.model.nb_classes)
    for patch, outputs in graph.network_stage(engine).run(generator):
        stitcher.add(patch, outputs)
    logger.info("Classified %d patches (%d skipped)", stitcher.count, generator.skipped)
    return stitcher.result()


def _run_segmentation_high(graph: ProcessingGraph, engine: InferenceEngine):
    generator = graph.patches()
    stitcher = PatchStitcher(ProblemKind.SEGMENTATION, generator, graph.model.nb_classes)
    for patch, outputs in graph.network_stage(engine).run(generator):
        stitcher.add(patch, outputs)
    logger.info("Segmented %d patches (%d skipped)", stitcher.count, generator.skipped)
    return stitcher.result()


def _run_detection(graph: ProcessingGraph, engine: InferenceEngine):
    assert graph.anchors is not None
    model = graph.model
    generator = graph.patches()
    decoder = YoloDecoder(
        graph.anchors,
        nb_classes=model.nb_classes,
        input_size=model.input_size,
        pred_threshold=model.pred_threshold,
    )
    nms = NonMaximumSuppression(model.nms_threshold)
    accumulator = BoxAccumulator(generator.downsample)
    for patch, outputs in graph.network_stage(engine).run(generator):
        accumulator.add(patch, nms.process(decoder.decode(outputs)))
    boxes = accumulator.result()
    logger.info("Detected %d boxes", len(boxes))
    return boxes


def _run_segmentation_low(graph: ProcessingGraph, engine: InferenceEngine):
    model = graph.model
    wsi = graph.wsi
    level_image = wsi.read_level(graph.spec.level)
    level_h, level_w = level_image.shape[:2]
    resized = ImageResizer(model.input_width, model.input_height).process(level_image)
    outputs = graph.network_stage(engine).infer([resized])[0]
    labels = labels_from_scores(outputs[0])
    restored = ImageResizer(level_w, level_h, nearest=True).process(labels)
    full_w, full_h = graph.slide.full_size
    spacing = (full_w / float(level_w), full_h / float(level_h))
    return ImageData(restored, spacing)


@dataclass(frozen=True)
class GraphStrategy:
    stages: tuple[str, ...]
    renderer: Callable[[ModelDescriptor], Renderer]
    run: Callable[[ProcessingGraph, InferenceEngine], Any]
    needs_anchors: bool = False


STRATEGIES: dict[tuple[ProblemKind, ResolutionTier], GraphStrategy] = {
    (ProblemKind.CLASSIFICATION, ResolutionTier.HIGH): GraphStrategy(
        stages=("patch_generator", "neural_network", "patch_stitcher", "heatmap_renderer"),
        renderer=lambda m: HeatmapRenderer(
            interpolation=m.interpolation,
            max_opacity=HEATMAP_MAX_OPACITY,
            channel_colors=_colors(m),
        ),
        run=_run_classification,
    ),
    (ProblemKind.SEGMENTATION, ResolutionTier.HIGH): GraphStrategy(
        stages=("patch_generator", "neural_network", "patch_stitcher", "segmentation_renderer"),
        renderer=lambda m: SegmentationRenderer(
            opacity=HIGH_RES_SEGMENTATION_OPACITY[0],
            border_opacity=HIGH_RES_SEGMENTATION_OPACITY[1],
            colors=_colors(m),
            pyramid=True,
        ),
        run=_run_segmentation_high,
    ),
    (ProblemKind.OBJECT_DETECTION, ResolutionTier.HIGH): GraphStrategy(
        stages=(
            "patch_generator",
            "neural_network",
            "yolo_decoder",
            "non_maximum_suppression",
            "box_accumulator",
            "bounding_box_renderer",
        ),
        renderer=lambda m: BoundingBoxRenderer(colors=_colors(m)),
        run=_run_detection,
        needs_anchors=True,
    ),
    (ProblemKind.SEGMENTATION, ResolutionTier.LOW): GraphStrategy(
        stages=("image_resizer", "neural_network", "image_resizer", "segmentation_renderer"),
        renderer=lambda m: SegmentationRenderer(
            opacity=LOW_RES_SEGMENTATION_OPACITY,
            border_opacity=LOW_RES_SEGMENTATION_OPACITY,
            colors=_colors(m),
            pyramid=False,
        ),
        run=_run_segmentation_low,
    ),
}


class GraphBuilder:
    """Assemble the processing graph for a model on a slide."""

    def __init__(
        self,
        registry: BackendRegistry,
        catalog: ModelCatalog,
        segmenter: SegmentationService | None = None,
    ) -> None:
        self.registry = registry
        self.catalog = catalog
        self.segmenter = segmenter

    @staticmethod
    def strategy_for(model: ModelDescriptor) -> GraphStrategy:
        strategy = STRATEGIES.get((model.problem, model.resolution))
        if strategy is None:
            raise ConfigurationError(
                f"No graph for {model.problem.value} at {model.resolution.value} resolution",
                model=model.name,
                stage="graph",
            )
        return strategy

    def build(
        self,
        slide: SlideHandle,
        model: ModelDescriptor,
        choice: BackendChoice,
        plan: LevelPlan,
    ) -> ProcessingGraph:
        strategy = self.strategy_for(model)
        if model.scale_factor is None:
            logger.info("No scale_factor for %s; intensities are not normalised", model.name)
        tissue_filter = model.tissue_filter
        stages = strategy.stages
        if model.resolution == ResolutionTier.HIGH and tissue_filter != TissueFilter.NONE:
            stage = (
                "tissue_segmentation" if tissue_filter == TissueFilter.THRESHOLD else "existing_map"
            )
            stages = (stage,) + stages
        spec = ProcessingGraphSpec(
            model=model.name,
            problem=model.problem,
            resolution=model.resolution,
            level=plan.level,
            resize=plan.resize,
            backend=choice,
            shapes=bind_shapes(model, choice),
            tissue_filter=(
                tissue_filter if model.resolution == ResolutionTier.HIGH else TissueFilter.NONE
            ),
            scale_factor=model.scale_factor,
            stages=stages,
        )
        anchors = self.catalog.anchors(model.name) if strategy.needs_anchors else None
        weights = self.catalog.weights_path(model.name, choice.model_format)
        if not weights.is_file():
            raise ArtifactIOError(f"Model weights not found: {weights}", model=model.name)
        logger.debug("Graph for %s: %s", model.name, " -> ".join(stages))
        return ProcessingGraph(
            spec=spec,
            renderer=strategy.renderer(model),
            slide=slide,
            model=model,
            weights=weights,
            registry=self.registry,
            segmenter=self.segmenter,
            anchors=anchors,
            runner=strategy.run,
        )
