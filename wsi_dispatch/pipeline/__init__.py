"""Processing graph: stages, renderers, and per-model graph assembly."""

from .builder import TISSUE_KEY, GraphBuilder, ProcessingGraph
from .renderers import (
    BoundingBoxRenderer,
    HeatmapRenderer,
    ImagePyramidRenderer,
    Renderer,
    SegmentationRenderer,
    View,
)

__all__ = [
    "TISSUE_KEY",
    "GraphBuilder",
    "ProcessingGraph",
    "BoundingBoxRenderer",
    "HeatmapRenderer",
    "ImagePyramidRenderer",
    "Renderer",
    "SegmentationRenderer",
    "View",
]
