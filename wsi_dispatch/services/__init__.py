"""Catalogues, planning, tissue segmentation, and project/result persistence."""

from .catalog import ModelCatalog, parse_model_metadata
from .pipelines import PipelineCatalog, PipelineDescriptor
from .planning import LevelPlan, plan_level
from .project import Project
from .results import ResultStore
from .segmentation import ThresholdTissueSegmenter
from .wsi_loader import DefaultWSILoader

__all__ = [
    "ModelCatalog",
    "parse_model_metadata",
    "PipelineCatalog",
    "PipelineDescriptor",
    "LevelPlan",
    "plan_level",
    "Project",
    "ResultStore",
    "ThresholdTissueSegmenter",
    "DefaultWSILoader",
]
