"""Core configuration and domain models."""

from .config import DispatchConfig, TissueConfig
from .models import (
    ArtifactKind,
    BackendChoice,
    BackendDescriptor,
    DeviceType,
    DispatchState,
    Mask,
    ModelDescriptor,
    NodeShapes,
    ProblemKind,
    ProcessingGraphSpec,
    PyramidLevel,
    ResolutionTier,
    ResultArtifact,
    SlideHandle,
    TissueFilter,
)

__all__ = [
    "DispatchConfig",
    "TissueConfig",
    "ArtifactKind",
    "BackendChoice",
    "BackendDescriptor",
    "DeviceType",
    "DispatchState",
    "Mask",
    "ModelDescriptor",
    "NodeShapes",
    "ProblemKind",
    "ProcessingGraphSpec",
    "PyramidLevel",
    "ResolutionTier",
    "ResultArtifact",
    "SlideHandle",
    "TissueFilter",
]
