"""Pyramid level selection for a model on a slide."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from wsi_dispatch.core.models import ModelDescriptor, PyramidLevel, ResolutionTier
from wsi_dispatch.errors import ResolutionPlanningError

logger = logging.getLogger("wsi_dispatch.planning")


@dataclass(frozen=True)
class LevelPlan:
    level: int
    resize: bool
    size: tuple[int, int]


def plan_low_resolution_level(
    levels: Sequence[PyramidLevel], input_size: tuple[int, int]
) -> int:
    """Level just finer than the first one within twice the model input.

    Levels are walked finest to coarsest; the first level whose width or height
    is at most twice the input size stops the walk and the previous level is
    returned. When no level qualifies, the coarsest level is used.
    """
    if not levels:
        raise ResolutionPlanningError("Slide has no pyramid levels", stage="planning")
    in_w, in_h = input_size
    chosen = len(levels) - 1
    for idx, lv in enumerate(levels):
        if lv.width <= 2 * in_w or lv.height <= 2 * in_h:
            chosen = idx - 1
            break
    if chosen < 0:
        raise ResolutionPlanningError(
            f"Planned pyramid level {chosen} is invalid: level 0 "
            f"({levels[0].width}x{levels[0].height}) is already within twice the model input "
            f"{in_w}x{in_h}",
            stage="planning",
        )
    return chosen


def plan_high_resolution_level(
    levels: Sequence[PyramidLevel],
    slide_magnification: float | None,
    model_magnification: int | None,
) -> int:
    """Level offset from the slide/model magnification ratio.

    The offset is ``log(slide_mag / model_mag)`` in the base of the rounded
    downsample between levels 0 and 1, truncated to an integer.
    """
    if not levels:
        raise ResolutionPlanningError("Slide has no pyramid levels", stage="planning")
    if model_magnification is None:
        logger.info("magnification_level not set for model; using pyramid level 0")
        return 0
    if slide_magnification is None or slide_magnification <= 0:
        logger.warning("Slide magnification unknown; using pyramid level 0")
        return 0

    ratio = float(slide_magnification) / float(model_magnification)
    if math.isclose(ratio, 1.0):
        return 0
    if len(levels) < 2:
        raise ResolutionPlanningError(
            f"Slide has a single level but the model needs a {ratio:g}x reduction",
            stage="planning",
        )
    base = round(levels[1].downsample)
    if base <= 1:
        raise ResolutionPlanningError(
            f"Level 1 downsample {levels[1].downsample:g} gives no usable level step",
            stage="planning",
        )
    level = int(math.log(ratio) / math.log(base) + 1e-9)
    if level < 0 or level >= len(levels):
        raise ResolutionPlanningError(
            f"Planned pyramid level {level} is outside 0..{len(levels) - 1} "
            f"(slide {slide_magnification:g}x, model {model_magnification}x)",
            stage="planning",
        )
    return level


def plan_level(
    model: ModelDescriptor,
    levels: Sequence[PyramidLevel],
    slide_magnification: float | None,
) -> LevelPlan:
    """Pick the level for ``model`` and whether the level image must be resized."""
    if model.resolution == ResolutionTier.LOW:
        level = plan_low_resolution_level(levels, model.input_size)
        resize = True
    else:
        level = plan_high_resolution_level(levels, slide_magnification, model.magnification_level)
        resize = False
    lv = levels[level]
    logger.info(
        "Planned level %d (%dx%d) for model %s (%s resolution)",
        level,
        lv.width,
        lv.height,
        model.name,
        model.resolution.value,
    )
    return LevelPlan(level=level, resize=resize, size=(lv.width, lv.height))
