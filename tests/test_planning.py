"""Tests for pyramid level planning."""

from __future__ import annotations

import math

import pytest
from hypothesis import assume, given
from hypothesis import strategies as st

from wsi_dispatch.core.models import ModelDescriptor, ProblemKind, PyramidLevel, ResolutionTier
from wsi_dispatch.errors import ResolutionPlanningError
from wsi_dispatch.services.planning import (
    plan_high_resolution_level,
    plan_level,
    plan_low_resolution_level,
)


def pyramid(size: int, count: int, step: int = 2) -> tuple[PyramidLevel, ...]:
    return tuple(
        PyramidLevel(size // step**i, size // step**i, float(step**i)) for i in range(count)
    )


class TestLowResolution:
    """The level before the first one within twice the model input."""

    def test_picks_level_before_threshold(self):
        # 1024, 512, 256, 128: 128 <= 2 * 64 stops the walk at index 3
        assert plan_low_resolution_level(pyramid(1024, 4), (64, 64)) == 2

    def test_either_dimension_stops_the_walk(self):
        # widths never drop to 512; the height of level 2 does
        levels = (
            PyramidLevel(8000, 2000, 1.0),
            PyramidLevel(4000, 1000, 2.0),
            PyramidLevel(2000, 500, 4.0),
        )
        assert plan_low_resolution_level(levels, (256, 256)) == 1

    def test_coarsest_when_nothing_is_small_enough(self):
        assert plan_low_resolution_level(pyramid(8192, 3), (64, 64)) == 2

    def test_level_zero_already_small(self):
        with pytest.raises(ResolutionPlanningError, match="level 0"):
            plan_low_resolution_level(pyramid(100, 1), (64, 64))

    def test_no_levels(self):
        with pytest.raises(ResolutionPlanningError):
            plan_low_resolution_level((), (64, 64))

    @given(
        size=st.integers(min_value=64, max_value=1 << 16),
        count=st.integers(min_value=1, max_value=8),
        inp=st.integers(min_value=8, max_value=1024),
    )
    def test_chosen_level_exceeds_twice_input(self, size, count, inp):
        levels = pyramid(size, count)
        assume(levels[-1].width > 0)
        try:
            level = plan_low_resolution_level(levels, (inp, inp))
        except ResolutionPlanningError:
            assert levels[0].width <= 2 * inp
            return
        assert 0 <= level < count
        assert levels[level].width > 2 * inp
        if level + 1 < count:
            assert levels[level + 1].width <= 2 * inp


class TestHighResolution:
    """The magnification ratio in the base of the level-1 downsample."""

    def test_ratio_four_base_four(self):
        levels = pyramid(4096, 3, step=4)
        assert plan_high_resolution_level(levels, 40, 10) == 1

    def test_same_magnification(self):
        assert plan_high_resolution_level(pyramid(4096, 3), 40, 40) == 0

    def test_ratio_truncates(self):
        # log2(40 / 15) = 1.41
        assert plan_high_resolution_level(pyramid(4096, 4), 40, 15) == 1

    def test_rounded_base(self):
        levels = (
            PyramidLevel(4000, 4000, 1.0),
            PyramidLevel(1000, 1000, 4.0002),
            PyramidLevel(250, 250, 16.001),
        )
        assert plan_high_resolution_level(levels, 40, 2.5) == 2

    def test_unknown_slide_magnification(self, caplog):
        assert plan_high_resolution_level(pyramid(4096, 3), None, 20) == 0
        assert "magnification unknown" in caplog.text

    def test_model_without_magnification(self):
        assert plan_high_resolution_level(pyramid(4096, 3), 40, None) == 0

    def test_model_wants_more_than_slide(self):
        with pytest.raises(ResolutionPlanningError, match="outside"):
            plan_high_resolution_level(pyramid(4096, 3), 10, 40)

    def test_beyond_coarsest_level(self):
        with pytest.raises(ResolutionPlanningError, match="outside"):
            plan_high_resolution_level(pyramid(4096, 2), 40, 5)

    def test_single_level_slide(self):
        with pytest.raises(ResolutionPlanningError, match="single level"):
            plan_high_resolution_level(pyramid(4096, 1), 40, 10)

    @given(exp=st.integers(min_value=0, max_value=5), step=st.sampled_from([2, 4]))
    def test_power_of_base(self, exp, step):
        levels = pyramid(1 << 20, 6, step=step)
        slide_mag = 5 * step**exp
        assert plan_high_resolution_level(levels, slide_mag, 5) == exp


def _model(resolution: ResolutionTier, magnification: int | None = None) -> ModelDescriptor:
    return ModelDescriptor(
        name="m",
        problem=ProblemKind.SEGMENTATION,
        resolution=resolution,
        input_width=64,
        input_height=64,
        nb_classes=2,
        magnification_level=magnification,
    )


class TestPlanLevel:
    def test_low_resolution_resizes(self):
        plan = plan_level(_model(ResolutionTier.LOW), pyramid(1024, 4), 40)
        assert plan.level == 2
        assert plan.resize
        assert plan.size == (256, 256)

    def test_high_resolution_reads_patches(self):
        plan = plan_level(_model(ResolutionTier.HIGH, 20), pyramid(1024, 4), 40)
        assert plan.level == 1
        assert not plan.resize
        assert plan.size == (512, 512)
        assert math.isclose(pyramid(1024, 4)[plan.level].downsample, 2.0)
