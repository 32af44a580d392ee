from __future__ import annotations

from typing import Any, Literal

import numpy as np
import openslide
from PIL import Image

from .iwsi import IWSI, magnification_from_mpp

_MPP_KEYS = (
    openslide.PROPERTY_NAME_MPP_X,
    "openslide.mirax.MPP",
    "aperio.MPP",
)
_MICRONS_PER_UNIT = {"centimeter": 10000.0, "inch": 25400.0}


def mpp_from_properties(props: dict[str, Any]) -> float | None:
    """Pixel spacing from vendor keys, falling back to the TIFF resolution tags."""
    for key in _MPP_KEYS:
        try:
            return round(float(props[key]), 4)
        except (KeyError, ValueError, TypeError):
            continue
    unit = str(props.get("tiff.ResolutionUnit", "")).lower()
    try:
        x_res = float(props["tiff.XResolution"])
    except (KeyError, ValueError, TypeError):
        return None
    if unit not in _MICRONS_PER_UNIT or x_res <= 0:
        return None
    return round(_MICRONS_PER_UNIT[unit] / x_res, 4)


class OpenSlideWSI(IWSI):
    """Vendor pyramids (SVS, NDPI, MRXS, ...) read through OpenSlide."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._oslide: openslide.OpenSlide | None = None

    def _setup(self) -> None:
        try:
            self._oslide = openslide.OpenSlide(self.path)
        except FileNotFoundError as e:
            raise FileNotFoundError(f"File not found: {self.path}") from e
        except openslide.OpenSlideError as e:
            raise RuntimeError(f"OpenSlide error for {self.path}: {e}") from e

        slide = self._oslide
        self.w, self.h = slide.dimensions
        self.nlvl = slide.level_count
        self.ds = [float(d) for d in slide.level_downsamples]
        self.dims = [(int(w), int(h)) for w, h in slide.level_dimensions]
        self.meta = dict(slide.properties)
        self.mpp = self._mpp_manual if self._mpp_manual is not None else self._extract_mpp()
        self.mag = self._extract_mag()

    def _extract_mpp(self) -> float | None:
        return mpp_from_properties(self.meta or {})

    def _extract_mag(self) -> int | None:
        # objective power wins; spacing is only a fallback
        obj_pow = (self.meta or {}).get(openslide.PROPERTY_NAME_OBJECTIVE_POWER)
        if obj_pow:
            try:
                return int(float(obj_pow))
            except (ValueError, TypeError):
                pass
        if self.mpp is None:
            return None
        try:
            return magnification_from_mpp(self.mpp)
        except ValueError:
            return None

    def _slide(self) -> openslide.OpenSlide:
        self._ensure_loaded()
        assert self._oslide is not None
        return self._oslide

    def extract(
        self,
        xy: tuple[int, int],
        lv: int,
        wh: tuple[int, int],
        *,
        mode: Literal["array", "image"] = "array",
    ) -> np.ndarray | Image.Image:
        region = self._slide().read_region(xy, lv, wh).convert("RGB")
        if mode == "image":
            return region
        if mode == "array":
            return np.array(region)
        raise ValueError(f"Invalid mode: {mode}")

    def get_size(self, lv: int = 0) -> tuple[int, int]:
        self._slide()
        if self.dims is None or lv < 0 or lv >= len(self.dims):
            raise IndexError(f"Level {lv} out of range")
        return self.dims[lv]

    def get_thumb(self, max_hw: tuple[int, int]) -> Image.Image:
        return self._slide().get_thumbnail(max_hw).convert("RGB")

    def cleanup(self) -> None:
        slide = getattr(self, "_oslide", None)
        if slide is not None:
            try:
                slide.close()
            finally:
                self._oslide = None
        self._loaded = False

    def __del__(self) -> None:
        self.cleanup()
