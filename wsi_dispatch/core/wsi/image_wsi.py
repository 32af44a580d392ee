from __future__ import annotations

from typing import Any, Literal

import numpy as np
from PIL import Image

from .iwsi import IWSI, magnification_from_mpp


class ImageWSI(IWSI):
    """A PNG/JPEG/BMP treated as a one-level pyramid.

    Plain images carry no resolution, so ``mpp`` is mandatory; the
    magnification used for level planning is derived from it.
    """

    def __init__(self, **kwargs: Any) -> None:
        mpp = kwargs.get("mpp")
        if mpp is None:
            raise ValueError("mpp parameter is required for standard images")
        if mpp <= 0:
            raise ValueError(f"mpp must be positive, got {mpp}")
        super().__init__(**kwargs)
        self._pil_img: Image.Image | None = None

    def _setup(self) -> None:
        try:
            img = Image.open(self.path)
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Image not found: {self.path}") from e
        except OSError as e:
            raise RuntimeError(f"Cannot open {self.path}: {e}") from e
        self.meta = {"format": img.format or "unknown", "mode": img.mode}
        self._pil_img = img.convert("RGB")
        img.close()

        self.w, self.h = self._pil_img.size
        self.nlvl = 1
        self.ds = [1.0]
        self.dims = [(self.w, self.h)]
        self.mpp = self._extract_mpp()
        self.mag = self._extract_mag()

    def _extract_mpp(self) -> float | None:
        return self._mpp_manual

    def _extract_mag(self) -> int | None:
        if self.mpp is None:
            return None
        try:
            return magnification_from_mpp(self.mpp)
        except ValueError:
            return None

    def _image(self, lv: int) -> Image.Image:
        self._ensure_loaded()
        if lv != 0:
            raise ValueError(f"{self.path} has a single level; level {lv} requested")
        assert self._pil_img is not None
        return self._pil_img

    def extract(
        self,
        xy: tuple[int, int],
        lv: int,
        wh: tuple[int, int],
        *,
        mode: Literal["array", "image"] = "array",
    ) -> np.ndarray | Image.Image:
        x, y = xy
        w, h = wh
        region = self._image(lv).crop((x, y, x + w, y + h))
        if mode == "image":
            return region
        if mode == "array":
            return np.array(region)
        raise ValueError(f"Invalid mode: {mode}")

    def get_size(self, lv: int = 0) -> tuple[int, int]:
        return self._image(lv).size

    def get_thumb(self, max_hw: tuple[int, int]) -> Image.Image:
        thumb = self._image(0).copy()
        thumb.thumbnail(max_hw, Image.Resampling.LANCZOS)
        return thumb

    def cleanup(self) -> None:
        img = getattr(self, "_pil_img", None)
        if img is not None:
            try:
                img.close()
            finally:
                self._pil_img = None
        self._loaded = False

    def __del__(self) -> None:
        self.cleanup()
