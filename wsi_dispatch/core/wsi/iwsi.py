from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal

import numpy as np
from PIL import Image

# (upper mpp bound, objective magnification), finest first
_MAG_BY_MPP = (
    (0.16, 80),
    (0.2, 60),
    (0.3, 40),
    (0.6, 20),
    (1.2, 10),
    (2.4, 5),
)


def magnification_from_mpp(mpp: float) -> int:
    """Nearest standard objective power for a pixel spacing in microns."""
    for bound, mag in _MAG_BY_MPP:
        if mpp < bound:
            return mag
    raise ValueError(f"Cannot infer magnification from mpp {mpp}")


class IWSI(ABC):
    """Lazily opened slide pyramid.

    Readers fill the level table in :meth:`_setup` the first time any
    accessor runs; ``mpp`` passed here wins over whatever the file declares.
    """

    def __init__(self, path: str, mpp: float | None = None):
        self.path = path
        self._mpp_manual = mpp
        self._loaded = False

        self.w: int | None = None
        self.h: int | None = None
        self.nlvl: int | None = None
        self.ds: list[float] | None = None
        self.dims: list[tuple[int, int]] | None = None
        self.meta: dict[str, Any] | None = None
        self.mpp: float | None = None
        self.mag: int | None = None

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._setup()
            self._loaded = True

    @abstractmethod
    def _setup(self) -> None:
        """Open the file and fill the level table and resolution fields."""

    @abstractmethod
    def _extract_mpp(self) -> float | None: ...

    @abstractmethod
    def _extract_mag(self) -> int | None: ...

    @abstractmethod
    def extract(
        self,
        xy: tuple[int, int],
        lv: int,
        wh: tuple[int, int],
        *,
        mode: Literal["array", "image"] = "array",
    ) -> np.ndarray | Image.Image:
        """RGB region of size ``wh`` at level ``lv``; ``xy`` is in level-0 pixels."""

    @abstractmethod
    def get_size(self, lv: int = 0) -> tuple[int, int]:
        """``(width, height)`` of level ``lv``."""

    @abstractmethod
    def get_thumb(self, max_hw: tuple[int, int]) -> Image.Image: ...

    @abstractmethod
    def cleanup(self) -> None: ...

    def level_downsample(self, lv: int) -> float:
        self._ensure_loaded()
        downsamples = self.ds or [1.0]
        if lv < 0 or lv >= len(downsamples):
            raise IndexError(f"Level {lv} out of range")
        return float(downsamples[lv])

    def pyramid(self) -> list[tuple[int, int, float]]:
        """``(width, height, downsample)`` per level, finest first."""
        self._ensure_loaded()
        dims = self.dims or [self.get_size(0)]
        downsamples = self.ds or [1.0] * len(dims)
        return [(int(w), int(h), float(d)) for (w, h), d in zip(dims, downsamples)]

    def read_level(self, lv: int) -> np.ndarray:
        """A whole level as one RGB array; callers only do this for coarse levels."""
        w, h = self.get_size(lv)
        return np.asarray(self.extract((0, 0), lv, (w, h), mode="array"))

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.cleanup()

    def __repr__(self) -> str:
        if self._loaded:
            return f"<{self.__class__.__name__}: {self.w}x{self.h}, levels={self.nlvl}>"
        return f"<{self.__class__.__name__} {self.path} (not opened)>"
