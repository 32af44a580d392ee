from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Protocol

from wsi_dispatch.core.models import Mask
from wsi_dispatch.core.wsi.iwsi import IWSI


class SegmentationService(ABC):
    @abstractmethod
    def segment_thumbnail(self, wsi: IWSI, *, threshold: int | None = None) -> Mask: ...


class WSILoader(Protocol):
    def open(self, path: Path, *, mpp: float | None = None) -> IWSI: ...
