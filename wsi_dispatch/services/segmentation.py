from __future__ import annotations

import logging

import cv2
import numpy as np

from wsi_dispatch.core.config import TissueConfig
from wsi_dispatch.core.models import Mask
from wsi_dispatch.core.wsi.iwsi import IWSI
from wsi_dispatch.services.interfaces import SegmentationService

logger = logging.getLogger("wsi_dispatch.segmentation_service")


def _kernel(size: int) -> np.ndarray:
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))


def threshold_tissue(
    rgb: np.ndarray, *, threshold: int, dilate: int = 9, erode: int = 9
) -> np.ndarray:
    """Binary tissue mask: pixels whose colour lies farther than ``threshold`` from white.

    The mask is then dilated and eroded (a closing when both sizes match) to
    fill small holes between tissue fragments.
    """
    arr = np.asarray(rgb)[..., :3].astype(np.float32)
    distance = np.sqrt(np.sum((255.0 - arr) ** 2, axis=-1))
    mask = (distance > float(threshold)).astype(np.uint8)
    if dilate > 0:
        mask = cv2.dilate(mask, _kernel(dilate))
    if erode > 0:
        mask = cv2.erode(mask, _kernel(erode))
    return mask


class ThresholdTissueSegmenter(SegmentationService):
    """Thumbnail colour-threshold tissue detection."""

    def __init__(self, cfg: TissueConfig | None = None) -> None:
        self.cfg = (cfg or TissueConfig()).validated()

    def _prepare_thumbnail(self, wsi: IWSI) -> np.ndarray:
        side = self.cfg.thumbnail_max
        thumb = wsi.get_thumb((side, side))
        return np.asarray(thumb.convert("RGB"))

    def _to_mask(self, wsi: IWSI, thumb: np.ndarray, threshold: int) -> Mask:
        full_w, full_h = wsi.get_size(0)
        data = threshold_tissue(
            thumb, threshold=threshold, dilate=self.cfg.dilate, erode=self.cfg.erode
        )
        scale = (data.shape[1] / float(full_w), data.shape[0] / float(full_h))
        logger.debug(
            "Tissue mask %dx%d covers %.1f%% of %s",
            data.shape[1],
            data.shape[0],
            100.0 * float(data.mean()) if data.size else 0.0,
            wsi.path,
        )
        return Mask(data=data, source_shape=(int(full_h), int(full_w)), scale=scale)

    def segment_thumbnail(self, wsi: IWSI, *, threshold: int | None = None) -> Mask:
        thumb = self._prepare_thumbnail(wsi)
        return self._to_mask(wsi, thumb, self.cfg.threshold if threshold is None else threshold)
