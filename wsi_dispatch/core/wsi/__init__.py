"""Pyramidal slide access."""

from .image_wsi import ImageWSI
from .iwsi import IWSI
from .wsi_factory import IMAGE_EXTENSIONS, SLIDE_EXTENSIONS, WSIFactory

__all__ = [
    "IWSI",
    "ImageWSI",
    "WSIFactory",
    "IMAGE_EXTENSIONS",
    "SLIDE_EXTENSIONS",
]
