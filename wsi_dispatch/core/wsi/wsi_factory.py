"""Reader selection by file extension."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from .image_wsi import ImageWSI
from .iwsi import IWSI

SLIDE_EXTENSIONS = (
    ".svs",
    ".tif",
    ".tiff",
    ".ndpi",
    ".vms",
    ".vmu",
    ".scn",
    ".mrxs",
    ".bif",
    ".dcm",
)
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp")


def _open_with_openslide(**kwargs) -> IWSI:
    # openslide needs its native library; import only when a slide actually uses it
    from .openslide_wsi import OpenSlideWSI

    return OpenSlideWSI(**kwargs)


class WSIFactory:
    """Maps extensions to reader constructors; both tables can be extended at runtime."""

    _registry: dict[str, Callable[..., IWSI]] = {
        "openslide": _open_with_openslide,
        "image": ImageWSI,
    }

    _formats = {
        **{ext: "openslide" for ext in SLIDE_EXTENSIONS},
        **{ext: "image" for ext in IMAGE_EXTENSIONS},
    }

    @classmethod
    def register(cls, name: str, impl_class: Callable[..., IWSI]) -> None:
        cls._registry[name] = impl_class

    @classmethod
    def map_extension(cls, ext: str, reader: str) -> None:
        if reader not in cls._registry:
            raise ValueError(f"Unknown reader: {reader}")
        cls._formats["." + ext.lower().lstrip(".")] = reader

    @classmethod
    def detect(cls, path: str) -> str | None:
        return cls._formats.get(Path(path).suffix.lower())

    @classmethod
    def supported_extensions(cls) -> list[str]:
        return sorted(cls._formats)

    @classmethod
    def load(cls, path: str, reader: str | None = None, mpp: float | None = None, **kwargs) -> IWSI:
        """Unopened reader for ``path``; metadata is read on first access.

        ``reader`` forces a registered reader instead of the extension mapping.
        ``mpp`` overrides the resolution stored in the file.
        """
        if not Path(path).exists():
            raise FileNotFoundError(f"File not found: {path}")
        if reader is None:
            reader = cls.detect(path)
            if reader is None:
                raise ValueError(
                    f"No reader for {Path(path).suffix or 'extension-less'} file: {path}"
                )
        elif reader not in cls._registry:
            raise ValueError(f"Unknown reader: {reader}")
        return cls._registry[reader](path=path, mpp=mpp, **kwargs)
