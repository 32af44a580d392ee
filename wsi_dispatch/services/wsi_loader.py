from __future__ import annotations

from pathlib import Path

from wsi_dispatch.core.wsi import IWSI, WSIFactory
from wsi_dispatch.services.interfaces import WSILoader


class DefaultWSILoader(WSILoader):
    """Concrete WSI loader that delegates to the factory."""

    def __init__(self, reader: str | None = None) -> None:
        self.reader = reader

    def open(self, path: Path, *, mpp: float | None = None) -> IWSI:
        return WSIFactory.load(str(path), reader=self.reader, mpp=mpp)
