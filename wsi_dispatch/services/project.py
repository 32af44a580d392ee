from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Iterator

from wsi_dispatch.core import paths
from wsi_dispatch.core.models import SlideHandle
from wsi_dispatch.errors import ArtifactIOError
from wsi_dispatch.services.interfaces import WSILoader
from wsi_dispatch.services.results import ResultStore
from wsi_dispatch.services.wsi_loader import DefaultWSILoader

logger = logging.getLogger("wsi_dispatch.project")

THUMBNAIL_SIZE = 512


class Project:
    """Slides of one project plus the folders that hold their results.

    Without a ``root`` the project lives in a temporary folder that is removed
    on :meth:`close`.
    """

    def __init__(
        self,
        root: Path | None = None,
        *,
        loader: WSILoader | None = None,
        thumbnail_size: int = THUMBNAIL_SIZE,
    ) -> None:
        self.temporary = root is None
        self.root = Path(tempfile.mkdtemp(prefix="wsi-dispatch-")) if root is None else Path(root)
        self.loader = loader or DefaultWSILoader()
        self.thumbnail_size = int(thumbnail_size)
        self.results = ResultStore(self.root)
        self._slides: list[SlideHandle] = []
        self._lock = threading.Lock()

    def ensure_dirs(self) -> None:
        for name in paths.PROJECT_SUBDIRS:
            (self.root / name).mkdir(parents=True, exist_ok=True)

    def _unique_uid(self, stem: str) -> str:
        taken = {slide.uid for slide in self._slides}
        if stem not in taken:
            return stem
        n = 1
        while f"{stem}#{n}" in taken:
            n += 1
        return f"{stem}#{n}"

    def include_image(
        self, path: Path, *, mpp: float | None = None, uid: str | None = None
    ) -> SlideHandle:
        """Open ``path`` and add it to the project under a unique uid."""
        path = Path(path)
        if not path.exists():
            raise ArtifactIOError(f"Slide not found: {path}")
        wsi = self.loader.open(path, mpp=mpp)
        with self._lock:
            slide_uid = self._unique_uid(uid or path.stem)
            slide = SlideHandle.from_wsi(slide_uid, wsi)
            self._slides.append(slide)
        self._save_thumbnail(slide)
        logger.info("Added %s as %s", path, slide_uid)
        return slide

    def _save_thumbnail(self, slide: SlideHandle) -> None:
        if slide.wsi is None:
            return
        self.ensure_dirs()
        target = paths.thumbnail_path(self.root, slide.uid)
        if target.exists():
            return
        thumb = slide.wsi.get_thumb((self.thumbnail_size, self.thumbnail_size))
        thumb.convert("RGB").save(target)

    @property
    def images(self) -> list[SlideHandle]:
        with self._lock:
            return list(self._slides)

    def get_image(self, uid: str) -> SlideHandle | None:
        with self._lock:
            for slide in self._slides:
                if slide.uid == uid:
                    return slide
        return None

    def get_image_at(self, index: int) -> SlideHandle:
        with self._lock:
            return self._slides[index]

    def remove_image(self, uid: str) -> bool:
        with self._lock:
            slide = next((s for s in self._slides if s.uid == uid), None)
            if slide is None:
                return False
            self._slides.remove(slide)
        slide.close()
        thumb = paths.thumbnail_path(self.root, uid)
        if thumb.exists():
            thumb.unlink()
        logger.info("Removed %s", uid)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._slides)

    def __iter__(self) -> Iterator[SlideHandle]:
        return iter(self.images)

    def save(self) -> Path:
        """Write ``project.txt`` as ``uid,filepath`` lines."""
        self.ensure_dirs()
        target = paths.project_file(self.root)
        lines = [f"{slide.uid},{slide.path}" for slide in self.images]
        target.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return target

    @classmethod
    def load(
        cls, root: Path, *, loader: WSILoader | None = None, mpp: float | None = None
    ) -> Project:
        """Reopen a saved project; slides whose file is gone are skipped with a warning.

        ``mpp`` is passed to readers of plain images, which carry no resolution.
        """
        project = cls(Path(root), loader=loader)
        listing = paths.project_file(project.root)
        if not listing.is_file():
            raise ArtifactIOError(f"No {paths.PROJECT_FILENAME} in {project.root}")
        for lineno, line in enumerate(listing.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            uid, sep, filepath = line.partition(",")
            if not sep or not uid or not filepath:
                raise ArtifactIOError(f"Malformed line {lineno} in {listing}: {line!r}")
            if not Path(filepath).exists():
                logger.warning("Skipping %s: %s no longer exists", uid, filepath)
                continue
            project.include_image(Path(filepath), uid=uid, mpp=mpp)
        return project

    def close(self) -> None:
        for slide in self.images:
            slide.close()
        with self._lock:
            self._slides.clear()
        if self.temporary:
            shutil.rmtree(self.root, ignore_errors=True)

    def __enter__(self) -> Project:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
