"""Per-slide result persistence.

Layout::

    results/<slide-uid>/<pipeline>/<artifact>/<artifact>.<tiff|mhd|hdf5>
    results/<slide-uid>/<pipeline>/<artifact>/attributes.txt

The sidecar holds one ``Attribute <name> <value>`` line per display
attribute of the renderer that produced the artifact.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Mapping

import numpy as np

from wsi_dispatch.core import paths
from wsi_dispatch.core.models import ArtifactKind, ResultArtifact
from wsi_dispatch.errors import ArtifactIOError, ConfigurationError
from wsi_dispatch.pipeline.nodes import BoxSet, ImageData, TensorData
from wsi_dispatch.pipeline.renderers import (
    ATTRIBUTE_MARKER,
    BoundingBoxRenderer,
    HeatmapRenderer,
    Renderer,
    SegmentationRenderer,
    View,
)
from wsi_dispatch.utils.artifact_io import (
    read_metaimage,
    read_tensor,
    read_tiff_pyramid,
    write_metaimage,
    write_tensor,
    write_tiff_pyramid,
)

logger = logging.getLogger("wsi_dispatch.results")

Reader = Callable[[Path], tuple[np.ndarray, tuple[float, float]]]
Writer = Callable[[Path, np.ndarray, tuple[float, float]], Path]

_WRITERS: dict[ArtifactKind, Writer] = {
    ArtifactKind.PYRAMID: write_tiff_pyramid,
    ArtifactKind.IMAGE: write_metaimage,
    ArtifactKind.TENSOR: write_tensor,
}
_READERS: dict[ArtifactKind, Reader] = {
    ArtifactKind.PYRAMID: read_tiff_pyramid,
    ArtifactKind.IMAGE: read_metaimage,
    ArtifactKind.TENSOR: read_tensor,
}


def artifact_from_renderer(
    slide_uid: str, pipeline: str, name: str, renderer: Renderer
) -> ResultArtifact:
    kind = renderer.artifact_kind
    if kind is None or not renderer.serializable:
        raise ArtifactIOError(
            f"{renderer.kind} has no saveable artifact", slide=slide_uid, model=name
        )
    return ResultArtifact(
        slide_uid=slide_uid,
        pipeline=pipeline,
        name=name,
        kind=kind,
        data=renderer.export_array(),
        spacing=tuple(float(s) for s in renderer.spacing),  # type: ignore[arg-type]
    )


def renderer_for_artifact(
    kind: ArtifactKind, data: np.ndarray, spacing: tuple[float, float]
) -> Renderer:
    """Rebuild the renderer that displays an artifact of ``kind``.

    Tensors shaped ``(N, 6)`` are box lists; any other tensor is a heatmap.
    """
    if kind == ArtifactKind.PYRAMID:
        return SegmentationRenderer(ImageData(data, spacing), pyramid=True)
    if kind == ArtifactKind.IMAGE:
        return SegmentationRenderer(ImageData(data, spacing), pyramid=False)
    if data.ndim == 2 and data.shape[1] == 6:
        return BoundingBoxRenderer(BoxSet.from_array(data, spacing))
    return HeatmapRenderer(TensorData(data, spacing))


def replay_attributes(renderer: Renderer, path: Path) -> int:
    """Apply ``Attribute`` lines from ``path``; the first other line ends replay."""
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except FileNotFoundError as e:
        raise ArtifactIOError(f"Missing attribute file {path}") from e
    except OSError as e:
        raise ArtifactIOError(f"Cannot read attribute file {path}: {e}") from e

    applied = 0
    for lineno, line in enumerate(lines, start=1):
        tokens = line.split(maxsplit=2)
        if not tokens or tokens[0] != ATTRIBUTE_MARKER:
            break
        if len(tokens) < 2:
            raise ArtifactIOError(f"Malformed attribute line {lineno} in {path}: {line!r}")
        # "Attribute <name>" alone carries an empty value, e.g. an empty colour map
        value = tokens[2] if len(tokens) == 3 else ""
        try:
            renderer.set_attribute(tokens[1], value)
        except ConfigurationError as e:
            raise ArtifactIOError(f"Bad attribute on line {lineno} in {path}: {e}") from e
        applied += 1
    return applied


class ResultStore:
    """Saves and restores artifacts below a project's ``results`` folder."""

    def __init__(self, project_root: Path) -> None:
        self.project_root = Path(project_root)

    def save(
        self,
        slide_uid: str,
        pipeline_id: str,
        artifacts: Mapping[str, ResultArtifact],
        renderers: Mapping[str, Renderer] | None = None,
    ) -> list[ResultArtifact]:
        """Write every artifact and its sidecar; return the artifacts with paths set."""
        renderers = renderers or {}
        written: list[ResultArtifact] = []
        for name, artifact in artifacts.items():
            path = paths.artifact_path(
                self.project_root, slide_uid, pipeline_id, name, artifact.kind.extension
            )
            try:
                _WRITERS[artifact.kind](path, artifact.data, artifact.spacing)
            except (OSError, ValueError) as e:
                raise ArtifactIOError(
                    f"Cannot write {artifact.kind.value} artifact {path}: {e}",
                    slide=slide_uid,
                    model=name,
                    stage="save",
                ) from e

            renderer = renderers.get(name)
            lines = renderer.attribute_lines() if renderer and renderer.serializable else []
            sidecar = paths.attributes_path(self.project_root, slide_uid, pipeline_id, name)
            sidecar.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")

            logger.info("Saved %s/%s/%s -> %s", slide_uid, pipeline_id, name, path)
            written.append(
                ResultArtifact(
                    slide_uid=slide_uid,
                    pipeline=pipeline_id,
                    name=name,
                    kind=artifact.kind,
                    data=artifact.data,
                    spacing=artifact.spacing,
                    path=path,
                )
            )
        return written

    def save_renderers(
        self, slide_uid: str, pipeline_id: str, renderers: Mapping[str, Renderer]
    ) -> list[ResultArtifact]:
        """Save the data of every serialisable renderer under its own name."""
        artifacts: dict[str, ResultArtifact] = {}
        for name, renderer in renderers.items():
            if not renderer.serializable or renderer.data is None:
                logger.debug("Skipping %s (%s): nothing to save", name, renderer.kind)
                continue
            artifacts[name] = artifact_from_renderer(slide_uid, pipeline_id, name, renderer)
        return self.save(slide_uid, pipeline_id, artifacts, renderers)

    def _artifact_file(self, folder: Path) -> tuple[Path, ArtifactKind] | None:
        for kind in ArtifactKind:
            candidate = folder / f"{folder.name}.{kind.extension}"
            if candidate.is_file():
                return candidate, kind
        return None

    def pipelines(self, slide_uid: str) -> list[str]:
        root = paths.slide_results_dir(self.project_root, slide_uid)
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir())

    def load(
        self, slide_uid: str, view: View, *, pipeline_id: str | None = None
    ) -> dict[str, Renderer]:
        """Rebuild saved renderers and attach them to ``view`` as ``<pipeline>/<artifact>``."""
        restored: dict[str, Renderer] = {}
        pipelines = [pipeline_id] if pipeline_id else self.pipelines(slide_uid)
        for pipeline in pipelines:
            pipeline_dir = paths.slide_results_dir(self.project_root, slide_uid) / pipeline
            if not pipeline_dir.is_dir():
                continue
            for folder in sorted(p for p in pipeline_dir.iterdir() if p.is_dir()):
                found = self._artifact_file(folder)
                if found is None:
                    logger.debug("No artifact file in %s", folder)
                    continue
                path, kind = found
                data, spacing = _READERS[kind](path)
                renderer = renderer_for_artifact(kind, data, spacing)
                try:
                    replay_attributes(renderer, folder / paths.ATTRIBUTES_FILENAME)
                except ArtifactIOError as e:
                    e.with_context(slide=slide_uid, model=folder.name, stage="load")
                    raise
                key = f"{pipeline}/{folder.name}"
                view.add_renderer(key, renderer)
                restored[key] = renderer
                logger.info("Restored %s (%s) for %s", key, renderer.kind, slide_uid)
        return restored
