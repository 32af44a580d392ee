from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from wsi_dispatch.core import paths
from wsi_dispatch.errors import ArtifactIOError, UnknownProcessError
from wsi_dispatch.utils.locks import ReadWriteLock

logger = logging.getLogger("wsi_dispatch.pipelines")


@dataclass(frozen=True)
class PipelineDescriptor:
    """A ``.fpl`` pipeline file and the models it references, in file order."""

    uid: str
    path: Path
    name: str
    description: str = ""
    models: tuple[str, ...] = ()


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


def _model_from_path(value: str) -> str:
    # models/<name>/<name>.<ext>; the stem is the catalog name
    path = Path(_unquote(value).replace("\\", "/"))
    return path.stem if path.suffix else path.name


def parse_pipeline_file(path: Path) -> PipelineDescriptor:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ArtifactIOError(f"Cannot read pipeline file {path}: {e}") from e

    uid = path.stem
    name = uid
    description = ""
    models: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        keyword, _, rest = line.partition(" ")
        if keyword == "PipelineName":
            name = _unquote(rest) or uid
        elif keyword == "PipelineDescription":
            description = _unquote(rest)
        elif keyword == "Attribute":
            try:
                tokens = shlex.split(rest)
            except ValueError:
                tokens = rest.split()
            if len(tokens) >= 2 and tokens[0] == "model":
                model = _model_from_path(tokens[1])
                if model and model not in models:
                    models.append(model)
    return PipelineDescriptor(
        uid=uid, path=path, name=name, description=description, models=tuple(models)
    )


class PipelineCatalog:
    """Pipelines found in the pipelines directory, keyed by filename stem."""

    def __init__(self, pipelines_dir: Path) -> None:
        self.pipelines_dir = Path(pipelines_dir)
        self._pipelines: dict[str, PipelineDescriptor] = {}
        self._lock = ReadWriteLock()

    def scan(self) -> list[str]:
        with self._lock.write():
            self._pipelines.clear()
            if not self.pipelines_dir.is_dir():
                logger.info("Pipelines directory not found: %s", self.pipelines_dir)
                return []
            for entry in sorted(self.pipelines_dir.iterdir()):
                if not entry.is_file() or entry.suffix not in paths.PIPELINE_EXTENSIONS:
                    continue
                try:
                    pipeline = parse_pipeline_file(entry)
                except ArtifactIOError as e:
                    logger.warning("Skipping pipeline %s: %s", entry.name, e)
                    continue
                self._pipelines[pipeline.uid] = pipeline
            return sorted(self._pipelines)

    def names(self) -> list[str]:
        with self._lock.read():
            return sorted(self._pipelines)

    def get(self, uid: str) -> PipelineDescriptor:
        with self._lock.read():
            pipeline = self._pipelines.get(uid)
        if pipeline is None:
            raise UnknownProcessError(f"Unknown pipeline '{uid}'. Available: {self.names()}")
        return pipeline

    def __contains__(self, uid: object) -> bool:
        with self._lock.read():
            return uid in self._pipelines
