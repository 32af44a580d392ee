from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Mapping

from wsi_dispatch.core import paths
from wsi_dispatch.core.models import (
    RGB,
    ModelDescriptor,
    ProblemKind,
    ResolutionTier,
    TissueFilter,
    as_metadata,
)
from wsi_dispatch.errors import ArtifactIOError, ConfigurationError, UnknownProcessError
from wsi_dispatch.utils.locks import ReadWriteLock

logger = logging.getLogger("wsi_dispatch.catalog")

DEFAULT_PALETTE: tuple[RGB, ...] = (
    (0, 0, 0),
    (255, 0, 0),
    (0, 255, 0),
    (0, 0, 255),
    (255, 255, 0),
    (255, 0, 255),
    (0, 255, 255),
    (255, 128, 0),
)

ANCHOR_LEVELS = 2
ANCHORS_PER_LEVEL = 3

Anchors = tuple[tuple[tuple[float, float], ...], ...]


def read_metadata_file(path: Path) -> dict[str, str]:
    """Parse ``key=value`` lines; blank lines and ``#`` comments are skipped."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read model metadata {path}: {e}") from e
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigurationError(f"{path}:{lineno}: expected key=value, got {line!r}")
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _text(values: Mapping[str, str], key: str) -> str | None:
    value = values.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _required(values: Mapping[str, str], key: str, model: str) -> str:
    value = _text(values, key)
    if value is None:
        raise ConfigurationError(f"Missing required metadata field '{key}'", model=model)
    return value


def _as_enum(enum_cls, value: str, key: str, model: str):
    try:
        return enum_cls(value.lower())
    except ValueError as e:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"Field '{key}' must be one of {choices}, got {value!r}", model=model
        ) from e


def _as_int(value: str, key: str, model: str, *, minimum: int | None = None) -> int:
    try:
        parsed = int(value)
    except ValueError as e:
        raise ConfigurationError(
            f"Field '{key}' must be an integer, got {value!r}", model=model
        ) from e
    if minimum is not None and parsed < minimum:
        raise ConfigurationError(f"Field '{key}' must be >= {minimum}, got {parsed}", model=model)
    return parsed


def _as_float(value: str, key: str, model: str) -> float:
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(
            f"Field '{key}' must be a number, got {value!r}", model=model
        ) from e


def _as_fraction(value: str, key: str, model: str, *, upper_open: bool = False) -> float:
    parsed = _as_float(value, key, model)
    if parsed < 0 or parsed > 1 or (upper_open and parsed == 1):
        bound = "[0, 1)" if upper_open else "[0, 1]"
        raise ConfigurationError(f"Field '{key}' must be in {bound}, got {parsed}", model=model)
    return parsed


def _as_bool(value: str, key: str, model: str) -> bool:
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(
        f"Field '{key}' must be 0/1 or true/false, got {value!r}", model=model
    )


def parse_scale_factor(value: str, model: str = "") -> float:
    """``"1/255"`` -> ``1/255``; a bare number is accepted as-is."""
    parts = value.split("/")
    if len(parts) > 2:
        raise ConfigurationError(
            f"scale_factor must look like 'num/den', got {value!r}", model=model or None
        )
    try:
        numbers = [float(p) for p in parts]
    except ValueError as e:
        raise ConfigurationError(
            f"scale_factor must look like 'num/den', got {value!r}", model=model or None
        ) from e
    if len(numbers) == 1:
        return numbers[0]
    if numbers[1] == 0:
        raise ConfigurationError("scale_factor denominator is zero", model=model or None)
    return numbers[0] / numbers[1]


def parse_class_colors(value: str, model: str = "") -> tuple[RGB, ...]:
    """``"255,0,0;0,255,0"`` -> ``((255, 0, 0), (0, 255, 0))``."""
    colors: list[RGB] = []
    for chunk in value.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            rgb = tuple(int(c) for c in chunk.split(","))
        except ValueError as e:
            raise ConfigurationError(f"Bad class colour {chunk!r}", model=model or None) from e
        if len(rgb) != 3 or any(c < 0 or c > 255 for c in rgb):
            raise ConfigurationError(
                f"Class colour must be three values in [0, 255], got {chunk!r}", model=model or None
            )
        colors.append(rgb)  # type: ignore[arg-type]
    return tuple(colors)


def parse_model_metadata(name: str, values: Mapping[str, str]) -> ModelDescriptor:
    """Validate raw metadata once and build the typed descriptor."""

    def required(key: str) -> str:
        return _required(values, key, name)

    def optional(key: str, default: str) -> str:
        return _text(values, key) or default

    problem = _as_enum(ProblemKind, required("problem"), "problem", name)
    resolution = _as_enum(ResolutionTier, required("resolution"), "resolution", name)
    width = _as_int(required("input_img_size_x"), "input_img_size_x", name, minimum=1)
    height = _as_int(required("input_img_size_y"), "input_img_size_y", name, minimum=1)
    nb_classes = _as_int(required("nb_classes"), "nb_classes", name, minimum=1)
    nb_channels = _as_int(optional("nb_channels", "3"), "nb_channels", name, minimum=1)

    colors_text = _text(values, "class_colors")
    if colors_text is None:
        logger.info("Model %s has no class_colors; using the default palette", name)
        colors = tuple(DEFAULT_PALETTE[i % len(DEFAULT_PALETTE)] for i in range(nb_classes))
    else:
        colors = parse_class_colors(colors_text, name)
        if len(colors) < nb_classes:
            raise ConfigurationError(
                f"class_colors lists {len(colors)} colours for {nb_classes} classes", model=name
            )

    magnification: int | None = None
    if _text(values, "magnification_level") is not None:
        magnification = _as_int(
            required("magnification_level"), "magnification_level", name, minimum=1
        )
    scale = _text(values, "scale_factor")

    tissue_text = _text(values, "tissue_threshold")
    tissue_threshold: int | None = None
    if tissue_text is None:
        tissue_filter = TissueFilter.EXISTING
    elif tissue_text.lower() == "none":
        tissue_filter = TissueFilter.NONE
    else:
        tissue_filter = TissueFilter.THRESHOLD
        tissue_threshold = _as_int(tissue_text, "tissue_threshold", name, minimum=0)

    mask_threshold: float | None = None
    if _text(values, "mask_threshold") is not None:
        mask_threshold = _as_fraction(required("mask_threshold"), "mask_threshold", name)

    preferred = _text(values, "IE")
    if preferred is not None and preferred.lower() == "none":
        preferred = None
    outputs = tuple(n.strip() for n in optional("output_node", "").split(",") if n.strip())

    return ModelDescriptor(
        name=name,
        problem=problem,
        resolution=resolution,
        input_width=width,
        input_height=height,
        nb_classes=nb_classes,
        nb_channels=nb_channels,
        class_colors=colors,
        display_name=_text(values, "name"),
        model_name=optional("model_name", name),
        magnification_level=magnification,
        scale_factor=parse_scale_factor(scale, name) if scale is not None else None,
        tissue_filter=tissue_filter,
        tissue_threshold=tissue_threshold,
        mask_threshold=mask_threshold,
        patch_overlap=_as_fraction(
            optional("patch_overlap", "0"), "patch_overlap", name, upper_open=True
        ),
        interpolation=_as_bool(optional("interpolation", "0"), "interpolation", name),
        pred_threshold=_as_fraction(optional("pred_threshold", "0.1"), "pred_threshold", name),
        nms_threshold=_as_fraction(optional("nms_threshold", "0.5"), "nms_threshold", name),
        cpu_only=_as_bool(optional("cpu", "0"), "cpu", name),
        preferred_backend=preferred,
        input_node=_text(values, "input_node"),
        output_nodes=outputs,
        batch_size=_as_int(optional("batch_process", "1"), "batch_process", name, minimum=1),
        metadata=dict(values),
    )


def load_anchors(path: Path, model: str = "") -> Anchors:
    """Read YOLO anchor boxes: six ``w,h`` pairs per line, two levels of three."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ArtifactIOError(f"Anchor file not found: {path}", model=model or None) from e
    except OSError as e:
        raise ArtifactIOError(f"Cannot read anchor file {path}: {e}", model=model or None) from e

    levels: list[tuple[tuple[float, float], ...]] = []
    per_line = ANCHOR_LEVELS * ANCHORS_PER_LEVEL
    for lineno, raw in enumerate(text.splitlines(), start=1):
        tokens = raw.split()
        if not tokens:
            continue
        if len(tokens) < per_line:
            raise ConfigurationError(
                f"{path}:{lineno}: expected {per_line} anchor pairs, got {len(tokens)}",
                model=model or None,
            )
        pairs: list[tuple[float, float]] = []
        for token in tokens[:per_line]:
            try:
                w, h = (float(v) for v in token.split(","))
            except ValueError as e:
                raise ConfigurationError(
                    f"{path}:{lineno}: bad anchor pair {token!r}", model=model or None
                ) from e
            pairs.append((w, h))
        for lv in range(ANCHOR_LEVELS):
            levels.append(tuple(pairs[lv * ANCHORS_PER_LEVEL : (lv + 1) * ANCHORS_PER_LEVEL]))
    if not levels:
        raise ConfigurationError(f"Anchor file {path} is empty", model=model or None)
    return tuple(levels)


class ModelCatalog:
    """Models found under ``models/<name>/<name>.txt``.

    Lookups share a read lock; scanning and importing take the write lock. A
    folder whose metadata fails to parse is remembered and its error is raised
    when the model is requested.
    """

    def __init__(
        self,
        models_dir: Path,
        *,
        parser: Callable[[str, Mapping[str, str]], ModelDescriptor] = parse_model_metadata,
    ) -> None:
        self.models_dir = Path(models_dir)
        self._parser = parser
        self._models: dict[str, ModelDescriptor] = {}
        self._errors: dict[str, ConfigurationError] = {}
        self._lock = ReadWriteLock()

    def _load(self, name: str) -> ModelDescriptor:
        meta_path = paths.model_metadata_path(self.models_dir, name)
        if not meta_path.is_file():
            raise ConfigurationError(f"Metadata file not found: {meta_path}", model=name)
        return self._parser(name, read_metadata_file(meta_path))

    def _store(self, name: str) -> ModelDescriptor | None:
        try:
            model = self._load(name)
        except ConfigurationError as e:
            e.with_context(model=name, stage="catalog")
            logger.warning("Skipping model %s: %s", name, e)
            self._models.pop(name, None)
            self._errors[name] = e
            return None
        self._errors.pop(name, None)
        self._models[name] = model
        return model

    def scan(self) -> list[str]:
        """Reload every model folder; returns the names that loaded cleanly."""
        with self._lock.write():
            self._models.clear()
            self._errors.clear()
            if not self.models_dir.is_dir():
                logger.warning("Models directory not found: %s", self.models_dir)
                return []
            for entry in sorted(self.models_dir.iterdir()):
                if entry.is_dir() and not entry.name.startswith("."):
                    self._store(entry.name)
            logger.info("Catalogued %d model(s) from %s", len(self._models), self.models_dir)
            return sorted(self._models)

    def import_model(self, name: str) -> ModelDescriptor:
        """Add a model folder that appeared after the last scan."""
        with self._lock.write():
            existing = self._models.get(name)
            if existing is not None:
                return existing
            model = self._store(name)
            if model is None:
                raise self._errors[name]
            logger.info("Imported model %s", name)
            return model

    def names(self) -> list[str]:
        with self._lock.read():
            return sorted(self._models)

    def errors(self) -> dict[str, ConfigurationError]:
        with self._lock.read():
            return dict(self._errors)

    def __contains__(self, name: object) -> bool:
        with self._lock.read():
            return name in self._models or name in self._errors

    def get(self, name: str) -> ModelDescriptor:
        with self._lock.read():
            model = self._models.get(name)
            error = self._errors.get(name)
        if model is not None:
            return model
        if error is not None:
            raise error
        raise UnknownProcessError(f"Unknown model '{name}'. Available: {self.names()}", model=name)

    def with_overrides(self, name: str, overrides: Mapping[str, Any]) -> ModelDescriptor:
        """Re-validate a model's metadata with ``overrides`` applied on top."""
        base = self.get(name)
        merged = {**base.metadata, **as_metadata(overrides)}
        return self._parser(name, merged)

    def formats(self, name: str) -> set[str]:
        """Weight-file extensions present for ``name`` (metadata and anchors excluded)."""
        folder = paths.model_dir(self.models_dir, name)
        if not folder.is_dir():
            return set()
        skip = {paths.METADATA_EXTENSION, paths.ANCHORS_EXTENSION}
        found: set[str] = set()
        for entry in folder.iterdir():
            if not entry.is_file() or not entry.name.startswith(f"{name}."):
                continue
            ext = entry.name[len(name) + 1 :].lower()
            if ext and ext not in skip:
                found.add(ext)
        return found

    def weights_path(self, name: str, model_format: str) -> Path:
        return paths.model_weights_path(self.models_dir, name, model_format)

    def anchors(self, name: str) -> Anchors:
        return load_anchors(paths.model_anchors_path(self.models_dir, name), model=name)
