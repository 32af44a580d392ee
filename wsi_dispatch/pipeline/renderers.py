"""Renderers: result data plus the display attributes that accompany it.

Attributes are serialised as ``Attribute <name> <value>`` lines so a saved
result can be displayed again exactly as it was configured.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC
from typing import Any, Callable, ClassVar, Mapping

import numpy as np

from wsi_dispatch.core.models import RGB, ArtifactKind
from wsi_dispatch.errors import ConfigurationError
from wsi_dispatch.pipeline.nodes import BoxSet, ImageData, TensorData

logger = logging.getLogger("wsi_dispatch.renderers")

ATTRIBUTE_MARKER = "Attribute"


def format_colors(colors: Mapping[int, RGB]) -> str:
    """``{0: (255, 0, 0)}`` -> ``"0 255,0,0"``."""
    return " ".join(f"{idx} {r},{g},{b}" for idx, (r, g, b) in sorted(colors.items()))


def parse_colors(text: str) -> dict[int, RGB]:
    tokens = text.split()
    if len(tokens) % 2:
        raise ConfigurationError(f"Colour list needs index/colour pairs, got {text!r}")
    colors: dict[int, RGB] = {}
    for idx_text, rgb_text in zip(tokens[::2], tokens[1::2]):
        try:
            idx = int(idx_text)
            rgb = tuple(int(c) for c in rgb_text.split(","))
        except ValueError as e:
            raise ConfigurationError(f"Bad colour entry {idx_text} {rgb_text}") from e
        if len(rgb) != 3 or any(c < 0 or c > 255 for c in rgb):
            raise ConfigurationError(f"Bad colour {rgb_text!r}")
        colors[idx] = rgb  # type: ignore[assignment]
    return colors


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError as e:
        raise ConfigurationError(f"Expected a number, got {text!r}") from e


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in ("1", "true"):
        return True
    if lowered in ("0", "false"):
        return False
    raise ConfigurationError(f"Expected 0/1 or true/false, got {text!r}")


_CODECS: dict[str, tuple[Callable[[str], Any], Callable[[Any], str]]] = {
    "float": (_parse_float, lambda v: f"{float(v):g}"),
    "bool": (_parse_bool, lambda v: "1" if v else "0"),
    "colors": (parse_colors, format_colors),
}


class Renderer(ABC):
    """Result data plus typed display attributes.

    Subclasses declare ``ATTRIBUTES`` as ``name -> (codec, default)``.
    """

    kind: ClassVar[str] = "Renderer"
    serializable: ClassVar[bool] = True
    ATTRIBUTES: ClassVar[dict[str, tuple[str, Any]]] = {}

    def __init__(self, data: Any = None, **attrs: Any) -> None:
        self.data = data
        self._attrs: dict[str, Any] = {
            name: (dict(default) if isinstance(default, dict) else default)
            for name, (_, default) in self.ATTRIBUTES.items()
        }
        self._lock = threading.Lock()
        for name, value in attrs.items():
            self.set(name, value)

    @property
    def artifact_kind(self) -> ArtifactKind | None:
        return None

    @property
    def spacing(self) -> tuple[float, float]:
        return getattr(self.data, "spacing", (1.0, 1.0))

    def _key(self, name: str) -> str:
        key = name.replace("_", "-")
        if key not in self.ATTRIBUTES:
            raise ConfigurationError(
                f"{self.kind} has no attribute '{name}'. Known: {sorted(self.ATTRIBUTES)}"
            )
        return key

    def get(self, name: str) -> Any:
        with self._lock:
            return self._attrs[self._key(name)]

    def set(self, name: str, value: Any) -> None:
        key = self._key(name)
        with self._lock:
            self._attrs[key] = dict(value) if isinstance(value, dict) else value

    def set_attribute(self, name: str, text: str) -> None:
        """Parse ``text`` with the attribute's codec and store it."""
        key = self._key(name)
        parse, _ = _CODECS[self.ATTRIBUTES[key][0]]
        self.set(key, parse(text))

    def attributes(self) -> dict[str, str]:
        with self._lock:
            values = dict(self._attrs)
        return {
            name: _CODECS[self.ATTRIBUTES[name][0]][1](value) for name, value in values.items()
        }

    def attribute_lines(self) -> list[str]:
        return [
            f"{ATTRIBUTE_MARKER} {name} {value}".rstrip()
            for name, value in self.attributes().items()
        ]

    def export_array(self) -> np.ndarray:
        data = self.data
        if data is None:
            raise ValueError(f"{self.kind} holds no data")
        return np.asarray(data.array)

    def __repr__(self) -> str:
        return f"<{self.kind} {self.attributes()}>"


class HeatmapRenderer(Renderer):
    kind = "HeatmapRenderer"
    ATTRIBUTES = {
        "interpolation": ("bool", False),
        "max-opacity": ("float", 0.6),
        "min-confidence": ("float", 0.0),
        "channel-colors": ("colors", {}),
    }

    def __init__(self, data: TensorData | None = None, **attrs: Any) -> None:
        super().__init__(data, **attrs)

    @property
    def artifact_kind(self) -> ArtifactKind:
        return ArtifactKind.TENSOR


class SegmentationRenderer(Renderer):
    kind = "SegmentationRenderer"
    ATTRIBUTES = {
        "opacity": ("float", 0.5),
        "border-opacity": ("float", 0.5),
        "colors": ("colors", {}),
    }

    def __init__(
        self, data: ImageData | None = None, *, pyramid: bool = True, **attrs: Any
    ) -> None:
        super().__init__(data, **attrs)
        self.pyramid = pyramid

    @property
    def artifact_kind(self) -> ArtifactKind:
        return ArtifactKind.PYRAMID if self.pyramid else ArtifactKind.IMAGE


class BoundingBoxRenderer(Renderer):
    kind = "BoundingBoxRenderer"
    ATTRIBUTES = {
        "line-width": ("float", 2.0),
        "colors": ("colors", {}),
    }

    def __init__(self, data: BoxSet | None = None, **attrs: Any) -> None:
        super().__init__(data, **attrs)

    @property
    def artifact_kind(self) -> ArtifactKind:
        return ArtifactKind.TENSOR

    def export_array(self) -> np.ndarray:
        if self.data is None:
            raise ValueError(f"{self.kind} holds no data")
        return self.data.to_array()


class ImagePyramidRenderer(Renderer):
    """Displays the slide itself; nothing about it is worth saving."""

    kind = "ImagePyramidRenderer"
    serializable = False
    ATTRIBUTES = {"opacity": ("float", 1.0)}


RENDERER_TYPES: dict[str, type[Renderer]] = {
    cls.kind: cls
    for cls in (HeatmapRenderer, SegmentationRenderer, BoundingBoxRenderer, ImagePyramidRenderer)
}


class View:
    """Display surface: named renderers drawn over a slide."""

    def __init__(self) -> None:
        self._renderers: dict[str, Renderer] = {}
        self._lock = threading.Lock()

    def add_renderer(self, name: str, renderer: Renderer) -> None:
        with self._lock:
            if name in self._renderers:
                logger.info("Replacing renderer %s on view", name)
            self._renderers[name] = renderer

    def remove_renderer(self, name: str) -> Renderer | None:
        with self._lock:
            return self._renderers.pop(name, None)

    def get(self, name: str) -> Renderer | None:
        with self._lock:
            return self._renderers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._renderers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._renderers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._renderers
