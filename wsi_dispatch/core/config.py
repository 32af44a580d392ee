from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from omegaconf import OmegaConf

from wsi_dispatch.core.models import RGB


def _ensure_positive(value: int, name: str) -> int:
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")
    return value


def _ensure_non_negative(value: int, name: str) -> int:
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


def _ensure_fraction(value: float, name: str) -> float:
    if value < 0 or value > 1:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")
    return value


def _ensure_color(value: Any, name: str) -> RGB:
    rgb = tuple(int(v) for v in value)
    if len(rgb) != 3 or any(c < 0 or c > 255 for c in rgb):
        raise ValueError(f"{name} must be three integers in [0, 255], got {value}")
    return rgb  # type: ignore[return-value]


def _validate_device(device: str) -> str:
    dev = device.strip().lower()
    if dev == "cpu":
        return dev
    if dev == "cuda" or dev.startswith("cuda:"):
        if dev.startswith("cuda:"):
            suffix = dev.split("cuda:", 1)[1]
            if suffix and not suffix.isdigit():
                raise ValueError(
                    f"Invalid CUDA device specification '{device}'. Use 'cuda' or 'cuda:<index>'."
                )
        return dev
    raise ValueError(f"device must be 'cpu', 'cuda', or 'cuda:<index>', got {device}")


def default_root() -> Path:
    return Path.home() / ".wsi_dispatch"


@dataclass
class TissueConfig:
    threshold: int = 85
    dilate: int = 9
    erode: int = 9
    thumbnail_max: int = 2048
    color: RGB = (0, 255, 0)
    opacity: float = 0.4

    def validated(self) -> TissueConfig:
        _ensure_positive(self.threshold, "tissue threshold")
        _ensure_non_negative(self.dilate, "tissue dilate")
        _ensure_non_negative(self.erode, "tissue erode")
        _ensure_positive(self.thumbnail_max, "tissue thumbnail_max")
        self.color = _ensure_color(self.color, "tissue color")
        _ensure_fraction(self.opacity, "tissue opacity")
        return self


@dataclass
class DispatchConfig:
    root: Path = field(default_factory=default_root)
    models_dir: Path | None = None
    pipelines_dir: Path | None = None
    library_dir: Path | None = None
    device: str = "cuda"
    advanced_mode: bool = False
    max_workers: int = 2
    tissue: TissueConfig = field(default_factory=TissueConfig)

    def validated(self) -> DispatchConfig:
        self.root = Path(self.root).expanduser()
        if self.models_dir is None:
            self.models_dir = self.root / "models"
        if self.pipelines_dir is None:
            self.pipelines_dir = self.root / "pipelines"
        self.models_dir = Path(self.models_dir).expanduser()
        self.pipelines_dir = Path(self.pipelines_dir).expanduser()
        if self.library_dir is not None:
            self.library_dir = Path(self.library_dir).expanduser()
            if not self.library_dir.is_dir():
                raise FileNotFoundError(f"Backend library directory not found: {self.library_dir}")
        self.device = _validate_device(str(self.device))
        _ensure_positive(self.max_workers, "max_workers")
        self.tissue = self.tissue.validated()
        return self

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> DispatchConfig:
        """Build a config from a YAML file; keyword overrides win over file values."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        conf = OmegaConf.to_container(OmegaConf.load(str(path)), resolve=True)
        if not isinstance(conf, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        values: dict[str, Any] = {str(k): v for k, v in conf.items()}
        values.update({k: v for k, v in overrides.items() if v is not None})
        tissue = values.pop("tissue", None) or {}
        unknown = set(values) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown config keys in {path}: {sorted(unknown)}")
        for key in ("root", "models_dir", "pipelines_dir", "library_dir"):
            if values.get(key) is not None:
                values[key] = Path(values[key])
        if isinstance(tissue, TissueConfig):
            values["tissue"] = tissue
        else:
            values["tissue"] = TissueConfig(**dict(tissue))
        return cls(**values).validated()
