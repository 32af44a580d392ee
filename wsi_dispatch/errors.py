"""Error taxonomy for model dispatch, graph assembly, and result persistence."""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for failures that abort a single dispatch.

    The optional ``slide``, ``model`` and ``stage`` fields identify where the
    failure happened and are appended to the message.
    """

    def __init__(
        self,
        message: str,
        *,
        slide: str | None = None,
        model: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.slide = slide
        self.model = model
        self.stage = stage

    def with_context(
        self,
        *,
        slide: str | None = None,
        model: str | None = None,
        stage: str | None = None,
    ) -> DispatchError:
        """Fill in context fields that are still unset and return ``self``."""
        if self.slide is None:
            self.slide = slide
        if self.model is None:
            self.model = model
        if self.stage is None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        parts = [
            f"{key}={val}"
            for key, val in (("slide", self.slide), ("model", self.model), ("stage", self.stage))
            if val is not None
        ]
        if not parts:
            return self.message
        return f"{self.message} [{', '.join(parts)}]"


class ConfigurationError(DispatchError, ValueError):
    """Missing or malformed model metadata / configuration field."""


class BackendUnavailableError(DispatchError):
    """No installed backend accepts any of the model's available formats."""


class ResolutionPlanningError(DispatchError):
    """The planned pyramid level is negative or out of range."""


class ArtifactIOError(DispatchError, OSError):
    """A sidecar, anchor, or artifact file is missing or unreadable."""


class UnknownProcessError(DispatchError, LookupError):
    """The process name is neither a built-in routine nor a catalogued model."""


class DispatchCancelled(DispatchError):
    """A background dispatch was cancelled before its network was loaded."""
