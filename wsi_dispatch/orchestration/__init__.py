"""Orchestration layer: dispatching processes onto slides, alone or project-wide."""

from .dispatcher import DispatchContext, DispatchOutcome, ProcessDispatcher
from .parallel import DispatchHandle
from .runner import ProjectRunner, ProjectRunReport

__all__ = [
    "DispatchContext",
    "DispatchOutcome",
    "ProcessDispatcher",
    "DispatchHandle",
    "ProjectRunner",
    "ProjectRunReport",
]
