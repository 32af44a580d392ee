from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tqdm import tqdm

from wsi_dispatch.core.models import ResultArtifact
from wsi_dispatch.errors import ArtifactIOError
from wsi_dispatch.orchestration.dispatcher import DispatchOutcome, ProcessDispatcher
from wsi_dispatch.orchestration.parallel import InflightTracker
from wsi_dispatch.services.project import Project

logger = logging.getLogger("wsi_dispatch.runner")


@dataclass
class ProjectRunReport:
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    exported: list[ResultArtifact] = field(default_factory=list)
    export_failures: list[tuple[str, ArtifactIOError]] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if not o.ok]


class ProjectRunner:
    """Run one process, or one pipeline, over every slide of a project."""

    def __init__(
        self,
        dispatcher: ProcessDispatcher,
        project: Project,
        *,
        export: bool = False,
        show_progress: bool = False,
    ) -> None:
        self.dispatcher = dispatcher
        self.project = project
        self.export = export
        self.show_progress = show_progress

    def _max_inflight(self) -> int:
        return max(1, int(self.dispatcher.context.config.max_workers))

    def run(self, process: str) -> ProjectRunReport:
        report = ProjectRunReport()
        slides = self.project.images
        if not slides:
            logger.warning("No slides in project %s", self.project.root)
            return report

        progress = tqdm(total=len(slides), disable=not self.show_progress, desc=process)
        tracker = InflightTracker(
            results=report.outcomes, progress=progress if self.show_progress else None
        )
        limit = self._max_inflight()
        for slide in slides:
            tracker.wait_until_at_most(limit=limit - 1)
            tracker.add(self.dispatcher.submit(slide, process), slide.uid)
        tracker.wait_until_at_most(limit=0)
        progress.close()

        if self.export:
            self._export(report, process)
        return report

    def run_pipeline(self, pipeline_id: str) -> ProjectRunReport:
        """Pipelines run slide by slide; each stops at its first failing model."""
        report = ProjectRunReport()
        slides = self.project.images
        for slide in tqdm(slides, disable=not self.show_progress, desc=pipeline_id):
            report.outcomes.extend(self.dispatcher.run_pipeline(slide, pipeline_id))
        if self.export:
            self._export(report, pipeline_id)
        return report

    def _export(self, report: ProjectRunReport, pipeline_id: str) -> None:
        for outcome in report.succeeded:
            if outcome.renderer is None:
                continue
            try:
                report.exported.extend(
                    self.project.results.save_renderers(
                        outcome.slide, pipeline_id, {outcome.process: outcome.renderer}
                    )
                )
            except ArtifactIOError as e:
                logger.error("Export of %s for %s failed: %s", outcome.process, outcome.slide, e)
                report.export_failures.append((outcome.slide, e))
