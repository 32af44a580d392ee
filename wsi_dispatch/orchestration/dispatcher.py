"""Run a named process (a catalogued model or the built-in ``tissue`` routine) on a slide.

Each request walks ``idle -> backend_resolving -> graph_building -> attached``
or ends in ``failed``. Exactly one renderer is attached per (slide, renderer
key): a request for a pair that is already attached returns the attached
renderer, and a request for a pair that is still running waits for it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from wsi_dispatch.backends import BackendRegistry, build_default_registry
from wsi_dispatch.backends.selector import select_backend
from wsi_dispatch.core.config import DispatchConfig
from wsi_dispatch.core.models import (
    BackendChoice,
    DispatchState,
    ModelDescriptor,
    ProcessingGraphSpec,
    SlideHandle,
)
from wsi_dispatch.errors import (
    BackendUnavailableError,
    ConfigurationError,
    DispatchCancelled,
    DispatchError,
)
from wsi_dispatch.orchestration.parallel import CancellationToken, DispatchExecutor, DispatchHandle
from wsi_dispatch.pipeline.builder import TISSUE_KEY, GraphBuilder
from wsi_dispatch.pipeline.nodes import ImageData
from wsi_dispatch.pipeline.renderers import Renderer, SegmentationRenderer
from wsi_dispatch.services.catalog import ModelCatalog
from wsi_dispatch.services.interfaces import SegmentationService
from wsi_dispatch.services.pipelines import PipelineCatalog
from wsi_dispatch.services.planning import plan_level
from wsi_dispatch.services.segmentation import ThresholdTissueSegmenter

logger = logging.getLogger("wsi_dispatch.dispatcher")


@dataclass
class DispatchContext:
    """Everything a dispatch needs, constructed once and passed in explicitly."""

    config: DispatchConfig
    catalog: ModelCatalog
    registry: BackendRegistry
    pipelines: PipelineCatalog | None = None
    segmenter: SegmentationService | None = None
    builder: GraphBuilder | None = None

    def __post_init__(self) -> None:
        if self.builder is None:
            self.builder = GraphBuilder(self.registry, self.catalog, self.segmenter)

    @classmethod
    def from_config(
        cls, config: DispatchConfig, *, registry: BackendRegistry | None = None
    ) -> DispatchContext:
        config = config.validated()
        if config.models_dir is None or config.pipelines_dir is None:
            raise ConfigurationError(
                "Configuration has no models or pipelines directory", stage="config"
            )
        catalog = ModelCatalog(config.models_dir)
        catalog.scan()
        pipelines = PipelineCatalog(config.pipelines_dir)
        pipelines.scan()
        if registry is None:
            registry = build_default_registry(
                library_dir=config.library_dir,
                gpu_available=False if config.device == "cpu" else None,
            )
        return cls(
            config=config,
            catalog=catalog,
            registry=registry,
            pipelines=pipelines,
            segmenter=ThresholdTissueSegmenter(config.tissue),
        )


@dataclass
class DispatchOutcome:
    slide: str
    process: str
    state: DispatchState
    renderer: Renderer | None = None
    error: DispatchError | None = None
    reused: bool = False
    backend: BackendChoice | None = None
    spec: ProcessingGraphSpec | None = None
    transitions: tuple[DispatchState, ...] = field(default=(), repr=False)

    @property
    def ok(self) -> bool:
        return self.state == DispatchState.ATTACHED

    def raise_for_error(self) -> DispatchOutcome:
        if self.error is not None:
            raise self.error
        return self


class _Run:
    """State bookkeeping for one request."""

    def __init__(self, slide: SlideHandle, process: str) -> None:
        self.slide = slide
        self.process = process
        self.states: list[DispatchState] = [DispatchState.IDLE]
        self.backend: BackendChoice | None = None
        self.spec: ProcessingGraphSpec | None = None

    def enter(self, state: DispatchState) -> None:
        logger.debug("%s/%s: %s", self.slide.uid, self.process, state.value)
        self.states.append(state)

    def outcome(self, renderer: Renderer, *, reused: bool = False) -> DispatchOutcome:
        self.enter(DispatchState.ATTACHED)
        return DispatchOutcome(
            slide=self.slide.uid,
            process=self.process,
            state=DispatchState.ATTACHED,
            renderer=renderer,
            reused=reused,
            backend=self.backend,
            spec=self.spec,
            transitions=tuple(self.states),
        )

    def failure(self, error: DispatchError) -> DispatchOutcome:
        self.enter(DispatchState.FAILED)
        return DispatchOutcome(
            slide=self.slide.uid,
            process=self.process,
            state=DispatchState.FAILED,
            error=error,
            backend=self.backend,
            spec=self.spec,
            transitions=tuple(self.states),
        )


class ProcessDispatcher:
    def __init__(self, context: DispatchContext, *, executor: DispatchExecutor | None = None):
        self.context = context
        self._executor = executor
        self._inflight: dict[tuple[str, str], Future[DispatchOutcome]] = {}
        self._lock = threading.Lock()

    @property
    def executor(self) -> DispatchExecutor:
        if self._executor is None:
            self._executor = DispatchExecutor(self.context.config.max_workers)
        return self._executor

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown()

    # synchronous path
    def dispatch(
        self,
        slide: SlideHandle,
        process: str,
        *,
        overrides: Mapping[str, Any] | None = None,
    ) -> DispatchOutcome:
        """Run ``process`` on ``slide`` and return the outcome; stage failures are not raised."""
        return self._dispatch(slide, process, overrides, None)

    def run_pipeline(self, slide: SlideHandle, pipeline_id: str) -> list[DispatchOutcome]:
        """Dispatch every model of a pipeline in order, stopping at the first failure."""
        if self.context.pipelines is None:
            raise ConfigurationError("No pipeline catalog configured", stage="pipeline")
        pipeline = self.context.pipelines.get(pipeline_id)
        outcomes: list[DispatchOutcome] = []
        for process in pipeline.models:
            outcome = self.dispatch(slide, process)
            outcomes.append(outcome)
            if not outcome.ok:
                logger.error(
                    "Pipeline %s stopped at %s on %s", pipeline_id, process, slide.uid
                )
                break
        return outcomes

    # background path
    def submit(
        self,
        slide: SlideHandle,
        process: str,
        *,
        overrides: Mapping[str, Any] | None = None,
    ) -> DispatchHandle:
        """Run the dispatch on a worker thread and return a cancellable handle."""
        token = CancellationToken()
        future = self.executor.submit(self._dispatch, slide, process, overrides, token)

        def _cancelled() -> DispatchOutcome:
            run = _Run(slide, process)
            return run.failure(
                DispatchCancelled("Dispatch cancelled before it started", slide=slide.uid)
            )

        return DispatchHandle(future, token, on_cancelled=_cancelled)

    # internals
    def _renderer_key(self, process: str) -> str:
        if process == TISSUE_KEY:
            return TISSUE_KEY
        return self.context.catalog.get(process).renderer_key

    def _dispatch(
        self,
        slide: SlideHandle,
        process: str,
        overrides: Mapping[str, Any] | None,
        token: CancellationToken | None,
    ) -> DispatchOutcome:
        run = _Run(slide, process)
        try:
            key = self._renderer_key(process)
        except DispatchError as e:
            return self._failed(run, e)

        existing = slide.get_renderer(key)
        if existing is None:
            with self._lock:
                # an owner may have attached and left between the check above and here
                existing = slide.get_renderer(key)
                waiting_on = self._inflight.get((slide.uid, key))
                if existing is None and waiting_on is None:
                    pending: Future = Future()
                    self._inflight[(slide.uid, key)] = pending
        if existing is not None:
            logger.info("%s already ran on %s; reusing its renderer", process, slide.uid)
            return run.outcome(existing, reused=True)
        if waiting_on is not None:
            logger.info("%s is already running on %s; waiting for it", process, slide.uid)
            return replace(waiting_on.result(), reused=True)

        outcome: DispatchOutcome | None = None
        try:
            outcome = self._execute(run, key, overrides, token)
        finally:
            with self._lock:
                self._inflight.pop((slide.uid, key), None)
            if outcome is None:
                outcome = run.failure(DispatchError("Dispatch aborted", slide=slide.uid))
            pending.set_result(outcome)
        return outcome

    def _failed(self, run: _Run, error: DispatchError) -> DispatchOutcome:
        error.with_context(slide=run.slide.uid, model=run.process)
        logger.error("Dispatch of %s on %s failed: %s", run.process, run.slide.uid, error)
        return run.failure(error)

    def _execute(
        self,
        run: _Run,
        key: str,
        overrides: Mapping[str, Any] | None,
        token: CancellationToken | None,
    ) -> DispatchOutcome:
        try:
            if run.process == TISSUE_KEY:
                renderer = self._segment_tissue(run, token)
            else:
                renderer = self._run_model(run, overrides, token)
        except DispatchError as e:
            return self._failed(run, e)
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected failure running %s on %s", run.process, run.slide.uid)
            return self._failed(run, DispatchError(f"{type(e).__name__}: {e}", stage="execute"))

        attached = run.slide.insert_renderer(key, renderer)
        return run.outcome(attached, reused=attached is not renderer)

    def _model(self, process: str, overrides: Mapping[str, Any] | None) -> ModelDescriptor:
        catalog = self.context.catalog
        if not overrides:
            return catalog.get(process)
        if not self.context.config.advanced_mode:
            logger.warning("Ignoring metadata overrides for %s: advanced mode is off", process)
            return catalog.get(process)
        logger.info("Applying overrides to %s: %s", process, sorted(overrides))
        return catalog.with_overrides(process, overrides)

    def _run_model(
        self,
        run: _Run,
        overrides: Mapping[str, Any] | None,
        token: CancellationToken | None,
    ) -> Renderer:
        ctx = self.context
        slide = run.slide

        run.enter(DispatchState.BACKEND_RESOLVING)
        model = self._model(run.process, overrides)
        formats = ctx.catalog.formats(model.name)
        installed = ctx.registry.installed()
        choice = select_backend(
            formats,
            installed,
            cpu_only=model.cpu_only,
            preferred=model.preferred_backend,
            gpu_available=ctx.registry.has_gpu and ctx.config.device != "cpu",
        )
        if choice is None:
            raise BackendUnavailableError(
                f"No installed backend accepts formats {sorted(formats) or '[]'} "
                f"(installed: {sorted(installed)})",
                stage="backend",
            )
        run.backend = choice
        logger.info(
            "%s on %s: using %s (%s, %s)",
            model.name,
            slide.uid,
            choice.backend,
            choice.model_format,
            choice.device.value,
        )

        run.enter(DispatchState.GRAPH_BUILDING)
        plan = plan_level(model, slide.levels, slide.magnification)
        logger.info(
            "%s on %s: level %d (resize=%s)", model.name, slide.uid, plan.level, plan.resize
        )
        assert ctx.builder is not None
        graph = ctx.builder.build(slide, model, choice, plan)
        run.spec = graph.spec
        before_load = token.checkpoint if token is not None else None
        return graph.execute(before_load=before_load)

    def _segment_tissue(self, run: _Run, token: CancellationToken | None) -> Renderer:
        segmenter = self.context.segmenter
        if segmenter is None:
            raise ConfigurationError("No tissue segmenter configured", stage="tissue")
        if run.slide.wsi is None:
            raise DispatchError("Slide has no open reader", stage="tissue")
        run.enter(DispatchState.GRAPH_BUILDING)
        if token is not None:
            token.checkpoint()
        mask = segmenter.segment_thumbnail(run.slide.wsi)
        sx, sy = mask.scale
        tissue = self.context.config.tissue
        data = ImageData(mask.data.astype("uint8"), (1.0 / sx, 1.0 / sy))
        logger.info(
            "Tissue on %s: %.1f%% of the thumbnail", run.slide.uid, 100.0 * float(mask.data.mean())
        )
        return SegmentationRenderer(
            data,
            pyramid=False,
            opacity=tissue.opacity,
            border_opacity=tissue.opacity,
            colors={1: tissue.color},
        )
