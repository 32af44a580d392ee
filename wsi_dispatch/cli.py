from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from wsi_dispatch.backends import build_default_registry
from wsi_dispatch.core.config import DispatchConfig, default_root
from wsi_dispatch.core.models import SlideHandle
from wsi_dispatch.core.paths import PROJECT_FILENAME
from wsi_dispatch.core.wsi import IMAGE_EXTENSIONS, SLIDE_EXTENSIONS
from wsi_dispatch.errors import DispatchError
from wsi_dispatch.orchestration.dispatcher import (
    DispatchContext,
    DispatchOutcome,
    ProcessDispatcher,
)
from wsi_dispatch.orchestration.runner import ProjectRunner
from wsi_dispatch.pipeline.renderers import View
from wsi_dispatch.services.project import Project
from wsi_dispatch.services.results import ResultStore
from wsi_dispatch.utils import configure_logging, get_wsi_files, install_runtime_log_filter

logger = logging.getLogger("wsi_dispatch.cli")


def _load_config(root: str | None, config: str | None) -> DispatchConfig:
    overrides = {"root": Path(root)} if root else {}
    if config:
        return DispatchConfig.from_yaml(Path(config), **overrides)
    return DispatchConfig(**overrides).validated()


def _context(ctx: click.Context) -> DispatchContext:
    obj = ctx.ensure_object(dict)
    if "context" not in obj:
        try:
            cfg = _load_config(obj.get("root"), obj.get("config"))
        except (ValueError, FileNotFoundError) as e:
            raise click.ClickException(str(e)) from e
        obj["context"] = DispatchContext.from_config(cfg)
    return obj["context"]


def _open_project(root: Path | None, mpp: float | None) -> Project:
    if root is not None and (root / PROJECT_FILENAME).is_file():
        return Project.load(root, mpp=mpp)
    return Project(root)


def _include(project: Project, path: Path, mpp: float | None) -> SlideHandle:
    """Slide already in ``project`` for ``path``, or a newly added one."""
    target = path.resolve()
    for slide in project.images:
        if slide.path.resolve() == target:
            return slide
    return project.include_image(path, mpp=mpp)


def _echo_outcome(outcome: DispatchOutcome) -> None:
    if outcome.ok:
        note = " (reused)" if outcome.reused else ""
        backend = f" via {outcome.backend.backend}" if outcome.backend else ""
        kind = outcome.renderer.kind if outcome.renderer else "-"
        click.echo(f"[OK] {outcome.slide} -> {outcome.process}: {kind}{backend}{note}")
    else:
        click.echo(f"[FAIL] {outcome.slide} -> {outcome.process}: {outcome.error}", err=True)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--root",
    type=click.Path(file_okay=False),
    default=None,
    help=f"Application folder holding models/ and pipelines/ (default {default_root()}).",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML config file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, root: str | None, config_path: str | None, verbose: bool):
    """wsi-dispatch CLI.

    Runs catalogued neural-network models over whole-slide images, choosing an
    inference backend and pyramid level per model, and stores the results per
    slide inside a project folder.
    """
    configure_logging(verbose)
    install_runtime_log_filter()
    obj = ctx.ensure_object(dict)
    obj.update(root=root, config=config_path, verbose=verbose)


@cli.command()
def info():
    """Display supported formats and the result folder layout."""
    click.echo(f"Slide formats (OpenSlide): {', '.join(SLIDE_EXTENSIONS)}")
    click.echo(f"Image formats: {', '.join(IMAGE_EXTENSIONS)}")
    click.echo("Models: <root>/models/<name>/<name>.{txt,onnx,xml,pb,pt,anchors}")
    click.echo("Pipelines: <root>/pipelines/<id>.fpl")
    click.echo(
        "Results: <project>/results/<slide>/<pipeline>/<artifact>/<artifact>.<tiff|mhd|hdf5>"
        " plus attributes.txt"
    )


@cli.command()
@click.pass_context
def backends(ctx: click.Context):
    """List known inference backends and whether they are installed."""
    cfg = _load_config(ctx.obj.get("root"), ctx.obj.get("config"))
    registry = build_default_registry(
        library_dir=cfg.library_dir, gpu_available=False if cfg.device == "cpu" else None
    )
    click.echo(f"GPU available: {'yes' if registry.has_gpu else 'no'}")
    for desc in sorted(registry.descriptors(), key=lambda d: d.name):
        status = "installed" if desc.available else "missing"
        devices = ",".join(sorted(d.value for d in desc.devices)) or "-"
        exts = ",".join(sorted(desc.extensions)) or "-"
        click.echo(f"{desc.name:<12} {status:<10} devices={devices:<8} formats={exts}")


@cli.command()
@click.pass_context
def models(ctx: click.Context):
    """List catalogued models and their available weight formats."""
    context = _context(ctx)
    catalog = context.catalog
    for name in catalog.names():
        model = catalog.get(name)
        formats = ",".join(sorted(catalog.formats(name))) or "-"
        click.echo(
            f"{name}: {model.problem.value}/{model.resolution.value} "
            f"input={model.input_width}x{model.input_height} classes={model.nb_classes} "
            f"formats={formats}"
        )
    for name, err in sorted(catalog.errors().items()):
        click.echo(f"{name}: unusable ({err})", err=True)


@cli.command()
@click.pass_context
def pipelines(ctx: click.Context):
    """List pipelines and the models they run."""
    context = _context(ctx)
    assert context.pipelines is not None
    for uid in context.pipelines.names():
        pipeline = context.pipelines.get(uid)
        label = pipeline.name or uid
        click.echo(f"{uid}: {label} [{', '.join(pipeline.models)}]")
        if pipeline.description:
            click.echo(f"    {pipeline.description}")


@cli.command()
@click.argument("slide_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("process")
@click.option("--project", "project_dir", type=click.Path(file_okay=False), default=None)
@click.option("--mpp", type=float, default=None, help="Microns per pixel for plain images.")
@click.option(
    "--set",
    "overrides",
    multiple=True,
    metavar="KEY=VALUE",
    help="Metadata override (advanced mode only).",
)
@click.option("--save/--no-save", default=True, show_default=True, help="Save results.")
@click.pass_context
def run(
    ctx: click.Context,
    slide_path: str,
    process: str,
    project_dir: str | None,
    mpp: float | None,
    overrides: tuple[str, ...],
    save: bool,
):
    """Run PROCESS (a model, a pipeline, or 'tissue') on one slide."""
    context = _context(ctx)
    parsed: dict[str, str] = {}
    for item in overrides:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--set")
        parsed[key.strip()] = value.strip()

    dispatcher = ProcessDispatcher(context)
    root = Path(project_dir) if project_dir else None
    try:
        project = _open_project(root, mpp)
    except (DispatchError, ValueError) as e:
        raise click.ClickException(str(e)) from e
    with project:
        try:
            slide = _include(project, Path(slide_path), mpp)
        except (DispatchError, OSError, ValueError) as e:
            raise click.ClickException(f"Cannot open {slide_path}: {e}") from e
        if context.pipelines is not None and process in context.pipelines:
            outcomes = dispatcher.run_pipeline(slide, process)
        else:
            outcomes = [dispatcher.dispatch(slide, process, overrides=parsed or None)]
        for outcome in outcomes:
            _echo_outcome(outcome)
        if save and root is not None:
            renderers = {o.process: o.renderer for o in outcomes if o.ok and o.renderer}
            try:
                saved = project.results.save_renderers(slide.uid, process, renderers)
            except DispatchError as e:
                raise click.ClickException(str(e)) from e
            project.save()
            for artifact in saved:
                click.echo(f"Saved {artifact.name} -> {artifact.path}")
    if any(not o.ok for o in outcomes):
        raise click.ClickException(f"{process} failed on {slide_path}")


@cli.command("project-add")
@click.argument("project_dir", type=click.Path(file_okay=False))
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--recursive", is_flag=True, help="Recursively search directories for slides.")
@click.option("--mpp", type=float, default=None, help="Microns per pixel for plain images.")
def project_add(project_dir: str, paths: tuple[str, ...], recursive: bool, mpp: float | None):
    """Add slides (files or folders) to a project."""
    root = Path(project_dir)
    project = (
        Project.load(root, mpp=mpp) if (root / PROJECT_FILENAME).is_file() else Project(root)
    )
    try:
        for entry in paths:
            for file in get_wsi_files(entry, recursive=recursive):
                try:
                    slide = project.include_image(Path(file), mpp=mpp)
                except (DispatchError, OSError, ValueError) as e:
                    click.echo(f"[FAIL] {file}: {e}", err=True)
                    continue
                click.echo(f"Added {slide.uid} ({file})")
        project.save()
    finally:
        project.close()


@cli.command("run-project")
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.argument("process")
@click.option("--mpp", type=float, default=None, help="Microns per pixel for plain images.")
@click.option("--save/--no-save", default=True, show_default=True, help="Save results.")
@click.pass_context
def run_project(
    ctx: click.Context, project_dir: str, process: str, mpp: float | None, save: bool
):
    """Run PROCESS (a model, a pipeline, or 'tissue') on every slide of a project."""
    context = _context(ctx)
    verbose = bool(ctx.obj.get("verbose"))
    try:
        project = Project.load(Path(project_dir), mpp=mpp)
    except (DispatchError, ValueError) as e:
        raise click.ClickException(str(e)) from e
    dispatcher = ProcessDispatcher(context)
    try:
        runner = ProjectRunner(dispatcher, project, export=save, show_progress=not verbose)
        if context.pipelines is not None and process in context.pipelines:
            report = runner.run_pipeline(process)
        else:
            report = runner.run(process)
    finally:
        dispatcher.shutdown()
        project.close()

    click.echo(
        f"Completed {len(report.succeeded)} run(s), failures: {len(report.failed)}, "
        f"saved: {len(report.exported)}"
    )
    if verbose:
        for outcome in report.outcomes:
            _echo_outcome(outcome)
    for uid, err in report.export_failures:
        click.echo(f"[FAIL] saving {uid}: {err}", err=True)


@cli.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.argument("uid")
@click.option("--pipeline", "pipeline_id", default=None, help="Only this pipeline's results.")
def results(project_dir: str, uid: str, pipeline_id: str | None):
    """Restore and list saved results of slide UID."""
    store = ResultStore(Path(project_dir))
    view = View()
    try:
        restored = store.load(uid, view, pipeline_id=pipeline_id)
    except DispatchError as e:
        raise click.ClickException(str(e)) from e
    if not restored:
        click.echo(f"No results for {uid}")
        return
    for name, renderer in restored.items():
        attrs = " ".join(f"{k}={v}" for k, v in sorted(renderer.attributes().items()))
        click.echo(f"{name}: {renderer.kind} {attrs}")


def main():
    try:
        cli()
    except click.ClickException as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:  # noqa: BLE001
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
