"""Command-line tests driven through click's CliRunner."""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner
from conftest import CLASSIFIER, tissue_image, write_model
from PIL import Image

from wsi_dispatch.cli import cli
from wsi_dispatch.utils import SuppressRuntimeLogs, install_runtime_log_filter


@pytest.fixture(autouse=True)
def _restore_log_levels():
    loggers = [logging.getLogger(), logging.getLogger("wsi_dispatch")]
    levels = [lg.level for lg in loggers]
    yield
    for lg, level in zip(loggers, levels):
        lg.setLevel(level)


@pytest.fixture
def app(tmp_path):
    """Application root plus a CPU-only config file pointing at it."""
    root = tmp_path / "app"
    (root / "models").mkdir(parents=True)
    config = tmp_path / "dispatch.yaml"
    config.write_text(f"root: {root}\ndevice: cpu\nmax_workers: 1\n", encoding="utf-8")
    return root, config


@pytest.fixture
def slides(tmp_path):
    folder = tmp_path / "slides"
    folder.mkdir()
    for name in ("biopsy", "resection"):
        Image.fromarray(tissue_image(200)).save(folder / f"{name}.png")
    return folder


def _invoke(app, *args):
    _, config = app
    return CliRunner().invoke(cli, ["--config", str(config), *args])


class TestInfo:
    def test_info(self):
        result = CliRunner().invoke(cli, ["info"])
        assert result.exit_code == 0
        assert ".svs" in result.output
        assert "attributes.txt" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_backends(self, app):
        result = _invoke(app, "backends")
        assert result.exit_code == 0, result.output
        assert "GPU available: no" in result.output
        assert "OpenVINO" in result.output
        assert "TensorRT" in result.output

    def test_models(self, app):
        root, _ = app
        write_model(root / "models", "tumor", CLASSIFIER, formats=("xml", "onnx"))
        write_model(root / "models", "broken", {"problem": "classification"})

        result = _invoke(app, "models")

        assert result.exit_code == 0, result.output
        assert "tumor: classification/high input=64x64 classes=2 formats=onnx,xml" in result.output
        assert "broken: unusable" in result.output

    def test_pipelines(self, app):
        root, _ = app
        (root / "pipelines").mkdir()
        (root / "pipelines" / "screen.fpl").write_text(
            'PipelineName "Screen"\nAttribute model models/tumor/tumor.xml\n', encoding="utf-8"
        )
        result = _invoke(app, "pipelines")
        assert result.exit_code == 0, result.output
        assert "screen: Screen [tumor]" in result.output

    def test_bad_config(self, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("device: tpu\n", encoding="utf-8")
        result = CliRunner().invoke(cli, ["--config", str(config), "models"])
        assert result.exit_code != 0
        assert "device" in result.output


class TestRun:
    def test_tissue_then_results(self, app, slides, tmp_path):
        project = tmp_path / "proj"
        slide = slides / "biopsy.png"

        args = ("run", str(slide), "tissue", "--project", str(project), "--mpp", "0.25")
        result = _invoke(app, *args)

        assert result.exit_code == 0, result.output
        assert "[OK] biopsy -> tissue: SegmentationRenderer" in result.output
        assert (project / "results" / "biopsy" / "tissue" / "tissue" / "tissue.mhd").is_file()
        assert (project / "project.txt").read_text().strip() == f"biopsy,{slide}"

        again = _invoke(app, *args)
        assert again.exit_code == 0, again.output
        assert (project / "project.txt").read_text().strip() == f"biopsy,{slide}"

        listed = CliRunner().invoke(cli, ["results", str(project), "biopsy"])
        assert listed.exit_code == 0, listed.output
        assert "tissue/tissue: SegmentationRenderer" in listed.output

    def test_results_for_unknown_slide(self, tmp_path):
        result = CliRunner().invoke(cli, ["results", str(tmp_path), "ghost"])
        assert result.exit_code == 0
        assert "No results for ghost" in result.output

    def test_plain_image_needs_mpp(self, app, slides):
        result = _invoke(app, "run", str(slides / "biopsy.png"), "tissue")
        assert result.exit_code == 1
        assert "Cannot open" in result.output

    def test_unknown_process_fails(self, app, slides):
        result = _invoke(app, "run", str(slides / "biopsy.png"), "ghost", "--mpp", "0.25")
        assert result.exit_code == 1
        assert "[FAIL] biopsy -> ghost" in result.output

    def test_bad_override(self, app, slides):
        result = _invoke(
            app, "run", str(slides / "biopsy.png"), "tissue", "--mpp", "0.25", "--set", "novalue"
        )
        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output


class TestProjectCommands:
    def test_add_then_run(self, app, slides, tmp_path):
        project = tmp_path / "proj"

        added = _invoke(app, "project-add", str(project), str(slides), "--mpp", "0.25")
        assert added.exit_code == 0, added.output
        assert "Added biopsy" in added.output
        assert "Added resection" in added.output

        ran = _invoke(app, "run-project", str(project), "tissue", "--mpp", "0.25")
        assert ran.exit_code == 0, ran.output
        assert "Completed 2 run(s), failures: 0, saved: 2" in ran.output
        assert (project / "results" / "resection" / "tissue" / "tissue" / "tissue.mhd").is_file()

    def test_add_is_incremental(self, app, slides, tmp_path):
        project = tmp_path / "proj"
        _invoke(app, "project-add", str(project), str(slides / "biopsy.png"), "--mpp", "0.25")
        _invoke(app, "project-add", str(project), str(slides / "resection.png"), "--mpp", "0.25")
        lines = (project / "project.txt").read_text().splitlines()
        assert [line.split(",")[0] for line in lines] == ["biopsy", "resection"]

    def test_run_project_without_listing(self, app, tmp_path):
        result = _invoke(app, "run-project", str(tmp_path), "tissue")
        assert result.exit_code == 1
        assert "project.txt" in result.output


class TestLogging:
    def _record(self, msg):
        return logging.LogRecord("onnx", logging.WARNING, __file__, 1, msg, None, None)

    def test_runtime_banners_dropped(self):
        flt = SuppressRuntimeLogs()
        assert not flt.filter(self._record("This TensorFlow binary is optimized for AVX"))
        assert flt.filter(self._record("Backend ONNXRuntime selected"))

    def test_filter_installed_once(self):
        root = logging.getLogger()
        before = list(root.filters)
        try:
            install_runtime_log_filter()
            install_runtime_log_filter()
            added = [f for f in root.filters if isinstance(f, SuppressRuntimeLogs)]
            assert len(added) == 1
        finally:
            root.filters[:] = before


@pytest.mark.parametrize(
    "module",
    [
        "wsi_dispatch.cli",
        "wsi_dispatch.pipeline",
        "wsi_dispatch.pipeline.nodes",
        "wsi_dispatch.services",
        "wsi_dispatch.services.results",
        "wsi_dispatch.orchestration.dispatcher",
    ],
)
def test_module_imports_in_fresh_interpreter(module):
    """Each entry point imports on its own, whatever the import order."""
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=Path(__file__).resolve().parents[1],
        capture_output=True,
        text=True,
        timeout=120,
    )
    assert result.returncode == 0, result.stderr
