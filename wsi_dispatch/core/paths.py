from __future__ import annotations

from pathlib import Path

ATTRIBUTES_FILENAME = "attributes.txt"
PROJECT_FILENAME = "project.txt"
PROJECT_SUBDIRS = ("pipelines", "results", "thumbnails")
METADATA_EXTENSION = "txt"
ANCHORS_EXTENSION = "anchors"
PIPELINE_EXTENSIONS = (".fpl", ".FPL")


def model_dir(models_root: Path, model_name: str) -> Path:
    return models_root / model_name


def model_weights_path(models_root: Path, model_name: str, model_format: str) -> Path:
    return model_dir(models_root, model_name) / f"{model_name}.{model_format.lstrip('.')}"


def model_metadata_path(models_root: Path, model_name: str) -> Path:
    return model_dir(models_root, model_name) / f"{model_name}.{METADATA_EXTENSION}"


def model_anchors_path(models_root: Path, model_name: str) -> Path:
    return model_dir(models_root, model_name) / f"{model_name}.{ANCHORS_EXTENSION}"


def results_root(project_root: Path) -> Path:
    return project_root / "results"


def slide_results_dir(project_root: Path, slide_uid: str) -> Path:
    return results_root(project_root) / slide_uid


def artifact_dir(project_root: Path, slide_uid: str, pipeline: str, artifact_name: str) -> Path:
    return slide_results_dir(project_root, slide_uid) / pipeline / artifact_name


def artifact_path(
    project_root: Path, slide_uid: str, pipeline: str, artifact_name: str, extension: str
) -> Path:
    folder = artifact_dir(project_root, slide_uid, pipeline, artifact_name)
    return folder / f"{artifact_name}.{extension.lstrip('.')}"


def attributes_path(project_root: Path, slide_uid: str, pipeline: str, artifact_name: str) -> Path:
    return artifact_dir(project_root, slide_uid, pipeline, artifact_name) / ATTRIBUTES_FILENAME


def project_file(project_root: Path) -> Path:
    return project_root / PROJECT_FILENAME


def thumbnail_path(project_root: Path, slide_uid: str) -> Path:
    return project_root / "thumbnails" / f"{slide_uid}.png"
