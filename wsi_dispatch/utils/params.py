import logging
from pathlib import Path

import click

from wsi_dispatch.core.wsi import WSIFactory

logger = logging.getLogger("wsi_dispatch.utils")


def get_wsi_files(path: str, *, recursive: bool = False) -> list[str]:
    """Slides under ``path``; a single file is returned as-is.

    Recognised extensions come from :class:`WSIFactory`, so readers registered
    at runtime are picked up too.
    """
    supported_exts = set(WSIFactory.supported_extensions())
    path_obj = Path(path)

    if path_obj.is_file():
        if path_obj.suffix.lower() not in supported_exts:
            logger.warning(f"File may not be a supported slide format: {path_obj.name}")
        return [str(path_obj)]

    files_set: set[Path] = set()
    walker = path_obj.rglob if recursive else path_obj.glob
    for ext in supported_exts:
        files_set.update(walker(f"*{ext}"))
        files_set.update(walker(f"*{ext.upper()}"))

    files = sorted(files_set)
    if not files:
        raise click.ClickException(
            f"No slide files found in directory: {path}\n"
            f"Supported formats: {', '.join(sorted(supported_exts))}"
        )

    return [str(f) for f in files]
