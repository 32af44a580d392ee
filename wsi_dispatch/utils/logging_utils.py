from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# start-up banners printed through logging by the optional inference runtimes
_NOISY_PREFIXES = (
    "[W:onnxruntime",
    "oneDNN custom operations are on",
    "This TensorFlow binary is optimized",
    "Unable to register cuDNN factory",
)


class SuppressRuntimeLogs(logging.Filter):
    """Drop start-up banners emitted by inference runtimes."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        msg = record.getMessage()
        return not any(prefix in msg for prefix in _NOISY_PREFIXES)


def _has_runtime_filter(filterer: logging.Filterer) -> bool:
    return any(isinstance(f, SuppressRuntimeLogs) for f in filterer.filters)


def install_runtime_log_filter() -> None:
    """Attach one runtime log filter to the root logger and each of its handlers.

    Safe to call repeatedly; the CLI does so on every invocation.
    """
    flt = SuppressRuntimeLogs()
    root = logging.getLogger()
    for filterer in (root, *root.handlers):
        if not _has_runtime_filter(filterer):
            filterer.addFilter(flt)


def configure_logging(verbose: bool) -> None:
    """DEBUG for the root and ``wsi_dispatch`` loggers when verbose, WARNING otherwise."""
    level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger()
    root.setLevel(level)
    logging.getLogger("wsi_dispatch").setLevel(level)

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    for handler in root.handlers:
        handler.setLevel(level)
