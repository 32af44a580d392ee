"""General utilities used across wsi_dispatch.

Exports the HDF5 writer, the artifact codecs, the reader/writer lock, and slide
file discovery.
"""

from .artifact_io import (
    read_metaimage,
    read_tensor,
    read_tiff_pyramid,
    write_metaimage,
    write_tensor,
    write_tiff_pyramid,
)
from .h5 import H5TensorWriter
from .locks import ReadWriteLock
from .logging_utils import SuppressRuntimeLogs, configure_logging, install_runtime_log_filter
from .params import get_wsi_files

__all__ = [
    "H5TensorWriter",
    "ReadWriteLock",
    "SuppressRuntimeLogs",
    "configure_logging",
    "install_runtime_log_filter",
    "get_wsi_files",
    "read_metaimage",
    "read_tensor",
    "read_tiff_pyramid",
    "write_metaimage",
    "write_tensor",
    "write_tiff_pyramid",
]
