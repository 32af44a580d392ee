"""Readers and writers for the three result artifact formats.

* ``.tiff``: tiled pyramid, full resolution plus reduced SubIFDs (tifffile).
* ``.mhd``: MetaImage header with a raw ``.raw`` data file beside it.
* ``.hdf5``: tensor stored as a single ``tensor`` dataset (h5py).

Every reader returns ``(array, spacing)`` where spacing is ``(sx, sy)`` in
level-0 pixels per artifact pixel.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import h5py
import numpy as np
import tifffile

from wsi_dispatch.errors import ArtifactIOError
from wsi_dispatch.utils.h5 import H5TensorWriter

logger = logging.getLogger("wsi_dispatch.artifact_io")

TENSOR_DATASET = "tensor"
PYRAMID_TILE = 256
_MIN_PYRAMID_SIDE = 512

_MHD_TYPES = {
    np.dtype(np.uint8): "MET_UCHAR",
    np.dtype(np.int8): "MET_CHAR",
    np.dtype(np.uint16): "MET_USHORT",
    np.dtype(np.int16): "MET_SHORT",
    np.dtype(np.uint32): "MET_UINT",
    np.dtype(np.int32): "MET_INT",
    np.dtype(np.float32): "MET_FLOAT",
    np.dtype(np.float64): "MET_DOUBLE",
}
_MHD_DTYPES = {name: dtype for dtype, name in _MHD_TYPES.items()}


def _pyramid_reductions(shape: tuple[int, ...]) -> int:
    h, w = shape[:2]
    count = 0
    while min(h, w) // 2 >= _MIN_PYRAMID_SIDE:
        h, w = h // 2, w // 2
        count += 1
    return count


def write_tiff_pyramid(
    path: Path, data: np.ndarray, spacing: tuple[float, float] = (1.0, 1.0)
) -> Path:
    """Write ``data`` as a tiled pyramidal TIFF with reduced levels as SubIFDs."""
    data = np.ascontiguousarray(data)
    if data.ndim not in (2, 3):
        raise ValueError(f"Pyramid data must be 2D or 3D, got shape {data.shape}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    reductions = _pyramid_reductions(data.shape)
    photometric = "rgb" if data.ndim == 3 and data.shape[2] == 3 else "minisblack"
    options = dict(tile=(PYRAMID_TILE, PYRAMID_TILE), photometric=photometric, compression="zlib")
    with tifffile.TiffWriter(path, bigtiff=data.nbytes > 2**31) as tif:
        tif.write(
            data,
            subifds=reductions or None,
            metadata={"spacing": [float(spacing[0]), float(spacing[1])]},
            **options,
        )
        level = data
        for _ in range(reductions):
            h, w = level.shape[:2]
            level = cv2.resize(level, (w // 2, h // 2), interpolation=cv2.INTER_NEAREST)
            tif.write(level, subfiletype=1, **options)
    return path


def read_tiff_pyramid(path: Path) -> tuple[np.ndarray, tuple[float, float]]:
    try:
        with tifffile.TiffFile(path) as tif:
            data = tif.series[0].levels[0].asarray()
            meta = tif.shaped_metadata
    except (OSError, tifffile.TiffFileError) as e:
        raise ArtifactIOError(f"Cannot read pyramid {path}: {e}") from e
    spacing = (1.0, 1.0)
    if meta and "spacing" in meta[0]:
        sx, sy = meta[0]["spacing"]
        spacing = (float(sx), float(sy))
    return data, spacing


def write_metaimage(
    path: Path, data: np.ndarray, spacing: tuple[float, float] = (1.0, 1.0)
) -> Path:
    """Write a 2D image (optionally multi-channel) as ``.mhd`` + ``.raw``."""
    data = np.ascontiguousarray(data)
    if data.ndim not in (2, 3):
        raise ValueError(f"Image data must be 2D or 3D, got shape {data.shape}")
    if data.dtype not in _MHD_TYPES:
        raise ValueError(f"Unsupported MetaImage element type: {data.dtype}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    raw_path = path.with_suffix(".raw")
    h, w = data.shape[:2]
    channels = data.shape[2] if data.ndim == 3 else 1
    header = [
        "ObjectType = Image",
        "NDims = 2",
        f"DimSize = {w} {h}",
        f"ElementSpacing = {float(spacing[0])} {float(spacing[1])}",
        f"ElementNumberOfChannels = {channels}",
        f"ElementType = {_MHD_TYPES[data.dtype]}",
        "BinaryData = True",
        "BinaryDataByteOrderMSB = False",
        f"ElementDataFile = {raw_path.name}",
    ]
    data.astype(data.dtype.newbyteorder("<"), copy=False).tofile(raw_path)
    path.write_text("\n".join(header) + "\n", encoding="utf-8")
    return path


def read_metaimage(path: Path) -> tuple[np.ndarray, tuple[float, float]]:
    path = Path(path)
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ArtifactIOError(f"Cannot read MetaImage header {path}: {e}") from e
    header: dict[str, str] = {}
    for line in lines:
        if "=" in line:
            key, value = line.split("=", 1)
            header[key.strip()] = value.strip()
    try:
        w, h = (int(v) for v in header["DimSize"].split()[:2])
        channels = int(header.get("ElementNumberOfChannels", "1"))
        dtype = _MHD_DTYPES[header["ElementType"]]
        sx, sy = (float(v) for v in header.get("ElementSpacing", "1 1").split()[:2])
        raw_path = path.parent / header["ElementDataFile"]
    except (KeyError, ValueError) as e:
        raise ArtifactIOError(f"Malformed MetaImage header {path}: {e}") from e
    try:
        flat = np.fromfile(raw_path, dtype=dtype.newbyteorder("<"))
    except OSError as e:
        raise ArtifactIOError(f"Cannot read MetaImage data {raw_path}: {e}") from e
    shape = (h, w, channels) if channels > 1 else (h, w)
    if flat.size != int(np.prod(shape)):
        raise ArtifactIOError(f"MetaImage data {raw_path} does not match header size {shape}")
    return flat.reshape(shape).astype(dtype), (sx, sy)


def write_tensor(path: Path, data: np.ndarray, spacing: tuple[float, float] = (1.0, 1.0)) -> Path:
    data = np.asarray(data)
    if data.ndim == 0:
        data = data.reshape(1)
    with H5TensorWriter(Path(path)) as writer:
        writer.write(TENSOR_DATASET, data, {"spacing": [float(spacing[0]), float(spacing[1])]})
    return Path(path)


def read_tensor(path: Path) -> tuple[np.ndarray, tuple[float, float]]:
    try:
        with h5py.File(path, "r") as f:
            if TENSOR_DATASET not in f:
                raise ArtifactIOError(f"No {TENSOR_DATASET!r} dataset in {path}")
            dset = f[TENSOR_DATASET]
            data = dset[()]
            spacing = dset.attrs.get("spacing", (1.0, 1.0))
    except ArtifactIOError:
        raise
    except OSError as e:
        raise ArtifactIOError(f"Cannot read tensor {path}: {e}") from e
    return np.asarray(data), (float(spacing[0]), float(spacing[1]))
