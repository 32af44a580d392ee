from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any, Mapping

import h5py
import numpy as np


def _attr_value(value: Any) -> Any:
    if isinstance(value, dict):
        return json.dumps(value)
    if value is None:
        return "None"
    return value


class H5TensorWriter:
    """Writes named arrays to an HDF5 file that only appears once complete.

    Datasets go to a hidden temporary file beside the target; leaving the
    ``with`` block normally moves it into place, an exception deletes it.
    """

    def __init__(self, path: Path, *, compression: str | None = "gzip") -> None:
        self.path = Path(path).absolute()
        self.compression = compression
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_name = f".{self.path.name}.tmp.{uuid.uuid4().hex}"
        self._tmp_path: Path | None = self.path.parent / tmp_name
        self._f = h5py.File(self._tmp_path, "w")
        self._closed = False

    def write(
        self, name: str, data: np.ndarray, attrs: Mapping[str, Any] | None = None
    ) -> None:
        if name in self._f:
            raise ValueError(f"Dataset {name!r} already written to {self.path}")
        arr = np.asarray(data)
        # scalars cannot be chunked or compressed
        compression = self.compression if arr.ndim > 0 and arr.size > 0 else None
        dset = self._f.create_dataset(name, data=arr, compression=compression)
        for key, value in (attrs or {}).items():
            dset.attrs[key] = _attr_value(value)

    def close(self) -> None:
        if self._closed:
            return
        try:
            self._f.close()
        finally:
            if self._tmp_path is not None:
                os.replace(self._tmp_path, self.path)
                self._tmp_path = None
            self._closed = True

    def abort(self) -> None:
        if self._closed:
            return
        try:
            self._f.close()
        finally:
            if self._tmp_path is not None and self._tmp_path.exists():
                self._tmp_path.unlink()
            self._tmp_path = None
            self._closed = True

    def __enter__(self) -> H5TensorWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()
