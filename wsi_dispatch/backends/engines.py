"""Runtime adapters that load a model file and run one batch at a time.

Each adapter imports its runtime inside :meth:`InferenceEngine.load`, so a
host only needs the runtimes it actually uses.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import numpy as np

from wsi_dispatch.core.models import BackendChoice, DeviceType, NodeShapes
from wsi_dispatch.errors import BackendUnavailableError

logger = logging.getLogger("wsi_dispatch.backends.engines")


class InferenceEngine(ABC):
    """Base interface for a loaded network."""

    name: str = "engine"

    def __init__(self, choice: BackendChoice) -> None:
        self.choice = choice
        self.shapes = NodeShapes()

    @property
    def input_layout(self) -> str:
        """``"NHWC"`` or ``"NCHW"``; the network stage transposes patches to match."""
        return self.shapes.layout or "NCHW"

    @abstractmethod
    def load(self, path: Path, shapes: NodeShapes) -> None: ...

    @abstractmethod
    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        """Run one batch and return every output tensor, batch axis first."""

    def cleanup(self) -> None:
        """Optional clean-up hook."""


def _check_input(batch: np.ndarray, shapes: NodeShapes) -> None:
    if shapes.input_shape is None:
        return
    expected = tuple(shapes.input_shape[1:])
    if tuple(batch.shape[1:]) != expected:
        raise ValueError(f"Batch shape {batch.shape[1:]} does not match input node {expected}")


class OnnxRuntimeEngine(InferenceEngine):
    name = "ONNXRuntime"

    def _providers(self) -> list[str]:
        if self.choice.device == DeviceType.GPU:
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def load(self, path: Path, shapes: NodeShapes) -> None:
        import onnxruntime as ort

        self.shapes = shapes
        self._session = ort.InferenceSession(str(path), providers=self._providers())
        self._input_name = shapes.input_node or self._session.get_inputs()[0].name
        self._output_names = list(shapes.output_nodes) or None
        dims = self._session.get_inputs()[0].shape
        if self.shapes.layout is None and len(dims) == 4:
            layout = "NHWC" if dims[-1] in (1, 3, 4) else "NCHW"
            self.shapes = NodeShapes(
                input_node=shapes.input_node,
                input_shape=shapes.input_shape,
                output_nodes=shapes.output_nodes,
                output_shapes=shapes.output_shapes,
                layout=layout,
            )

    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        _check_input(batch, self.shapes)
        feed = {self._input_name: batch.astype(np.float32)}
        outputs = self._session.run(self._output_names, feed)
        return [np.asarray(out) for out in outputs]

    def cleanup(self) -> None:
        self._session = None


class TensorRTEngine(OnnxRuntimeEngine):
    """TensorRT through the onnxruntime execution provider."""

    name = "TensorRT"

    def _providers(self) -> list[str]:
        return ["TensorrtExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"]

    def load(self, path: Path, shapes: NodeShapes) -> None:
        if Path(path).suffix.lower() == ".uff":
            raise BackendUnavailableError(
                f"UFF models are not supported by the TensorRT runtime bindings: {path}",
                stage="network",
            )
        import tensorrt  # noqa: F401

        super().load(path, shapes)


class OpenVINOEngine(InferenceEngine):
    name = "OpenVINO"

    def load(self, path: Path, shapes: NodeShapes) -> None:
        import openvino as ov

        self.shapes = shapes
        core = ov.Core()
        model = core.read_model(str(path))
        device = "GPU" if self.choice.device == DeviceType.GPU else "CPU"
        self._compiled = core.compile_model(model, device)
        self._outputs = list(self._compiled.outputs)

    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        _check_input(batch, self.shapes)
        result = self._compiled(batch.astype(np.float32))
        return [np.asarray(result[out]) for out in self._outputs]

    def cleanup(self) -> None:
        self._compiled = None


class TensorFlowEngine(InferenceEngine):
    """Frozen ``.pb`` graph, pruned to the configured input and output nodes."""

    name = "TensorFlow"

    def load(self, path: Path, shapes: NodeShapes) -> None:
        import tensorflow as tf

        if not shapes.input_node or not shapes.output_nodes:
            raise BackendUnavailableError(
                "TensorFlow graphs need input_node and output_node metadata", stage="network"
            )
        self.shapes = shapes
        graph_def = tf.compat.v1.GraphDef()
        graph_def.ParseFromString(Path(path).read_bytes())

        def _import() -> None:
            tf.compat.v1.import_graph_def(graph_def, name="")

        wrapped = tf.compat.v1.wrap_function(_import, [])
        graph = wrapped.graph
        device = "/GPU:0" if self.choice.device == DeviceType.GPU else "/CPU:0"
        self._device = device
        self._fn = wrapped.prune(
            graph.as_graph_element(f"{shapes.input_node}:0"),
            [graph.as_graph_element(f"{node}:0") for node in shapes.output_nodes],
        )
        self._tf: Any = tf

    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        _check_input(batch, self.shapes)
        with self._tf.device(self._device):
            outputs = self._fn(self._tf.constant(batch.astype(np.float32)))
        return [out.numpy() for out in outputs]

    def cleanup(self) -> None:
        self._fn = None


class TorchScriptEngine(InferenceEngine):
    name = "PyTorch"

    def load(self, path: Path, shapes: NodeShapes) -> None:
        import torch

        self.shapes = shapes
        self._torch = torch
        self._device = torch.device("cuda" if self.choice.device == DeviceType.GPU else "cpu")
        self._module = torch.jit.load(str(path), map_location=self._device).eval()

    def run(self, batch: np.ndarray) -> list[np.ndarray]:
        torch = self._torch
        _check_input(batch, self.shapes)
        with torch.inference_mode():
            tensor = torch.from_numpy(np.ascontiguousarray(batch, dtype=np.float32))
            out = self._module(tensor.to(self._device))
        if isinstance(out, (tuple, list)):
            return [o.detach().cpu().numpy() for o in out]
        return [out.detach().cpu().numpy()]

    def cleanup(self) -> None:
        self._module = None
