"""Tensor node bindings per backend family.

Graph-based runtimes cannot read shapes from the model file, so the input and
output nodes are bound explicitly from the model metadata. Every other runtime
infers them and only receives the node names.
"""

from __future__ import annotations

import logging
from typing import Callable

from wsi_dispatch.core.models import BackendChoice, ModelDescriptor, NodeShapes, ProblemKind

logger = logging.getLogger("wsi_dispatch.backends.shapes")

ShapeBinder = Callable[[ModelDescriptor, BackendChoice], NodeShapes]


def _output_shape(model: ModelDescriptor) -> tuple[int, ...]:
    if model.problem == ProblemKind.SEGMENTATION:
        return (1, model.input_height, model.input_width, model.nb_classes)
    # classification, and single-node detection heads
    return (1, model.nb_classes)


def bind_tensorflow(model: ModelDescriptor, choice: BackendChoice) -> NodeShapes:
    outputs = model.output_nodes
    if len(outputs) > 1:
        # one explicit shape cannot describe several heads; the graph keeps its own
        logger.info(
            "Model %s has %d output nodes; binding names without explicit shapes",
            model.name,
            len(outputs),
        )
        output_shapes: tuple[tuple[int, ...] | None, ...] = tuple(None for _ in outputs)
    else:
        output_shapes = (_output_shape(model),)
    return NodeShapes(
        input_node=model.input_node,
        input_shape=(1, model.input_height, model.input_width, model.nb_channels),
        output_nodes=outputs,
        output_shapes=output_shapes,
        layout="NHWC",
    )


def bind_uff(model: ModelDescriptor, choice: BackendChoice) -> NodeShapes:
    return NodeShapes(
        input_node=model.input_node,
        input_shape=(1, model.nb_channels, model.input_height, model.input_width),
        output_nodes=model.output_nodes,
        output_shapes=((1, model.nb_classes),),
        layout="NCHW",
    )


def bind_inferred(model: ModelDescriptor, choice: BackendChoice) -> NodeShapes:
    return NodeShapes(input_node=model.input_node, output_nodes=model.output_nodes)


_BINDERS: dict[tuple[str, str | None], ShapeBinder] = {
    ("TensorFlow", None): bind_tensorflow,
    ("TensorRT", "uff"): bind_uff,
}


def bind_shapes(model: ModelDescriptor, choice: BackendChoice) -> NodeShapes:
    """Node bindings for ``model`` running on ``choice``."""
    binder = _BINDERS.get((choice.backend, choice.model_format)) or _BINDERS.get(
        (choice.backend, None), bind_inferred
    )
    return binder(model, choice)
