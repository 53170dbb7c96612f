"""ONNX model utilities for shape inference."""

__docformat__ = "restructuredtext"
__all__ = [
    "convert_constant_to_initializer",
    "get_initializers",
    "get_opset_version",
    "initializer_type",
    "make_value_info",
    "to_tensor_type",
]

import numpy as np
import onnx
from onnx import AttributeProto, ModelProto, NodeProto, TensorProto, ValueInfoProto

from nnshape.tensor_types import Dim, TensorType


def _reformat_io_shape(node: ValueInfoProto) -> list[Dim] | None:
    """
    Extract shape from ONNX value info node.

    :param node: ONNX value info node
    :return: Dims (int, symbolic name or None), or None if the rank is unknown
    """
    tensor_type = node.type.tensor_type
    if not tensor_type.HasField("shape"):
        return None

    shape: list[Dim] = []
    for d in tensor_type.shape.dim:
        if d.HasField("dim_value"):
            shape.append(d.dim_value)
        elif d.HasField("dim_param"):
            shape.append(d.dim_param)
        else:
            shape.append(None)
    return shape


def to_tensor_type(node: ValueInfoProto) -> TensorType:
    """
    Convert ONNX value info to a tensor type.

    :param node: ONNX value info node
    :return: Tensor type
    """
    return TensorType(node.type.tensor_type.elem_type, _reformat_io_shape(node))


def initializer_type(initializer: TensorProto) -> TensorType:
    """
    Get the tensor type of an initializer.

    :param initializer: ONNX initializer
    :return: Tensor type with a fully known shape
    """
    return TensorType(initializer.data_type, list(map(int, initializer.dims)))


def make_value_info(name: str, tensor_type: TensorType) -> ValueInfoProto:
    """
    Build ONNX value info from a tensor type.

    :param name: Tensor name
    :param tensor_type: Tensor type
    :return: ONNX value info node
    """
    return onnx.helper.make_tensor_value_info(
        name=name,
        elem_type=tensor_type.elem_type,
        shape=tensor_type.shape,
    )


def get_initializers(model: ModelProto) -> dict[str, TensorProto]:
    """
    Extract initializers from ONNX model.

    :param model: ONNX model
    :return: Dictionary mapping initializer names to TensorProto
    """
    return {initializer.name: initializer for initializer in model.graph.initializer}


def get_opset_version(model: ModelProto) -> int | None:
    """
    Get the opset version of the default ONNX domain.

    :param model: ONNX model
    :return: Opset version, or None if the model does not import the domain
    """
    for opset in model.opset_import:
        if opset.domain in ("", "ai.onnx"):
            return opset.version
    return None


_CONSTANT_VALUE_DTYPES = {
    AttributeProto.FLOAT: np.float32,
    AttributeProto.FLOATS: np.float32,
    AttributeProto.INT: np.int64,
    AttributeProto.INTS: np.int64,
    AttributeProto.STRING: object,
    AttributeProto.STRINGS: object,
}


def _constant_value(node: NodeProto) -> np.ndarray:
    """
    Read the value of a Constant node as an array.

    :param node: ONNX Constant node
    :return: Constant value
    """
    attr = node.attribute[0]
    if attr.type == AttributeProto.TENSOR:
        return onnx.numpy_helper.to_array(attr.t)

    dtype = _CONSTANT_VALUE_DTYPES.get(attr.type)
    if dtype is None:
        raise NotImplementedError(
            f"Constant node {node.name} with attribute {attr.name} is not supported"
        )
    return np.array(onnx.helper.get_attribute_value(attr), dtype=dtype)


def convert_constant_to_initializer(
    nodes: list[NodeProto], initializers: dict[str, TensorProto]
) -> list[NodeProto]:
    """
    Convert Constant nodes to initializers.

    :param nodes: List of ONNX nodes
    :param initializers: Initializers dictionary to update
    :return: List of nodes with Constant nodes removed
    """
    new_nodes = []
    for node in nodes:
        if node.op_type == "Constant":
            np_array = _constant_value(node)
            initializer = onnx.numpy_helper.from_array(np_array, node.output[0])
            initializers[node.output[0]] = initializer
            continue

        new_nodes.append(node)

    return new_nodes
