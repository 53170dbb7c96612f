"""ONNX node attribute extraction."""

__docformat__ = "restructuredtext"
__all__ = ["_get_onnx_attrs", "_infer_kernel_defaults", "_scan_attrs"]

from collections.abc import Iterable
from typing import Any

import onnx
from onnx import AttributeProto, NodeProto

from nnshape.schemas import get_schema
from nnshape.tensor_types import ShapeInferenceError


def _scan_attrs(defaults: dict[str, Any], attrs: Iterable[AttributeProto]) -> dict[str, Any]:
    """
    Overlay node attributes on a defaults dictionary.

    :param defaults: Default attribute values
    :param attrs: Node attributes
    :return: New dictionary with node values taking precedence
    """
    result = dict(defaults)
    for attr in attrs:
        if attr.type == AttributeProto.INTS:
            result[attr.name] = tuple(attr.ints)
        elif attr.type == AttributeProto.FLOATS:
            result[attr.name] = tuple(attr.floats)
        elif attr.type == AttributeProto.STRING:
            result[attr.name] = attr.s.decode("utf-8")
        elif attr.type == AttributeProto.TENSOR:
            result[attr.name] = onnx.numpy_helper.to_array(attr.t)
        else:
            result[attr.name] = onnx.helper.get_attribute_value(attr)
    return result


def _get_onnx_attrs(node: NodeProto, opset_version: int | None = None) -> dict[str, Any]:
    """
    Get the attributes of a node with schema defaults applied.

    Optional attributes without a default read as None.

    :param node: ONNX node
    :param opset_version: Opset version of the model, latest if None
    :return: Attribute dictionary
    """
    schema = get_schema(node.op_type, opset_version)
    attrs = _scan_attrs(schema.defaults(), node.attribute)

    present = {attr.name for attr in node.attribute}
    for name, spec in schema.attributes.items():
        if spec.required and name not in present:
            raise ShapeInferenceError(f"Attribute {name} must be specified")

    return attrs


def _infer_kernel_defaults(attrs: dict[str, Any], n_spatial: int) -> dict[str, Any]:
    """
    Fill strides, pads and dilations defaults sized to the spatial rank.

    :param attrs: Attribute dictionary
    :param n_spatial: Number of spatial dimensions
    :return: New dictionary with defaults filled in
    """
    result = dict(attrs)
    if result.get("strides") is None:
        result["strides"] = (1,) * n_spatial
    if result.get("pads") is None:
        result["pads"] = (0,) * (n_spatial * 2)
    if result.get("dilations") is None:
        result["dilations"] = (1,) * n_spatial
    return result
