"""Shared fixtures for unit tests."""

import onnx
import pytest

from nnshape.infer_shape import ShapeInferenceContext
from nnshape.tensor_types import TensorType


@pytest.fixture
def make_context():
    """Create a shape inference context from a node and float input shapes.

    An input given as None has an unknown type.
    """

    def _make_context(node, *input_shapes, elem_type=onnx.TensorProto.FLOAT):
        input_types = [
            None if shape is None else TensorType(elem_type, shape) for shape in input_shapes
        ]
        return ShapeInferenceContext(node=node, input_types=input_types)

    return _make_context
