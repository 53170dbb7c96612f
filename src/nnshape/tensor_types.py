"""Tensor type model used by shape inference."""

__docformat__ = "restructuredtext"
__all__ = [
    "Dim",
    "InferenceStatus",
    "ShapeInferenceError",
    "TensorShape",
    "TensorType",
    "is_complete_shape",
    "is_known_dim",
    "multiply_dims",
]

import math
from dataclasses import dataclass
from enum import Enum

from onnx import TensorProto

# int: known size, str: symbolic name, None: unknown
Dim = int | str | None
TensorShape = list[Dim]


class ShapeInferenceError(RuntimeError):
    """Raised when a node is malformed and its shape cannot be inferred."""


class InferenceStatus(Enum):
    """Outcome of running shape inference on one node."""

    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class TensorType:
    """
    Element type and (possibly partial) shape of a tensor.

    :param elem_type: ONNX ``TensorProto`` data type enum value
    :param shape: Dimensions, or None when the rank is unknown
    """

    elem_type: int = TensorProto.UNDEFINED
    shape: TensorShape | None = None

    @property
    def rank(self) -> int | None:
        return None if self.shape is None else len(self.shape)

    def has_shape(self) -> bool:
        return self.shape is not None


def is_known_dim(dim: Dim) -> bool:
    """
    Check whether a dimension has a concrete integer value.

    :param dim: Dimension
    :return: True for known integer dims
    """
    return isinstance(dim, int) and not isinstance(dim, bool)


def is_complete_shape(shape: TensorShape | None) -> bool:
    """
    Check whether every dimension of a shape is known.

    :param shape: Shape or None
    :return: True if the rank and all dims are known
    """
    return shape is not None and all(is_known_dim(d) for d in shape)


def multiply_dims(dims: TensorShape) -> Dim:
    """
    Multiply dimensions, propagating unknown-ness.

    :param dims: Dimensions to multiply
    :return: Product, or None if any dim is not known
    """
    if not all(is_known_dim(d) for d in dims):
        return None
    return math.prod(dims)
