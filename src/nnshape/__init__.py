"""Shape inference for ONNX neural-network operators."""

__version__ = "2026.1.0"

__docformat__ = "restructuredtext"
__all__ = [
    "InferenceStatus",
    "ShapeInferenceError",
    "TensorType",
    "__version__",
    "check_node",
    "get_schema",
    "infer_model_shape",
    "infer_node_shape",
    "infer_onnx_shape",
]

from nnshape.infer_shape import (
    infer_model_shape,
    infer_node_shape,
    infer_onnx_shape,
)
from nnshape.schemas import check_node, get_schema
from nnshape.tensor_types import InferenceStatus, ShapeInferenceError, TensorType
