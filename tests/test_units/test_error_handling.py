"""Unit tests separating malformed nodes from missing information.

Malformed nodes raise ShapeInferenceError. Nodes whose inputs carry too little
information are skipped and report INCOMPLETE.
"""

import onnx
import pytest

from nnshape import InferenceStatus, ShapeInferenceError, TensorType, infer_node_shape

FLOAT = onnx.TensorProto.FLOAT


def _types(*shapes):
    return [None if shape is None else TensorType(FLOAT, shape) for shape in shapes]


class TestHardFailures:
    """Test malformed nodes raise ShapeInferenceError."""

    @pytest.mark.parametrize(
        ("op_type", "attrs", "shapes", "match"),
        [
            pytest.param(
                "Conv", {}, ([1, 3, 8, 8], [4, 3, 3]), "does not match", id="conv_weight_rank"
            ),
            pytest.param(
                "Conv", {}, ([1, 3, 8, 8], [4]), "at least 2 dimensions", id="conv_weight_rank_one"
            ),
            pytest.param(
                "Conv",
                {"strides": [1]},
                ([1, 3, 8, 8], [4, 3, 3, 3]),
                "strides has incorrect size",
                id="conv_strides_length",
            ),
            pytest.param(
                "Conv",
                {"strides": [0, 1]},
                ([1, 3, 8, 8], [4, 3, 3, 3]),
                "must be positive",
                id="conv_zero_stride",
            ),
            pytest.param(
                "Conv", {}, ([1, 3, 2, 2], [4, 3, 5, 5]), "is negative", id="conv_negative_output"
            ),
            pytest.param(
                "MaxPool",
                {"kernel_shape": [2, 2], "pads": [0, 0]},
                ([1, 3, 8, 8],),
                "pads has incorrect size",
                id="pool_pads_length",
            ),
            pytest.param(
                "AveragePool", {"kernel_shape": [2]}, ([3],), "at least 2", id="pool_rank_one"
            ),
            pytest.param(
                "ConvTranspose",
                {"output_shape": [2, 2]},
                ([1, 4, 5, 5], [4, 2, 3, 3]),
                "smaller than the input",
                id="convtranspose_output_shape",
            ),
            pytest.param(
                "MaxRoiPool",
                {"pooled_shape": [2, 2]},
                ([1, 3, 8, 8], [4, 5, 1]),
                "RoIs tensor must have 2 dimensions",
                id="roipool_rois_rank",
            ),
            pytest.param("Flatten", {"axis": 5}, ([2, 3],), "Invalid value", id="flatten_axis"),
        ],
    )
    def test_malformed_node(self, op_type, attrs, shapes, match):
        """Test the failure is reported as ShapeInferenceError."""
        inputs = [f"in{i}" for i in range(len(shapes))]
        node = onnx.helper.make_node(op_type, inputs, ["y"], **attrs)

        with pytest.raises(ShapeInferenceError, match=match):
            infer_node_shape(node, _types(*shapes))

    def test_error_is_runtime_error(self):
        """Test callers catching RuntimeError also catch inference failures."""
        assert issubclass(ShapeInferenceError, RuntimeError)


class TestSoftSkips:
    """Test missing information yields INCOMPLETE without raising."""

    @pytest.mark.parametrize(
        ("op_type", "attrs", "shapes"),
        [
            pytest.param("Conv", {}, ([1, 3, 8, 8], None), id="conv_unknown_weight"),
            pytest.param("Conv", {}, (None, [4, 3, 3, 3]), id="conv_unknown_input"),
            pytest.param(
                "Conv", {"auto_pad": "SAME_UPPER"}, ([1, 3, 8, 8], [4, 3, 3, 3]), id="auto_pad"
            ),
            pytest.param(
                "ConvTranspose",
                {"dilations": [2, 2]},
                ([1, 4, 5, 5], [4, 2, 3, 3]),
                id="convtranspose_dilations",
            ),
            pytest.param(
                "ConvTranspose", {"group": 2}, ([1, 4, 5, 5], [4, 2, 3, 3]), id="convtranspose_group"
            ),
            pytest.param("GlobalAveragePool", {}, ([3],), id="global_pool_rank_one"),
            pytest.param("MaxRoiPool", {"pooled_shape": [2, 2]}, ([1, 3, 8, 8], None), id="roi"),
        ],
    )
    def test_insufficient_information(self, op_type, attrs, shapes):
        """Test the node is skipped and reports INCOMPLETE."""
        inputs = [f"in{i}" for i in range(len(shapes))]
        node = onnx.helper.make_node(op_type, inputs, ["y"], **attrs)

        output_types, status = infer_node_shape(node, _types(*shapes))

        assert status is InferenceStatus.INCOMPLETE
        assert output_types[0] is None or output_types[0].shape is None
