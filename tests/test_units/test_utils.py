"""Unit tests for nnshape utility functions."""

import numpy as np
import onnx
import pytest

from nnshape.tensor_types import TensorType
from nnshape.utils import (
    _reformat_io_shape,
    convert_constant_to_initializer,
    get_initializers,
    get_opset_version,
    initializer_type,
    make_value_info,
    to_tensor_type,
)


class TestReformatIOShape:
    """Tests for reformat_io_shape function."""

    @pytest.mark.parametrize(
        ("shape", "expected"),
        [
            pytest.param([1, 3, 224, 224], [1, 3, 224, 224], id="known"),
            pytest.param(["N", 3, 32, 32], ["N", 3, 32, 32], id="symbolic_batch"),
            pytest.param([None, 64], [None, 64], id="unknown_dim"),
            pytest.param([], [], id="scalar"),
        ],
    )
    def test_reformat_dims(self, shape, expected):
        """Test dims convert to int, symbolic name or None."""
        tensor_info = onnx.helper.make_tensor_value_info("test", onnx.TensorProto.FLOAT, shape)

        assert _reformat_io_shape(tensor_info) == expected

    def test_reformat_unknown_rank(self):
        """Test a value info without shape has unknown rank."""
        tensor_info = onnx.helper.make_tensor_value_info("test", onnx.TensorProto.FLOAT, None)

        assert _reformat_io_shape(tensor_info) is None


class TestTensorTypeConversion:
    """Tests for conversions between value infos, initializers and tensor types."""

    def test_to_tensor_type(self):
        """Test value info conversion keeps element type and shape."""
        tensor_info = onnx.helper.make_tensor_value_info(
            "x", onnx.TensorProto.FLOAT16, ["N", 3, 8]
        )

        assert to_tensor_type(tensor_info) == TensorType(onnx.TensorProto.FLOAT16, ["N", 3, 8])

    def test_initializer_type(self):
        """Test initializers have a fully known shape."""
        initializer = onnx.numpy_helper.from_array(
            np.zeros((64, 3, 7, 7), dtype=np.float32), name="w"
        )

        result = initializer_type(initializer)

        assert result == TensorType(onnx.TensorProto.FLOAT, [64, 3, 7, 7])
        assert all(type(d) is int for d in result.shape)

    def test_make_value_info(self):
        """Test value info built from a tensor type reads back the same type."""
        tensor_type = TensorType(onnx.TensorProto.DOUBLE, ["N", None, 4])

        value_info = make_value_info("y", tensor_type)

        assert value_info.name == "y"
        assert to_tensor_type(value_info) == tensor_type

    def test_make_value_info_unknown_shape(self):
        """Test a tensor type without shape produces value info without shape."""
        value_info = make_value_info("y", TensorType(onnx.TensorProto.FLOAT))

        assert not value_info.type.tensor_type.HasField("shape")


class TestModelHelpers:
    """Tests for model level helpers."""

    def test_get_initializers(self):
        """Test initializers are keyed by name."""
        w = onnx.numpy_helper.from_array(np.ones((2, 2), dtype=np.float32), name="w")
        b = onnx.numpy_helper.from_array(np.ones((2,), dtype=np.float32), name="b")
        graph = onnx.helper.make_graph([], "g", [], [], initializer=[w, b])
        model = onnx.helper.make_model(graph)

        result = get_initializers(model)

        assert set(result) == {"w", "b"}
        assert list(result["w"].dims) == [2, 2]

    @pytest.mark.parametrize(
        ("opset_imports", "expected"),
        [
            pytest.param([("", 7)], 7, id="default_domain"),
            pytest.param([("ai.onnx", 11)], 11, id="explicit_domain"),
            pytest.param([("com.microsoft", 1), ("", 13)], 13, id="mixed_domains"),
            pytest.param([("com.microsoft", 1)], None, id="no_default_domain"),
        ],
    )
    def test_get_opset_version(self, opset_imports, expected):
        """Test the default domain opset version is returned."""
        graph = onnx.helper.make_graph([], "g", [], [])
        model = onnx.helper.make_model(
            graph,
            opset_imports=[onnx.helper.make_opsetid(d, v) for d, v in opset_imports],
        )

        assert get_opset_version(model) == expected

    def test_convert_constant_to_initializer(self):
        """Test Constant nodes are removed and stored as initializers."""
        value = onnx.numpy_helper.from_array(np.ones((4, 3, 3, 3), dtype=np.float32))
        constant = onnx.helper.make_node("Constant", inputs=[], outputs=["w"], value=value)
        conv = onnx.helper.make_node("Conv", inputs=["x", "w"], outputs=["y"])
        initializers = {}

        nodes = convert_constant_to_initializer([constant, conv], initializers)

        assert nodes == [conv]
        assert initializers["w"].name == "w"
        assert list(initializers["w"].dims) == [4, 3, 3, 3]

    @pytest.mark.parametrize(
        ("attrs", "data_type", "dims"),
        [
            pytest.param({"value_float": 0.5}, onnx.TensorProto.FLOAT, [], id="value_float"),
            pytest.param(
                {"value_floats": [1.0, 1.0, 1.0]}, onnx.TensorProto.FLOAT, [3], id="value_floats"
            ),
            pytest.param({"value_int": 4}, onnx.TensorProto.INT64, [], id="value_int"),
            pytest.param({"value_ints": [1, 2]}, onnx.TensorProto.INT64, [2], id="value_ints"),
            pytest.param({"value_strings": ["a", "b"]}, onnx.TensorProto.STRING, [2], id="strings"),
        ],
    )
    def test_convert_constant_value_attributes(self, attrs, data_type, dims):
        """Test Constant nodes given by scalar and list attributes are folded."""
        constant = onnx.helper.make_node("Constant", inputs=[], outputs=["c"], **attrs)
        initializers = {}

        nodes = convert_constant_to_initializer([constant], initializers)

        assert nodes == []
        assert initializers["c"].data_type == data_type
        assert list(initializers["c"].dims) == dims

    def test_convert_constant_sparse_value(self):
        """Test sparse Constant values are reported as unsupported."""
        values = onnx.numpy_helper.from_array(np.array([1.0], dtype=np.float32), name="v")
        indices = onnx.numpy_helper.from_array(np.array([0], dtype=np.int64), name="i")
        sparse = onnx.helper.make_sparse_tensor(values, indices, [3])
        constant = onnx.helper.make_node(
            "Constant", inputs=[], outputs=["c"], name="sparse", sparse_value=sparse
        )

        with pytest.raises(NotImplementedError, match="sparse_value is not supported"):
            convert_constant_to_initializer([constant], {})

    def test_convert_constant_without_constants(self):
        """Test graphs without Constant nodes are unchanged."""
        node = onnx.helper.make_node("Flatten", inputs=["x"], outputs=["y"])
        initializers = {}

        assert convert_constant_to_initializer([node], initializers) == [node]
        assert initializers == {}
