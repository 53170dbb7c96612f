"""ONNX shape inference engine for neural-network operators."""

__docformat__ = "restructuredtext"
__all__ = [
    "INFER_SHAPE_FUNC_MAPPING",
    "ShapeInferenceContext",
    "infer_model_shape",
    "infer_node_shape",
    "infer_onnx_shape",
]

import warnings
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from onnx import ModelProto, NodeProto, TensorProto, ValueInfoProto

from nnshape.onnx_attrs import _get_onnx_attrs, _infer_kernel_defaults
from nnshape.schemas import check_node
from nnshape.tensor_types import (
    Dim,
    InferenceStatus,
    ShapeInferenceError,
    TensorShape,
    TensorType,
    is_complete_shape,
    is_known_dim,
    multiply_dims,
)
from nnshape.utils import (
    convert_constant_to_initializer,
    get_initializers,
    get_opset_version,
    initializer_type,
    make_value_info,
    to_tensor_type,
)


@dataclass(frozen=True)
class ShapeInferenceContext:
    """
    Per-node context for shape inference.

    :param node: ONNX node being inferred
    :param input_types: Types of the node inputs, None where unknown
    :param opset_version: Opset version of the model, latest if None
    :param output_types: One slot per node output, each written at most once
    """

    node: NodeProto
    input_types: list[TensorType | None]
    opset_version: int | None = None
    output_types: list[TensorType | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.output_types:
            self.output_types.extend([None] * len(self.node.output))

    def input_type(self, index: int) -> TensorType | None:
        if index >= len(self.input_types):
            return None
        return self.input_types[index]

    def input_shape(self, index: int) -> TensorShape | None:
        tensor_type = self.input_type(index)
        if tensor_type is None or not tensor_type.has_shape():
            return None
        return list(tensor_type.shape)

    def has_input_shapes(self, n: int) -> bool:
        return all(self.input_shape(i) is not None for i in range(n))

    def has_attr(self, name: str) -> bool:
        return any(attr.name == name for attr in self.node.attribute)

    def set_output_type(self, index: int, tensor_type: TensorType) -> None:
        """
        Write the type of one output.

        :param index: Output index
        :param tensor_type: Inferred type
        """
        if self.output_types[index] is not None:
            raise RuntimeError(
                f"Output {index} of {self.node.op_type} node {self.node.name} is already set"
            )
        self.output_types[index] = tensor_type


ShapeResults = list[TensorShape | None]


def _check_attr_length(name: str, values: Sequence[int], expected: int) -> None:
    if len(values) != expected:
        raise ShapeInferenceError(f"Attribute {name} has incorrect size")


def _check_positive(name: str, values: Sequence[int]) -> None:
    if any(v <= 0 for v in values):
        raise ShapeInferenceError(f"Attribute {name} must be positive, got {list(values)}")


def _check_weight_rank(weight_shape: TensorShape) -> None:
    if len(weight_shape) < 2:
        raise ShapeInferenceError(
            f"Weight tensor must have at least 2 dimensions, got shape {weight_shape}"
        )


def _kernel_from_weight(weight_shape: TensorShape) -> list[int] | None:
    """
    Read the kernel shape from the trailing dims of a weight shape.

    :param weight_shape: Weight tensor shape
    :return: Kernel shape, or None if any trailing dim is not known
    """
    kernel_shape = weight_shape[2:]
    if not all(is_known_dim(d) for d in kernel_shape):
        return None
    return kernel_shape


def _compute_conv_pool_output_dims(
    input_dims: TensorShape,
    kernel_shape: Sequence[int],
    dilations: Sequence[int],
    pads: Sequence[int],
    strides: Sequence[int],
) -> list[Dim]:
    """
    Compute output spatial dims for sliding-window operators.

    :param input_dims: Spatial dims of the input
    :param kernel_shape: Kernel dimensions
    :param dilations: Dilation factors
    :param pads: Padding values, all begins then all ends
    :param strides: Stride values
    :return: Output spatial dims, None where the input dim is not known
    """
    dim = len(kernel_shape)
    output_dims: list[Dim] = []
    for i in range(dim):
        input_dim = input_dims[i]
        if not is_known_dim(input_dim):
            output_dims.append(None)
            continue
        effective_input = input_dim + pads[i] + pads[i + dim]
        effective_kernel = (kernel_shape[i] - 1) * dilations[i] + 1
        size = (effective_input - effective_kernel) // strides[i] + 1
        if size < 0:
            raise ShapeInferenceError(
                f"Output size {size} along spatial axis {i} is negative: kernel size "
                f"{effective_kernel} exceeds padded input size {effective_input}"
            )
        output_dims.append(size)
    return output_dims


def _infer_conv_pool_shape(
    ctx: ShapeInferenceContext, use_dilation: bool, require_kernel_shape: bool
) -> ShapeResults:
    """
    Infer shape for convolution and pooling operators.

    The kernel is read from the ``kernel_shape`` attribute, or for Conv from
    the trailing dims of the weight input when the attribute is absent.

    :param ctx: Shape inference context
    :param use_dilation: Whether the operator accepts dilations
    :param require_kernel_shape: Whether kernel_shape must be an attribute
    :return: Output shapes
    """
    if not ctx.has_input_shapes(1):
        return [None]
    if not require_kernel_shape and not ctx.has_input_shapes(2):
        return [None]
    if ctx.has_attr("auto_pad"):
        return [None]

    input_shape = ctx.input_shape(0)
    if len(input_shape) < 2:
        raise ShapeInferenceError("Input tensor must have at least 2 dimensions")
    n_spatial = len(input_shape) - 2

    attrs = _get_onnx_attrs(ctx.node, ctx.opset_version)
    if use_dilation and attrs.get("dilations") is not None:
        _check_attr_length("dilations", attrs["dilations"], n_spatial)
    else:
        attrs["dilations"] = None

    if attrs.get("group", 1) != 1:
        return [None]

    if attrs["pads"] is not None:
        _check_attr_length("pads", attrs["pads"], n_spatial * 2)
    if attrs["strides"] is not None:
        _check_attr_length("strides", attrs["strides"], n_spatial)
    attrs = _infer_kernel_defaults(attrs, n_spatial)
    _check_positive("strides", attrs["strides"])
    _check_positive("dilations", attrs["dilations"])

    if attrs["kernel_shape"] is not None:
        kernel_shape = list(attrs["kernel_shape"])
        _check_attr_length("kernel_shape", kernel_shape, n_spatial)
    elif require_kernel_shape:
        raise ShapeInferenceError("Attribute kernel_shape must be specified")
    else:
        weight_shape = ctx.input_shape(1)
        _check_weight_rank(weight_shape)
        kernel_shape = _kernel_from_weight(weight_shape)
        if kernel_shape is None:
            return [None]
        if len(kernel_shape) != n_spatial:
            raise ShapeInferenceError(
                f"Weight shape {weight_shape} does not match input rank {len(input_shape)}"
            )

    if require_kernel_shape:
        output_channel = input_shape[1]
    else:
        weight_shape = ctx.input_shape(1)
        if len(weight_shape) < 1:
            raise ShapeInferenceError("Second input tensor has wrong dimension")
        output_channel = weight_shape[0]

    output_dims = _compute_conv_pool_output_dims(
        input_shape[2:], kernel_shape, attrs["dilations"], attrs["pads"], attrs["strides"]
    )
    return [[input_shape[0], output_channel, *output_dims]]


def _infer_conv_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    return _infer_conv_pool_shape(ctx, use_dilation=True, require_kernel_shape=False)


def _infer_pool_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    return _infer_conv_pool_shape(ctx, use_dilation=False, require_kernel_shape=True)


def _compute_convtranspose_output_dims(
    input_dims: TensorShape,
    kernel_shape: Sequence[int],
    output_padding: Sequence[int],
    pads: Sequence[int],
    strides: Sequence[int],
) -> list[Dim]:
    """
    Compute output spatial dims for ConvTranspose.

    :param input_dims: Spatial dims of the input
    :param kernel_shape: Kernel dimensions
    :param output_padding: Extra size added to one side of each axis
    :param pads: Padding values, all begins then all ends
    :param strides: Stride values
    :return: Output spatial dims, None where the input dim is not known
    """
    dim = len(kernel_shape)
    output_dims: list[Dim] = []
    for i in range(dim):
        input_dim = input_dims[i]
        if not is_known_dim(input_dim):
            output_dims.append(None)
            continue
        size = (
            strides[i] * (input_dim - 1)
            + output_padding[i]
            + kernel_shape[i]
            - pads[i]
            - pads[i + dim]
        )
        if size < 1:
            raise ShapeInferenceError(
                f"ConvTranspose output size {size} along spatial axis {i} is not positive"
            )
        output_dims.append(size)
    return output_dims


def _infer_convtranspose_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    """
    Infer shape for ConvTranspose operator.

    Dilations, grouped convolution and auto_pad are not handled; the output
    is left unset for them.

    :param ctx: Shape inference context
    :return: Output shapes
    """
    if not ctx.has_input_shapes(2):
        return [None]
    if ctx.has_attr("auto_pad"):
        return [None]

    input_shape = ctx.input_shape(0)
    if len(input_shape) < 2:
        return [None]
    n_spatial = len(input_shape) - 2

    attrs = _get_onnx_attrs(ctx.node, ctx.opset_version)
    if attrs["group"] != 1:
        return [None]
    if attrs["dilations"] is not None:
        return [None]

    for name in ("pads", "strides", "kernel_shape", "output_shape", "output_padding"):
        if attrs[name] is not None:
            expected = n_spatial * 2 if name == "pads" else n_spatial
            _check_attr_length(name, attrs[name], expected)
    attrs = _infer_kernel_defaults(attrs, n_spatial)
    _check_positive("strides", attrs["strides"])
    output_padding = attrs["output_padding"] or (0,) * n_spatial

    weight_shape = ctx.input_shape(1)
    _check_weight_rank(weight_shape)
    if attrs["kernel_shape"] is not None:
        kernel_shape = list(attrs["kernel_shape"])
    else:
        kernel_shape = _kernel_from_weight(weight_shape)
        if kernel_shape is None:
            return [None]
        if len(kernel_shape) != n_spatial:
            raise ShapeInferenceError(
                f"Weight shape {weight_shape} does not match input rank {len(input_shape)}"
            )

    if attrs["output_shape"] is not None:
        output_dims: list[Dim] = list(attrs["output_shape"])
        for i, (out_dim, in_dim) in enumerate(zip(output_dims, input_shape[2:], strict=True)):
            if is_known_dim(in_dim) and out_dim < in_dim:
                raise ShapeInferenceError(
                    f"Attribute output_shape[{i}]={out_dim} is smaller than "
                    f"the input dimension {in_dim}"
                )
    else:
        output_dims = _compute_convtranspose_output_dims(
            input_shape[2:], kernel_shape, output_padding, attrs["pads"], attrs["strides"]
        )

    return [[input_shape[0], weight_shape[1], *output_dims]]


def _infer_roi_pool_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    """
    Infer shape for MaxRoiPool operator.

    :param ctx: Shape inference context
    :return: Output shapes
    """
    if not ctx.has_input_shapes(2):
        return [None]

    input_shape = ctx.input_shape(0)
    rois_shape = ctx.input_shape(1)
    if len(input_shape) < 2:
        raise ShapeInferenceError("Input tensor must have at least 2 dimensions")
    if len(rois_shape) != 2:
        raise ShapeInferenceError("RoIs tensor must have 2 dimensions")

    pooled_shape = _get_onnx_attrs(ctx.node, ctx.opset_version)["pooled_shape"]
    if len(pooled_shape) != len(input_shape) - 2:
        raise ShapeInferenceError("Attribute pooled_shape has incorrect length")

    return [[rois_shape[0], input_shape[1], *pooled_shape]]


def _infer_global_pool_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    """
    Infer shape for global pooling operators: (N, C, 1, ..., 1).

    :param ctx: Shape inference context
    :return: Output shapes
    """
    input_shape = ctx.input_shape(0)
    if input_shape is None or len(input_shape) < 2:
        return [None]
    return [[input_shape[0], input_shape[1], *([1] * (len(input_shape) - 2))]]


def _infer_nochange_op_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    """
    Infer shape for operators whose first output matches the first input.

    :param ctx: Shape inference context
    :return: Output shapes
    """
    return [ctx.input_shape(0)]


def _infer_lrn_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    # size is required even though it does not affect the shape
    _get_onnx_attrs(ctx.node, ctx.opset_version)
    return _infer_nochange_op_shape(ctx)


def _infer_flatten_shape(ctx: ShapeInferenceContext) -> ShapeResults:
    """
    Infer shape for Flatten operator.

    :param ctx: Shape inference context
    :return: Output shapes
    """
    shape = ctx.input_shape(0)
    if shape is None:
        return [None]

    rank = len(shape)
    axis = _get_onnx_attrs(ctx.node, ctx.opset_version)["axis"]
    if axis < 0 or axis > rank:
        raise ShapeInferenceError(f"Invalid value({axis}) for attribute 'axis'")

    return [[multiply_dims(shape[:axis]), multiply_dims(shape[axis:])]]


ShapeInferFunc = Callable[[ShapeInferenceContext], ShapeResults]
INFER_SHAPE_FUNC_MAPPING: dict[str, ShapeInferFunc] = {
    "AveragePool": _infer_pool_shape,
    "BatchNormalization": _infer_nochange_op_shape,
    "Conv": _infer_conv_shape,
    "ConvTranspose": _infer_convtranspose_shape,
    "Dropout": _infer_nochange_op_shape,
    "Flatten": _infer_flatten_shape,
    "GlobalAveragePool": _infer_global_pool_shape,
    "GlobalLpPool": _infer_global_pool_shape,
    "GlobalMaxPool": _infer_global_pool_shape,
    "InstanceNormalization": _infer_nochange_op_shape,
    "LRN": _infer_lrn_shape,
    "LpNormalization": _infer_nochange_op_shape,
    "LpPool": _infer_pool_shape,
    "MaxPool": _infer_pool_shape,
    "MaxRoiPool": _infer_roi_pool_shape,
}


def _process_node_outputs(results: ShapeResults, ctx: ShapeInferenceContext) -> None:
    """
    Store inferred output shapes with the element type of the first input.

    :param results: Inferred shapes, one per leading output
    :param ctx: Shape inference context
    """
    first_input = ctx.input_type(0)
    elem_type = TensorProto.UNDEFINED if first_input is None else first_input.elem_type
    for index, shape in enumerate(results):
        if index >= len(ctx.output_types) or not ctx.node.output[index]:
            break
        if shape is None and elem_type == TensorProto.UNDEFINED:
            continue
        ctx.set_output_type(index, TensorType(elem_type, shape))


def _get_status(ctx: ShapeInferenceContext) -> InferenceStatus:
    for name, output_type in zip(ctx.node.output, ctx.output_types, strict=True):
        if not name:
            continue
        if output_type is None or not is_complete_shape(output_type.shape):
            return InferenceStatus.INCOMPLETE
    return InferenceStatus.COMPLETE


def infer_node_shape(
    node: NodeProto,
    input_types: Sequence[TensorType | None],
    opset_version: int | None = None,
    check_schema: bool = True,
) -> tuple[list[TensorType | None], InferenceStatus]:
    """
    Infer output types of a single node.

    Malformed nodes raise ShapeInferenceError. When the inputs do not carry
    enough information the affected outputs are left unset or partially
    unknown and the status is INCOMPLETE.

    :param node: ONNX node
    :param input_types: Types of the node inputs, None where unknown
    :param opset_version: Opset version of the model, latest if None
    :param check_schema: Whether to validate the node against its schema first
    :return: Tuple of (output types, status)
    """
    infer_func = INFER_SHAPE_FUNC_MAPPING.get(node.op_type)
    if infer_func is None:
        raise NotImplementedError(f"Operator {node.op_type} is not supported")

    if check_schema:
        check_node(node, opset_version, input_types)

    ctx = ShapeInferenceContext(
        node=node,
        input_types=list(input_types),
        opset_version=opset_version,
    )
    results = infer_func(ctx)
    _process_node_outputs(results, ctx)
    return ctx.output_types, _get_status(ctx)


def _merge_types(name: str, declared: TensorType | None, inferred: TensorType) -> TensorType:
    """
    Merge an inferred type into a declared one.

    :param name: Tensor name
    :param declared: Type declared in the graph, if any
    :param inferred: Type computed by shape inference
    :return: Merged type
    """
    if declared is None:
        return inferred

    elem_type = inferred.elem_type or declared.elem_type
    if inferred.shape is None:
        return TensorType(elem_type, declared.shape)
    if declared.shape is None:
        return TensorType(elem_type, inferred.shape)
    if declared.rank != inferred.rank:
        raise ShapeInferenceError(
            f"Inferred shape {inferred.shape} and declared shape {declared.shape} "
            f"of {name} differ in rank"
        )

    shape: list[Dim] = []
    for inferred_dim, declared_dim in zip(inferred.shape, declared.shape, strict=True):
        if is_known_dim(inferred_dim) and is_known_dim(declared_dim):
            if inferred_dim != declared_dim:
                raise ShapeInferenceError(
                    f"Inferred shape {inferred.shape} and declared shape {declared.shape} "
                    f"of {name} differ"
                )
        shape.append(inferred_dim if is_known_dim(inferred_dim) else declared_dim)
    return TensorType(elem_type, shape)


def _print_types(title: str, types: dict[str, TensorType], verbose: bool) -> None:
    """
    Print tensor types if verbose mode is enabled.

    :param title: Section title
    :param types: Tensor type dictionary
    :param verbose: Whether to print
    """
    if not verbose:
        return
    print(f"{title}")
    print(f"{'Name':<20} Shape")
    for name, tensor_type in types.items():
        print(f"{name:<20} {tensor_type.shape}")


def _infer_all_node_shapes(
    nodes: Iterable[NodeProto],
    tensor_types: dict[str, TensorType],
    declared_types: dict[str, TensorType],
    opset_version: int | None,
    check_schema: bool,
    strict: bool,
    verbose: bool,
) -> None:
    """
    Infer shapes for all nodes in the graph.

    :param nodes: ONNX nodes in topological order
    :param tensor_types: Known tensor types, updated in place
    :param declared_types: Types declared by graph outputs and value_info
    :param opset_version: Opset version of the model
    :param check_schema: Whether to validate nodes against their schemas
    :param strict: Whether malformed nodes raise or only warn
    :param verbose: Whether to print debug information
    """
    for node in nodes:
        if node.op_type == "Constant":
            raise RuntimeError(
                "Constant nodes must be converted to initializers before shape inference"
            )

        input_types = [tensor_types.get(name) if name else None for name in node.input]
        try:
            output_types, status = infer_node_shape(
                node, input_types, opset_version, check_schema=check_schema
            )
            for name, output_type in zip(node.output, output_types, strict=True):
                if name and output_type is not None:
                    tensor_types[name] = _merge_types(name, declared_types.get(name), output_type)
        except ShapeInferenceError as e:
            message = f"Failed to infer shape for node {node.name} ({node.op_type}): {e}"
            if strict:
                raise ShapeInferenceError(message) from e
            warnings.warn(message, stacklevel=2)
            status = InferenceStatus.INCOMPLETE

        # Outputs left unset keep the type declared in the graph, if any
        for name in node.output:
            if name and name not in tensor_types and name in declared_types:
                tensor_types[name] = declared_types[name]

        if verbose:
            for name in node.output:
                if name in tensor_types:
                    shape = tensor_types[name].shape
                    print(f"{node.op_type:<20} {name:<20} {shape} ({status.value})")


def infer_onnx_shape(
    input_nodes: list[ValueInfoProto],
    nodes: list[NodeProto],
    initializers: dict[str, TensorProto],
    opset_version: int | None = None,
    value_infos: Iterable[ValueInfoProto] = (),
    check_schema: bool = True,
    strict: bool = True,
    verbose: bool = False,
) -> dict[str, TensorType]:
    """
    Infer types for all tensors of an ONNX graph.

    :param input_nodes: Graph input value infos
    :param nodes: Graph nodes in topological order
    :param initializers: Graph initializers
    :param opset_version: Opset version of the model, latest if None
    :param value_infos: Declared types of graph outputs and intermediate tensors
    :param check_schema: Whether to validate nodes against their schemas
    :param strict: Whether malformed nodes raise or only warn
    :param verbose: Whether to print debug information
    :return: Dictionary mapping tensor names to their types
    """
    input_types = {node.name: to_tensor_type(node) for node in input_nodes}
    initializer_types = {name: initializer_type(init) for name, init in initializers.items()}
    declared_types = {node.name: to_tensor_type(node) for node in value_infos}

    tensor_types: dict[str, TensorType] = {**input_types, **initializer_types}

    if verbose:
        _print_types("Input shapes", input_types, verbose=True)
        _print_types("Initializer shapes", initializer_types, verbose=True)
        print("Inferring node shapes")
        print(f"{'Op Type':20} {'Name':20} Output Shape")

    _infer_all_node_shapes(
        nodes,
        tensor_types,
        declared_types,
        opset_version,
        check_schema=check_schema,
        strict=strict,
        verbose=verbose,
    )

    return tensor_types


def infer_model_shape(
    model: ModelProto,
    check_schema: bool = True,
    strict: bool = True,
    verbose: bool = False,
) -> ModelProto:
    """
    Run shape inference on a model and record the results as value_info.

    Constant nodes are folded into initializers in the returned copy.

    :param model: ONNX model
    :param check_schema: Whether to validate nodes against their schemas
    :param strict: Whether malformed nodes raise or only warn
    :param verbose: Whether to print debug information
    :return: Copy of the model with value_info and outputs updated
    """
    inferred = ModelProto()
    inferred.CopyFrom(model)
    graph = inferred.graph

    initializers = get_initializers(inferred)
    nodes = convert_constant_to_initializer(list(graph.node), initializers)
    if len(nodes) != len(graph.node):
        del graph.node[:]
        graph.node.extend(nodes)
        existing = {init.name for init in graph.initializer}
        graph.initializer.extend(
            init for name, init in initializers.items() if name not in existing
        )

    input_nodes = [node for node in graph.input if node.name not in initializers]
    tensor_types = infer_onnx_shape(
        input_nodes,
        nodes,
        initializers,
        opset_version=get_opset_version(inferred),
        value_infos=[*graph.output, *graph.value_info],
        check_schema=check_schema,
        strict=strict,
        verbose=verbose,
    )

    skip = {node.name for node in graph.input} | set(initializers)
    outputs = {node.name for node in graph.output}
    del graph.value_info[:]
    for name, tensor_type in tensor_types.items():
        if name in skip or name in outputs:
            continue
        graph.value_info.append(make_value_info(name, tensor_type))

    for i, output in enumerate(graph.output):
        if output.name in tensor_types and output.name not in skip:
            graph.output[i].CopyFrom(make_value_info(output.name, tensor_types[output.name]))

    return inferred
