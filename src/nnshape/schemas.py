"""Declarative operator schemas for the neural-network operator family."""

__docformat__ = "restructuredtext"
__all__ = [
    "FLOAT_TYPES",
    "OP_SCHEMAS",
    "AttrSpec",
    "IOSpec",
    "OpSchema",
    "check_node",
    "get_schema",
]

from collections.abc import Sequence
from dataclasses import dataclass, field

from onnx import AttributeProto, NodeProto, TensorProto

from nnshape.tensor_types import ShapeInferenceError, TensorType

INT = AttributeProto.INT
INTS = AttributeProto.INTS
FLOAT = AttributeProto.FLOAT
STRING = AttributeProto.STRING

FLOAT_TYPES = frozenset({TensorProto.FLOAT16, TensorProto.FLOAT, TensorProto.DOUBLE})


@dataclass(frozen=True)
class AttrSpec:
    """
    Attribute declaration.

    :param attr_type: ONNX ``AttributeProto`` type enum value
    :param default: Value used when the attribute is absent
    :param required: Whether the attribute must be present on the node
    """

    attr_type: int
    default: int | float | str | tuple[int, ...] | None = None
    required: bool = False


@dataclass(frozen=True)
class IOSpec:
    """Input or output declaration."""

    name: str
    optional: bool = False


@dataclass(frozen=True)
class OpSchema:
    """
    Schema of one operator version.

    :param op_type: Operator name
    :param since_version: First opset version using this schema
    :param attributes: Attribute table
    :param inputs: Declared inputs in order
    :param outputs: Declared outputs in order
    :param allowed_types: Element types accepted for the ``T`` constraint
    :param output_counts: Exact output counts allowed, None for any count in range
    """

    op_type: str
    since_version: int
    attributes: dict[str, AttrSpec]
    inputs: tuple[IOSpec, ...]
    outputs: tuple[IOSpec, ...]
    allowed_types: frozenset[int] = field(default=FLOAT_TYPES)
    output_counts: frozenset[int] | None = None

    @property
    def min_inputs(self) -> int:
        return sum(1 for i in self.inputs if not i.optional)

    @property
    def max_inputs(self) -> int:
        return len(self.inputs)

    @property
    def min_outputs(self) -> int:
        return sum(1 for o in self.outputs if not o.optional)

    @property
    def max_outputs(self) -> int:
        return len(self.outputs)

    def defaults(self) -> dict[str, int | float | str | tuple[int, ...] | None]:
        return {name: spec.default for name, spec in self.attributes.items()}


_X = (IOSpec("X"),)
_Y = (IOSpec("Y"),)

_POOL_ATTRS = {
    "kernel_shape": AttrSpec(INTS, required=True),
    "strides": AttrSpec(INTS),
    "auto_pad": AttrSpec(STRING, "NOTSET"),
    "pads": AttrSpec(INTS),
}

_CONV_ATTRS = {
    "kernel_shape": AttrSpec(INTS),
    "dilations": AttrSpec(INTS),
    "strides": AttrSpec(INTS),
    "auto_pad": AttrSpec(STRING, "NOTSET"),
    "pads": AttrSpec(INTS),
    "group": AttrSpec(INT, 1),
}

_CONV_INPUTS = (IOSpec("X"), IOSpec("W"), IOSpec("B", optional=True))


def _schema(
    op_type: str,
    since_version: int,
    attributes: dict[str, AttrSpec] | None = None,
    inputs: tuple[IOSpec, ...] = _X,
    outputs: tuple[IOSpec, ...] = _Y,
    output_counts: frozenset[int] | None = None,
) -> OpSchema:
    return OpSchema(
        op_type, since_version, attributes or {}, inputs, outputs, output_counts=output_counts
    )


_SCHEMA_LIST: list[OpSchema] = [
    _schema("AveragePool", 1, _POOL_ATTRS),
    _schema("AveragePool", 7, {**_POOL_ATTRS, "count_include_pad": AttrSpec(INT, 0)}),
    _schema("MaxPool", 1, _POOL_ATTRS),
    _schema("LpPool", 2, {**_POOL_ATTRS, "p": AttrSpec(INT, 2)}),
    _schema(
        "MaxRoiPool",
        1,
        {
            "pooled_shape": AttrSpec(INTS, required=True),
            "spatial_scale": AttrSpec(FLOAT, 1.0),
        },
        inputs=(IOSpec("X"), IOSpec("rois")),
    ),
    _schema("Conv", 1, _CONV_ATTRS, inputs=_CONV_INPUTS),
    _schema(
        "ConvTranspose",
        1,
        {
            **_CONV_ATTRS,
            "output_shape": AttrSpec(INTS),
            "output_padding": AttrSpec(INTS),
        },
        inputs=_CONV_INPUTS,
    ),
    _schema("GlobalAveragePool", 1),
    _schema("GlobalMaxPool", 1),
    _schema("GlobalLpPool", 2, {"p": AttrSpec(INT, 2)}),
    _schema(
        "BatchNormalization",
        7,
        {
            "spatial": AttrSpec(INT, 1),
            "epsilon": AttrSpec(FLOAT, 1e-5),
            "momentum": AttrSpec(FLOAT, 0.9),
        },
        inputs=(IOSpec("X"), IOSpec("scale"), IOSpec("B"), IOSpec("mean"), IOSpec("var")),
        outputs=(
            IOSpec("Y"),
            IOSpec("mean", optional=True),
            IOSpec("var", optional=True),
            IOSpec("saved_mean", optional=True),
            IOSpec("saved_var", optional=True),
        ),
        output_counts=frozenset({1, 5}),
    ),
    _schema(
        "InstanceNormalization",
        6,
        {"epsilon": AttrSpec(FLOAT, 1e-5)},
        inputs=(IOSpec("input"), IOSpec("scale"), IOSpec("B")),
        outputs=(IOSpec("output"),),
    ),
    _schema(
        "LpNormalization",
        1,
        {"axis": AttrSpec(INT, -1), "p": AttrSpec(INT, 2)},
        inputs=(IOSpec("input"),),
        outputs=(IOSpec("output"),),
    ),
    _schema(
        "Dropout",
        7,
        {"ratio": AttrSpec(FLOAT, 0.5)},
        inputs=(IOSpec("data"),),
        outputs=(IOSpec("output"), IOSpec("mask", optional=True)),
    ),
    _schema(
        "Flatten",
        1,
        {"axis": AttrSpec(INT, 1)},
        inputs=(IOSpec("input"),),
        outputs=(IOSpec("output"),),
    ),
    _schema(
        "LRN",
        1,
        {
            "size": AttrSpec(INT, required=True),
            "alpha": AttrSpec(FLOAT, 0.0001),
            "beta": AttrSpec(FLOAT, 0.75),
            "bias": AttrSpec(FLOAT, 1.0),
        },
    ),
]

OP_SCHEMAS: dict[str, list[OpSchema]] = {}
for _s in sorted(_SCHEMA_LIST, key=lambda s: s.since_version):
    OP_SCHEMAS.setdefault(_s.op_type, []).append(_s)


def get_schema(op_type: str, opset_version: int | None = None) -> OpSchema:
    """
    Look up the schema of an operator for a given opset version.

    :param op_type: Operator name
    :param opset_version: Opset version of the model, latest if None
    :return: Newest schema with since_version not above opset_version
    """
    versions = OP_SCHEMAS.get(op_type)
    if versions is None:
        raise NotImplementedError(f"Operator {op_type} is not supported")
    if opset_version is None:
        return versions[-1]

    candidates = [s for s in versions if s.since_version <= opset_version]
    if not candidates:
        raise ShapeInferenceError(
            f"{op_type} is not defined in opset {opset_version} "
            f"(first defined in opset {versions[0].since_version})"
        )
    return candidates[-1]


def _check_arity(node: NodeProto, schema: OpSchema) -> None:
    # Trailing empty names are omitted optional inputs/outputs
    n_inputs = len(node.input)
    while n_inputs > 0 and not node.input[n_inputs - 1]:
        n_inputs -= 1
    n_outputs = len(node.output)
    while n_outputs > 0 and not node.output[n_outputs - 1]:
        n_outputs -= 1

    if not schema.min_inputs <= n_inputs <= schema.max_inputs:
        raise ShapeInferenceError(
            f"{node.op_type} expects {schema.min_inputs} to {schema.max_inputs} inputs, "
            f"got {n_inputs}"
        )
    if not schema.min_outputs <= n_outputs <= schema.max_outputs:
        raise ShapeInferenceError(
            f"{node.op_type} expects {schema.min_outputs} to {schema.max_outputs} outputs, "
            f"got {n_outputs}"
        )
    if schema.output_counts is not None and n_outputs not in schema.output_counts:
        raise ShapeInferenceError(
            f"{node.op_type} expects {sorted(schema.output_counts)} outputs, got {n_outputs}"
        )


def _check_attributes(node: NodeProto, schema: OpSchema) -> None:
    present = set()
    for attr in node.attribute:
        spec = schema.attributes.get(attr.name)
        if spec is None:
            raise ShapeInferenceError(f"Unrecognized attribute {attr.name} for {node.op_type}")
        if attr.type != spec.attr_type:
            raise ShapeInferenceError(
                f"Attribute {attr.name} of {node.op_type} has type "
                f"{AttributeProto.AttributeType.Name(attr.type)}, expected "
                f"{AttributeProto.AttributeType.Name(spec.attr_type)}"
            )
        present.add(attr.name)

    for name, spec in schema.attributes.items():
        if spec.required and name not in present:
            raise ShapeInferenceError(f"Attribute {name} of {node.op_type} must be specified")


def _check_input_types(
    node: NodeProto, schema: OpSchema, input_types: Sequence[TensorType | None]
) -> None:
    for name, tensor_type in zip(node.input, input_types, strict=False):
        if tensor_type is None or tensor_type.elem_type == TensorProto.UNDEFINED:
            continue
        if tensor_type.elem_type not in schema.allowed_types:
            type_name = TensorProto.DataType.Name(tensor_type.elem_type)
            raise ShapeInferenceError(
                f"Input {name} of {node.op_type} has type {type_name}, "
                f"expected one of float16, float, double"
            )


def check_node(
    node: NodeProto,
    opset_version: int | None = None,
    input_types: Sequence[TensorType | None] | None = None,
) -> OpSchema:
    """
    Validate a node against its operator schema.

    Checks the number of inputs and outputs, that every attribute is declared
    with the right type, that required attributes are present, and, when input
    types are given, the element type constraint.

    :param node: ONNX node
    :param opset_version: Opset version of the model, latest if None
    :param input_types: Known input types, aligned with ``node.input``
    :return: Schema the node was checked against
    """
    schema = get_schema(node.op_type, opset_version)
    _check_arity(node, schema)
    _check_attributes(node, schema)
    if input_types is not None:
        _check_input_types(node, schema, input_types)
    return schema
