from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from onnx2qir.ir_builder.errors import NodeNotSupportedError, NodeValidationError
from onnx2qir.ir_builder.op_builders import (
    QLinearConvAttributes,
    build_identity_op,
    build_qlinear_conv_op,
    get_conv_params,
    validate_qlinear_conv_group,
)

__all__ = [
    "NodeNotSupportedError",
    "NodeValidationError",
    "ValidationSpec",
    "DispatchEntry",
    "DispatchResolution",
    "get_dispatch_registry",
    "get_dispatch_entry",
    "get_supported_onnx_ops",
    "resolve_node_dispatch",
    "validate_node_support",
]


@dataclass(frozen=True)
class ValidationSpec:
    min_inputs: int = 0
    max_inputs: Optional[int] = None
    min_outputs: int = 1
    max_outputs: Optional[int] = 1
    required_attrs: List[str] = field(default_factory=list)
    input_rank: Dict[int, List[int]] = field(default_factory=dict)
    output_rank: Dict[int, List[int]] = field(default_factory=dict)


@dataclass(frozen=True)
class DispatchEntry:
    onnx_op: str
    ir_ops: List[str]
    builder: Callable[[Any, Any], Any]
    validation: ValidationSpec = field(default_factory=ValidationSpec)
    extra_validator: Optional[Callable[[Any, Any], None]] = None


@dataclass(frozen=True)
class DispatchResolution:
    entry: DispatchEntry
    dispatch_mode: str


def _validate_counts(node: Any, spec: ValidationSpec) -> None:
    input_count = len(node.inputs)
    output_count = len(node.outputs)
    if input_count < int(spec.min_inputs):
        raise NodeValidationError(
            reason_code="invalid_input_count",
            message=f"input_count={input_count} is smaller than min_inputs={spec.min_inputs}",
            node_name=node.name,
            node_op=node.op,
        )
    if spec.max_inputs is not None and input_count > int(spec.max_inputs):
        raise NodeValidationError(
            reason_code="invalid_input_count",
            message=f"input_count={input_count} exceeds max_inputs={spec.max_inputs}",
            node_name=node.name,
            node_op=node.op,
        )
    if output_count < int(spec.min_outputs):
        raise NodeValidationError(
            reason_code="invalid_output_count",
            message=f"output_count={output_count} is smaller than min_outputs={spec.min_outputs}",
            node_name=node.name,
            node_op=node.op,
        )
    if spec.max_outputs is not None and output_count > int(spec.max_outputs):
        raise NodeValidationError(
            reason_code="invalid_output_count",
            message=f"output_count={output_count} exceeds max_outputs={spec.max_outputs}",
            node_name=node.name,
            node_op=node.op,
        )


def _validate_attrs(node: Any, spec: ValidationSpec) -> None:
    for attr in spec.required_attrs:
        if attr not in node.attrs:
            raise NodeValidationError(
                reason_code="missing_required_attribute",
                message=f"required attribute '{attr}' is missing",
                node_name=node.name,
                node_op=node.op,
            )


def _validate_rank_constraints(node: Any, ctx: Any, spec: ValidationSpec) -> None:
    for input_index, allowed_ranks in spec.input_rank.items():
        if input_index >= len(node.inputs):
            continue
        tensor_name = node.inputs[input_index].name
        if tensor_name == "":
            continue
        rank = len(ctx.get_tensor_shape(tensor_name))
        if rank not in allowed_ranks:
            raise NodeValidationError(
                reason_code="unsupported_input_rank",
                message=(
                    f"input[{input_index}] rank={rank} is not in supported ranks={allowed_ranks} "
                    f"for tensor={tensor_name}"
                ),
                node_name=node.name,
                node_op=node.op,
            )
    for output_index, allowed_ranks in spec.output_rank.items():
        if output_index >= len(node.outputs):
            continue
        tensor_name = node.outputs[output_index].name
        rank = len(ctx.get_tensor_shape(tensor_name))
        if rank not in allowed_ranks:
            raise NodeValidationError(
                reason_code="unsupported_output_rank",
                message=(
                    f"output[{output_index}] rank={rank} is not in supported ranks={allowed_ranks} "
                    f"for tensor={tensor_name}"
                ),
                node_name=node.name,
                node_op=node.op,
            )


def _validate_required_inputs_present(node: Any, ctx: Any) -> None:
    # Only the trailing bias of QLinearConv is optional.
    for input_index, graph_input in enumerate(node.inputs[:8]):
        if graph_input.name == "":
            raise NodeValidationError(
                reason_code="missing_required_input",
                message=f"input index={input_index} is missing",
                node_name=node.name,
                node_op=node.op,
            )


def _validate_qlinear_conv(node: Any, ctx: Any) -> None:
    _validate_required_inputs_present(node, ctx)
    data_signature = ctx.get_tensor_signature(node.inputs[0].name)
    group = validate_qlinear_conv_group(
        node=node,
        data_shape=data_signature,
        filter_shape=ctx.get_tensor_signature(node.inputs[3].name),
    )
    get_conv_params(
        node=node,
        attributes=QLinearConvAttributes.from_node(node),
        data_signature=data_signature,
        filter_shape=ctx.get_tensor_shape(node.inputs[3].name),
    )
    has_bias = len(node.inputs) == 9 and node.inputs[8].name != ""
    if has_bias and group > 1:
        raise NodeNotSupportedError(
            reason_code="unsupported_grouped_convolution_with_bias",
            message=(
                "Groups != 1 not supported for Quantized Convolution with bias. "
                f"group={group}"
            ),
            node_name=node.name,
            node_op=node.op,
        )


_SPATIAL_CONV_RANKS = [3, 4, 5]

_DISPATCH_REGISTRY: Dict[str, DispatchEntry] = {
    "QLinearConv": DispatchEntry(
        onnx_op="QLinearConv",
        ir_ops=[
            "QUANTIZED_CONVOLUTION",
            "QUANTIZED_CONVOLUTION_BIAS",
            "QLINEAR_CONVOLUTION",
            "SLICE",
            "CONCATENATION",
        ],
        builder=build_qlinear_conv_op,
        validation=ValidationSpec(
            min_inputs=8,
            max_inputs=9,
            min_outputs=1,
            max_outputs=1,
            input_rank={0: _SPATIAL_CONV_RANKS, 3: _SPATIAL_CONV_RANKS},
        ),
        extra_validator=_validate_qlinear_conv,
    ),
    "Identity": DispatchEntry(
        onnx_op="Identity",
        ir_ops=["RESHAPE"],
        builder=build_identity_op,
        validation=ValidationSpec(min_inputs=1, max_inputs=1, min_outputs=1, max_outputs=1),
    ),
}


def get_dispatch_registry() -> Dict[str, DispatchEntry]:
    return dict(_DISPATCH_REGISTRY)


def get_dispatch_entry(onnx_op: str) -> Optional[DispatchEntry]:
    return _DISPATCH_REGISTRY.get(str(onnx_op))


def get_supported_onnx_ops() -> List[str]:
    return sorted(_DISPATCH_REGISTRY.keys())


def resolve_node_dispatch(node: Any, ctx: Any) -> DispatchResolution:
    entry = get_dispatch_entry(node.op)
    if entry is None:
        raise NodeValidationError(
            reason_code="unsupported_onnx_op",
            message=f"ONNX op is not supported by onnx2qir: {node.op}",
            node_name=node.name,
            node_op=node.op,
        )
    _validate_counts(node, entry.validation)
    _validate_attrs(node, entry.validation)
    _validate_rank_constraints(node, ctx, entry.validation)
    if entry.extra_validator is not None:
        entry.extra_validator(node, ctx)
    return DispatchResolution(
        entry=entry,
        dispatch_mode="builtin",
    )


def validate_node_support(node: Any, ctx: Any) -> DispatchEntry:
    return resolve_node_dispatch(node, ctx).entry
