from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

import numpy as np

from onnx2qir.ir_builder.errors import NodeNotSupportedError, NodeValidationError
from onnx2qir.ir_builder.op_builders.conv import (
    quantized_linear_convolution,
    quantized_linear_convolution_bias,
    quantized_linear_convolution_with_zero_points,
)
from onnx2qir.ir_builder.op_builders.shape import make_concat, make_slice
from onnx2qir.ir_builder.op_builders.shared import (
    ConvParams,
    QLinearConvAttributes,
    get_conv_params,
)
from onnx2qir.utils.enums import QLinearConvLowering
from onnx2qir.utils.logging import debug, format_node_message, warn

# NCHW activations, OIHW filters.
DATA_CHANNEL_AXIS = 1
FILTER_OUTPUT_CHANNEL_AXIS = 0
CONCATENATION_AXIS = 1


@dataclass(frozen=True)
class OpScale:
    data_scale: str
    filter_scale: str
    output_scale: str


def validate_qlinear_conv_group(
    *,
    node: Any,
    data_shape: List[int],
    filter_shape: List[int],
) -> int:
    """Check the group attribute against the channel counts and return it.

    Shapes are shape signatures: -1 marks a dim unknown at import time.
    """
    group = QLinearConvAttributes.from_node(node).group

    if len(data_shape) < 3 or len(filter_shape) != len(data_shape):
        raise NodeValidationError(
            reason_code="unsupported_input_rank",
            message=(
                "QLinearConv data and filter must share a rank of at least 3. "
                f"data_shape={list(data_shape)} filter_shape={list(filter_shape)}"
            ),
            node_name=node.name,
            node_op=node.op,
        )

    n_data_channels = int(data_shape[DATA_CHANNEL_AXIS])
    n_filters_channels = int(filter_shape[FILTER_OUTPUT_CHANNEL_AXIS])
    if n_data_channels < 0 or n_filters_channels < 0:
        raise NodeValidationError(
            reason_code="unknown_channel_dimension",
            message=(
                "QLinearConv channel counts must be static. "
                f"data_channels={n_data_channels} filter_channels={n_filters_channels}"
            ),
            node_name=node.name,
            node_op=node.op,
        )

    if not (0 <= group <= n_data_channels and group <= n_filters_channels):
        raise NodeValidationError(
            reason_code="invalid_group_attribute",
            message=f"incorrect value of 'group' attribute: {group}",
            node_name=node.name,
            node_op=node.op,
        )
    if group == 0:
        raise NodeValidationError(
            reason_code="invalid_group_attribute",
            message=f"incorrect value of 'group' attribute: {group}. group must be positive.",
            node_name=node.name,
            node_op=node.op,
        )
    if n_data_channels % group != 0:
        raise NodeValidationError(
            reason_code="group_not_divisor_of_data_channels",
            message=(
                "provided group attribute value must be a multiple of data channels count. "
                f"group={group} data_channels={n_data_channels}"
            ),
            node_name=node.name,
            node_op=node.op,
        )
    if n_filters_channels % group != 0:
        raise NodeValidationError(
            reason_code="group_not_divisor_of_filter_channels",
            message=(
                "provided group attribute value must be a multiple of filter channels count. "
                f"group={group} filter_channels={n_filters_channels}"
            ),
            node_name=node.name,
            node_op=node.op,
        )
    return group


def resolve_qlinear_conv_lowering(
    *,
    group: int,
    has_bias: bool,
    filter_dtype: str,
    enable_u8_fast_path: bool = True,
) -> QLinearConvLowering:
    if has_bias:
        if group > 1:
            return QLinearConvLowering.GROUPED_BIASED
        return QLinearConvLowering.BIASED
    if enable_u8_fast_path and str(filter_dtype).upper() == "UINT8" and group == 1:
        return QLinearConvLowering.FAST_PATH_U8
    if group > 1:
        return QLinearConvLowering.GROUPED_NO_BIAS
    return QLinearConvLowering.PLAIN


def _raise_grouped_bias_not_supported(node: Any, groups: int) -> None:
    raise NodeNotSupportedError(
        reason_code="unsupported_grouped_convolution_with_bias",
        message=(
            "Groups != 1 not supported for Quantized Convolution with bias. "
            f"group={groups}"
        ),
        node_name=node.name,
        node_op=node.op,
    )


def _is_per_output_channel(ctx: Any, tensor_name: str, n_filters_channels: int) -> bool:
    tensor = ctx.model_ir.tensors[tensor_name]
    element_count = int(np.prod([int(v) for v in tensor.shape])) if len(tensor.shape) > 0 else 1
    return (
        n_filters_channels > 1
        and len(tensor.shape) == 1
        and element_count == n_filters_channels
    )


def make_quantized_conv(
    ctx: Any,
    *,
    node: Any,
    data: str,
    filters: str,
    conv_params: ConvParams,
    groups: int,
    op_scale: OpScale,
    output_name: str,
    output_dtype: str,
    bias: Optional[str] = None,
) -> str:
    """Lower one quantized convolution, splitting it per group when groups > 1.

    groups > 1 emits, for every group g, a SLICE of the data channels
    [g * C/G, (g + 1) * C/G), a SLICE of the filters [g * M/G, (g + 1) * M/G),
    one QUANTIZED_CONVOLUTION on the two slices, and finally one
    CONCATENATION of the per-group results along the channel axis.
    """
    if groups > 1:
        if bias is not None:
            _raise_grouped_bias_not_supported(node, groups)

        n_data_channels = int(ctx.model_ir.tensors[data].shape[DATA_CHANNEL_AXIS])
        n_filters_channels = int(ctx.model_ir.tensors[filters].shape[FILTER_OUTPUT_CHANNEL_AXIS])
        data_group_size = n_data_channels // groups
        filters_group_size = n_filters_channels // groups
        split_filter_scale = _is_per_output_channel(
            ctx,
            op_scale.filter_scale,
            n_filters_channels,
        )

        convolution_nodes: List[str] = []
        for group in range(groups):
            sliced_data = make_slice(
                ctx,
                data,
                DATA_CHANNEL_AXIS,
                group * data_group_size,
                (group + 1) * data_group_size,
                f"{node.name}_data_group_{group}",
            )
            sliced_filters = make_slice(
                ctx,
                filters,
                FILTER_OUTPUT_CHANNEL_AXIS,
                group * filters_group_size,
                (group + 1) * filters_group_size,
                f"{node.name}_filters_group_{group}",
            )
            filter_scale = op_scale.filter_scale
            if split_filter_scale:
                filter_scale = make_slice(
                    ctx,
                    op_scale.filter_scale,
                    0,
                    group * filters_group_size,
                    (group + 1) * filters_group_size,
                    f"{node.name}_filter_scale_group_{group}",
                )
            convolution_nodes.append(
                quantized_linear_convolution(
                    ctx,
                    data=sliced_data,
                    filters=sliced_filters,
                    conv_params=conv_params,
                    data_scale=op_scale.data_scale,
                    filter_scale=filter_scale,
                    output_scale=op_scale.output_scale,
                    output_dtype=output_dtype,
                    output_base=f"{node.name}_conv_group_{group}",
                )
            )
        return make_concat(
            ctx,
            convolution_nodes,
            CONCATENATION_AXIS,
            output_name,
        )

    if bias is not None:
        return quantized_linear_convolution_bias(
            ctx,
            data=data,
            filters=filters,
            bias=bias,
            conv_params=conv_params,
            data_scale=op_scale.data_scale,
            filter_scale=op_scale.filter_scale,
            output_scale=op_scale.output_scale,
            output_dtype=output_dtype,
            output_name=output_name,
        )
    return quantized_linear_convolution(
        ctx,
        data=data,
        filters=filters,
        conv_params=conv_params,
        data_scale=op_scale.data_scale,
        filter_scale=op_scale.filter_scale,
        output_scale=op_scale.output_scale,
        output_dtype=output_dtype,
        output_name=output_name,
    )


def _warn_ignored_zero_points(
    ctx: Any,
    *,
    node: Any,
    zero_point_names: List[str],
    lowering: QLinearConvLowering,
) -> None:
    # Scale-only primitives have no zero point operands.
    for name in zero_point_names:
        data = ctx.model_ir.tensors[name].data
        if data is not None and np.any(np.asarray(data) != 0):
            warn(
                f'{node.op} {node.name}: non-zero zero point {name}={np.asarray(data).tolist()} '
                f'is ignored by the {lowering.value} lowering.'
            )


def build_qlinear_conv_op(node: Any, ctx: Any) -> List[str]:
    """QLinearConv

    Inputs are positional: x, x_scale, x_zero_point, w, w_scale, w_zero_point,
    y_scale, y_zero_point and an optional int32 bias.

    Returns
    ----------
    outputs: List[str]
        one-element list holding the name of the output tensor
    """
    data_name = node.inputs[0].name
    data_scale_name = node.inputs[1].name
    data_zero_name = node.inputs[2].name
    filters_name = node.inputs[3].name
    filters_scale_name = node.inputs[4].name
    filters_zero_name = node.inputs[5].name
    output_scale_name = node.inputs[6].name
    output_zero_name = node.inputs[7].name
    bias_name = node.inputs[8].name if len(node.inputs) == 9 else ""
    output_name = node.outputs[0].name

    for name in [
        data_name,
        data_scale_name,
        data_zero_name,
        filters_name,
        filters_scale_name,
        filters_zero_name,
        output_scale_name,
        output_zero_name,
    ]:
        ctx.ensure_tensor(name)
    if bias_name != "":
        ctx.ensure_tensor(bias_name)

    data_signature = ctx.get_tensor_signature(data_name)
    filter_shape = ctx.get_tensor_shape(filters_name)
    groups = validate_qlinear_conv_group(
        node=node,
        data_shape=data_signature,
        filter_shape=ctx.get_tensor_signature(filters_name),
    )
    conv_params = get_conv_params(
        node=node,
        attributes=QLinearConvAttributes.from_node(node),
        data_signature=data_signature,
        filter_shape=filter_shape,
    )

    # The output zero point carries the quantized output type.
    output_dtype = ctx.get_tensor_dtype(output_zero_name)
    filter_dtype = ctx.get_tensor_dtype(filters_name)
    lowering = resolve_qlinear_conv_lowering(
        group=groups,
        has_bias=bias_name != "",
        filter_dtype=filter_dtype,
        enable_u8_fast_path=bool(getattr(ctx, "enable_u8_fast_path", True)),
    )
    debug(
        format_node_message(
            node_op=node.op,
            node_name=node.name,
            fields={
                'lowering': lowering,
                'group': groups,
                'filter_dtype': filter_dtype,
                'output_dtype': output_dtype,
            },
        )
    )

    if lowering not in (QLinearConvLowering.FAST_PATH_U8, QLinearConvLowering.GROUPED_BIASED):
        _warn_ignored_zero_points(
            ctx,
            node=node,
            zero_point_names=[data_zero_name, filters_zero_name, output_zero_name],
            lowering=lowering,
        )

    op_scale = OpScale(
        data_scale=data_scale_name,
        filter_scale=filters_scale_name,
        output_scale=output_scale_name,
    )
    if lowering is QLinearConvLowering.GROUPED_BIASED:
        _raise_grouped_bias_not_supported(node, groups)
    elif lowering is QLinearConvLowering.BIASED:
        conv_node = make_quantized_conv(
            ctx,
            node=node,
            data=data_name,
            filters=filters_name,
            conv_params=conv_params,
            groups=groups,
            op_scale=op_scale,
            output_name=output_name,
            output_dtype=output_dtype,
            bias=bias_name,
        )
    elif lowering is QLinearConvLowering.FAST_PATH_U8:
        conv_node = quantized_linear_convolution_with_zero_points(
            ctx,
            data=data_name,
            filters=filters_name,
            conv_params=conv_params,
            data_scale=data_scale_name,
            data_zero_point=data_zero_name,
            filter_scale=filters_scale_name,
            filter_zero_point=filters_zero_name,
            output_scale=output_scale_name,
            output_zero_point=output_zero_name,
            output_dtype=output_dtype,
            output_name=output_name,
        )
    elif lowering in (QLinearConvLowering.PLAIN, QLinearConvLowering.GROUPED_NO_BIAS):
        conv_node = make_quantized_conv(
            ctx,
            node=node,
            data=data_name,
            filters=filters_name,
            conv_params=conv_params,
            groups=groups,
            op_scale=op_scale,
            output_name=output_name,
            output_dtype=output_dtype,
        )
    else:
        raise NotImplementedError(f"Unhandled QLinearConv lowering: {lowering}")

    return [conv_node]
