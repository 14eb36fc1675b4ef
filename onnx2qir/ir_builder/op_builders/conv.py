from __future__ import annotations

from typing import Any, List, Optional, Tuple

from onnx2qir.ir_builder.ir import OperatorIR
from onnx2qir.ir_builder.op_builders.shared import (
    ConvParams,
    conv_output_spatial_dim,
    tensor_shape_signature,
)


def infer_conv_output_shape(
    *,
    ctx: Any,
    data_name: str,
    filters_name: str,
    conv_params: ConvParams,
) -> Tuple[List[int], List[int]]:
    """Output [N, M, *spatial] of a group-count-1 convolution as (shape, signature)."""
    data_signature = tensor_shape_signature(ctx, data_name)
    filters_shape = [int(v) for v in ctx.model_ir.tensors[filters_name].shape]
    out_signature = [int(data_signature[0]), int(filters_shape[0])]
    for i in range(conv_params.spatial_rank):
        out_signature.append(
            conv_output_spatial_dim(
                in_size=int(data_signature[2 + i]),
                kernel=int(filters_shape[2 + i]),
                stride=int(conv_params.strides[i]),
                filter_dilation=int(conv_params.filter_dilations[i]),
                data_dilation=int(conv_params.data_dilations[i]),
                pad_below=int(conv_params.padding_below[i]),
                pad_above=int(conv_params.padding_above[i]),
            )
        )
    out_shape = [int(v) if int(v) >= 0 else 1 for v in out_signature]
    return out_shape, out_signature


def _prepare_output_tensor(
    *,
    ctx: Any,
    output_name: Optional[str],
    output_base: str,
    output_dtype: str,
    shape: List[int],
    signature: List[int],
) -> str:
    if output_name is None:
        output_name = ctx.add_intermediate_tensor(
            output_base,
            dtype=output_dtype,
            shape=shape,
        )
    else:
        ctx.ensure_tensor(output_name, dtype=output_dtype, shape=shape)
    output_tensor = ctx.model_ir.tensors[output_name]
    output_tensor.dtype = output_dtype
    output_tensor.shape = list(shape)
    output_tensor.shape_signature = list(signature)
    return output_name


def quantized_linear_convolution(
    ctx: Any,
    *,
    data: str,
    filters: str,
    conv_params: ConvParams,
    data_scale: str,
    filter_scale: str,
    output_scale: str,
    output_dtype: str,
    output_name: Optional[str] = None,
    output_base: str = "quantized_convolution",
) -> str:
    """Quantized convolution with three affine scales and zero zero-points."""
    shape, signature = infer_conv_output_shape(
        ctx=ctx,
        data_name=data,
        filters_name=filters,
        conv_params=conv_params,
    )
    output_name = _prepare_output_tensor(
        ctx=ctx,
        output_name=output_name,
        output_base=output_base,
        output_dtype=output_dtype,
        shape=shape,
        signature=signature,
    )
    ctx.add_operator(
        OperatorIR(
            op_type="QUANTIZED_CONVOLUTION",
            inputs=[data, filters, data_scale, filter_scale, output_scale],
            outputs=[output_name],
            options=conv_params.to_options(),
        )
    )
    return output_name


def quantized_linear_convolution_bias(
    ctx: Any,
    *,
    data: str,
    filters: str,
    bias: str,
    conv_params: ConvParams,
    data_scale: str,
    filter_scale: str,
    output_scale: str,
    output_dtype: str,
    output_name: Optional[str] = None,
    output_base: str = "quantized_convolution_bias",
) -> str:
    """Same as quantized_linear_convolution with an int32 bias added before requantization."""
    shape, signature = infer_conv_output_shape(
        ctx=ctx,
        data_name=data,
        filters_name=filters,
        conv_params=conv_params,
    )
    output_name = _prepare_output_tensor(
        ctx=ctx,
        output_name=output_name,
        output_base=output_base,
        output_dtype=output_dtype,
        shape=shape,
        signature=signature,
    )
    ctx.add_operator(
        OperatorIR(
            op_type="QUANTIZED_CONVOLUTION_BIAS",
            inputs=[data, filters, bias, data_scale, filter_scale, output_scale],
            outputs=[output_name],
            options=conv_params.to_options(),
        )
    )
    return output_name


def quantized_linear_convolution_with_zero_points(
    ctx: Any,
    *,
    data: str,
    filters: str,
    conv_params: ConvParams,
    data_scale: str,
    data_zero_point: str,
    filter_scale: str,
    filter_zero_point: str,
    output_scale: str,
    output_zero_point: str,
    output_dtype: str,
    output_name: Optional[str] = None,
    output_base: str = "qlinear_convolution",
) -> str:
    """Quantized convolution taking every scale and zero-point operand."""
    shape, signature = infer_conv_output_shape(
        ctx=ctx,
        data_name=data,
        filters_name=filters,
        conv_params=conv_params,
    )
    output_name = _prepare_output_tensor(
        ctx=ctx,
        output_name=output_name,
        output_base=output_base,
        output_dtype=output_dtype,
        shape=shape,
        signature=signature,
    )
    ctx.add_operator(
        OperatorIR(
            op_type="QLINEAR_CONVOLUTION",
            inputs=[
                data,
                data_scale,
                data_zero_point,
                filters,
                filter_scale,
                filter_zero_point,
                output_scale,
                output_zero_point,
            ],
            outputs=[output_name],
            options=conv_params.to_options(),
        )
    )
    return output_name
