from __future__ import annotations

from typing import Any, List

import numpy as np

from onnx2qir.ir_builder.ir import OperatorIR
from onnx2qir.ir_builder.op_builders.shared import tensor_shape_signature


def _propagate_passthrough_dtype(
    *,
    ctx: Any,
    src_tensor_name: str,
    dst_tensor_name: str,
) -> None:
    src_tensor = ctx.model_ir.tensors.get(src_tensor_name, None)
    dst_tensor = ctx.model_ir.tensors.get(dst_tensor_name, None)
    if src_tensor is None or dst_tensor is None:
        return
    dst_tensor.dtype = src_tensor.dtype


def make_slice(
    ctx: Any,
    input_name: str,
    axis: int,
    begin: int,
    end: int,
    output_base: str,
) -> str:
    """Slice `input_name` to [begin, end) along `axis`, every other axis full range.

    Returns the name of the new tensor.
    """
    ctx.ensure_tensor(input_name)
    input_tensor = ctx.model_ir.tensors[input_name]
    input_shape = [int(v) for v in input_tensor.shape]
    input_signature = tensor_shape_signature(ctx, input_name)
    rank = len(input_shape)
    if axis < 0 or axis >= rank:
        raise ValueError(
            f"Slice axis is out of range. tensor={input_name} axis={axis} rank={rank}"
        )
    axis_dim = int(input_signature[axis])
    if begin < 0 or end <= begin or (axis_dim >= 0 and end > axis_dim):
        raise ValueError(
            f"Slice bounds are out of range. tensor={input_name} axis={axis} "
            f"begin={begin} end={end} dim={axis_dim}"
        )

    lower_bounds = [0 for _ in range(rank)]
    upper_bounds = list(input_signature)
    lower_bounds[axis] = int(begin)
    upper_bounds[axis] = int(end)
    # size -1 keeps an unknown dim whole.
    sizes = [
        int(upper - lower) if upper >= 0 else -1
        for lower, upper in zip(lower_bounds, upper_bounds)
    ]

    output_shape = list(input_shape)
    output_shape[axis] = int(end - begin)
    output_signature = list(input_signature)
    output_signature[axis] = int(end - begin)

    output_name = ctx.add_intermediate_tensor(
        output_base,
        dtype=ctx.get_tensor_dtype(input_name),
        shape=output_shape,
    )
    ctx.model_ir.tensors[output_name].shape_signature = output_signature

    begin_name = ctx.add_const_tensor(
        f"{output_name}_begin",
        np.asarray(lower_bounds, dtype=np.int32),
    )
    size_name = ctx.add_const_tensor(
        f"{output_name}_size",
        np.asarray(sizes, dtype=np.int32),
    )
    ctx.add_operator(
        OperatorIR(
            op_type="SLICE",
            inputs=[input_name, begin_name, size_name],
            outputs=[output_name],
            options={
                "lowerBounds": [int(v) for v in lower_bounds],
                "upperBounds": [int(v) for v in upper_bounds],
            },
        )
    )
    return output_name


def make_concat(
    ctx: Any,
    input_names: List[str],
    axis: int,
    output_name: str,
) -> str:
    if len(input_names) == 0:
        raise ValueError(f"Concatenation needs at least one input. output={output_name}")
    for name in input_names:
        ctx.ensure_tensor(name)

    first_shape = [int(v) for v in ctx.model_ir.tensors[input_names[0]].shape]
    first_signature = tensor_shape_signature(ctx, input_names[0])
    output_shape = list(first_shape)
    output_signature = list(first_signature)
    output_shape[axis] = sum(
        int(ctx.model_ir.tensors[name].shape[axis]) for name in input_names
    )
    axis_signatures = [int(tensor_shape_signature(ctx, name)[axis]) for name in input_names]
    output_signature[axis] = -1 if any(v < 0 for v in axis_signatures) else sum(axis_signatures)

    ctx.ensure_tensor(
        output_name,
        dtype=ctx.get_tensor_dtype(input_names[0]),
        shape=output_shape,
    )
    output_tensor = ctx.model_ir.tensors[output_name]
    output_tensor.dtype = ctx.get_tensor_dtype(input_names[0])
    output_tensor.shape = output_shape
    output_tensor.shape_signature = output_signature

    ctx.add_operator(
        OperatorIR(
            op_type="CONCATENATION",
            inputs=list(input_names),
            outputs=[output_name],
            options={
                "axis": int(axis),
                "fusedActivationFunction": "NONE",
            },
        )
    )
    return output_name


def build_identity_op(node: Any, ctx: Any) -> List[str]:
    input_name = node.inputs[0].name
    output_name = node.outputs[0].name
    ctx.ensure_tensor(input_name)
    ctx.ensure_tensor(output_name)
    _propagate_passthrough_dtype(
        ctx=ctx,
        src_tensor_name=input_name,
        dst_tensor_name=output_name,
    )
    input_tensor = ctx.model_ir.tensors[input_name]
    output_tensor = ctx.model_ir.tensors[output_name]
    output_tensor.shape = list(input_tensor.shape)
    output_tensor.shape_signature = tensor_shape_signature(ctx, input_name)

    output_shape = ctx.get_tensor_shape(output_name)
    shape_const = ctx.add_const_tensor(
        f"{output_name}_identity_shape",
        np.asarray(output_shape, dtype=np.int32),
    )
    ctx.add_operator(
        OperatorIR(
            op_type="RESHAPE",
            inputs=[input_name, shape_const],
            outputs=[output_name],
            options={"newShape": [int(v) for v in output_shape]},
        )
    )
    return [output_name]
