from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Optional

from onnx2qir.ir_builder.errors import NodeValidationError


_SUPPORTED_AUTO_PADS = ["NOTSET", "VALID", "SAME_UPPER", "SAME_LOWER"]


def tensor_shape_signature(ctx: Any, tensor_name: str) -> List[int]:
    tensor = ctx.model_ir.tensors[tensor_name]
    if tensor.shape_signature is not None and len(tensor.shape_signature) == len(tensor.shape):
        return [int(v) for v in tensor.shape_signature]
    return [int(v) for v in tensor.shape]


@dataclass(frozen=True)
class QLinearConvAttributes:
    """Typed view of the attributes a QLinearConv node may carry.

    Every recognized key is read once here; nothing downstream looks
    attributes up by name.
    """
    group: int = 1
    auto_pad: str = "NOTSET"
    kernel_shape: Optional[List[int]] = None
    strides: Optional[List[int]] = None
    dilations: Optional[List[int]] = None
    pads: Optional[List[int]] = None

    @classmethod
    def from_node(cls, node: Any) -> "QLinearConvAttributes":
        attrs = node.attrs

        def _ints(key: str) -> Optional[List[int]]:
            if key not in attrs:
                return None
            return [int(v) for v in list(attrs[key])]

        return cls(
            group=int(attrs.get("group", 1)),
            auto_pad=str(attrs.get("auto_pad", "NOTSET")).upper(),
            kernel_shape=_ints("kernel_shape"),
            strides=_ints("strides"),
            dilations=_ints("dilations"),
            pads=_ints("pads"),
        )


@dataclass(frozen=True)
class ConvParams:
    strides: List[int]
    filter_dilations: List[int]
    data_dilations: List[int]
    padding_below: List[int]
    padding_above: List[int]
    kernel_shape: List[int] = field(default_factory=list)

    @property
    def spatial_rank(self) -> int:
        return len(self.strides)

    def to_options(self) -> dict:
        return {
            "strides": [int(v) for v in self.strides],
            "filterDilations": [int(v) for v in self.filter_dilations],
            "dataDilations": [int(v) for v in self.data_dilations],
            "paddingBelow": [int(v) for v in self.padding_below],
            "paddingAbove": [int(v) for v in self.padding_above],
        }


def _require_length(
    *,
    node: Any,
    attr_name: str,
    values: List[int],
    spatial_rank: int,
    values_per_dim: int = 1,
) -> List[int]:
    expected = spatial_rank * values_per_dim
    if len(values) != expected:
        raise NodeValidationError(
            reason_code="invalid_attribute_length",
            message=(
                f"'{attr_name}' must have {expected} values for {spatial_rank} spatial dims. "
                f"{attr_name}={values}"
            ),
            node_name=node.name,
            node_op=node.op,
        )
    return values


def _require_positive(
    *,
    node: Any,
    attr_name: str,
    values: List[int],
) -> List[int]:
    if any(int(v) <= 0 for v in values):
        raise NodeValidationError(
            reason_code="unsupported_attribute_value",
            message=f"'{attr_name}' must be positive. {attr_name}={values}",
            node_name=node.name,
            node_op=node.op,
        )
    return values


def calc_same_pads(
    *,
    in_spatial_shape: List[int],
    kernel_shape: List[int],
    strides: List[int],
    dilations: List[int],
    auto_pad: str,
) -> tuple:
    """Calculates SAME_UPPER / SAME_LOWER paddings.

    Parameters
    ----------
    in_spatial_shape: List[int]
        input spatial shape, all dims known

    kernel_shape: List[int]
        the size of the kernel along each axis

    strides: List[int]
        stride along each spatial axis

    dilations: List[int]
        dilation along each spatial axis

    auto_pad: str
        SAME_UPPER or SAME_LOWER.\n
        SAME_UPPER puts the odd padding element at the end of the axis,\n
        SAME_LOWER at the beginning.

    Returns
    ----------
    padding_below, padding_above: List[int], List[int]
    """
    padding_below: List[int] = []
    padding_above: List[int] = []
    for i in range(len(kernel_shape)):
        in_size = int(in_spatial_shape[i])
        filter_size = (int(kernel_shape[i]) - 1) * int(dilations[i]) + 1
        out_size = int(math.ceil(in_size / int(strides[i])))
        pad_along_axis = max((out_size - 1) * int(strides[i]) + filter_size - in_size, 0)
        if auto_pad == "SAME_LOWER":
            pad_begin = pad_along_axis - pad_along_axis // 2
        else:
            pad_begin = pad_along_axis // 2
        padding_below.append(int(pad_begin))
        padding_above.append(int(pad_along_axis - pad_begin))
    return padding_below, padding_above


def get_conv_params(
    *,
    node: Any,
    attributes: QLinearConvAttributes,
    data_signature: List[int],
    filter_shape: List[int],
) -> ConvParams:
    """Derive strides, dilations and paddings of a convolution node.

    data_signature uses -1 for dims that are unknown at import time.
    """
    spatial_rank = len(filter_shape) - 2
    kernel_shape = attributes.kernel_shape
    if kernel_shape is None:
        kernel_shape = [int(v) for v in filter_shape[2:]]
    kernel_shape = _require_length(
        node=node,
        attr_name="kernel_shape",
        values=kernel_shape,
        spatial_rank=spatial_rank,
    )

    strides = attributes.strides if attributes.strides is not None else [1] * spatial_rank
    strides = _require_length(node=node, attr_name="strides", values=strides, spatial_rank=spatial_rank)
    strides = _require_positive(node=node, attr_name="strides", values=strides)

    dilations = attributes.dilations if attributes.dilations is not None else [1] * spatial_rank
    dilations = _require_length(node=node, attr_name="dilations", values=dilations, spatial_rank=spatial_rank)
    dilations = _require_positive(node=node, attr_name="dilations", values=dilations)

    auto_pad = attributes.auto_pad
    if auto_pad not in _SUPPORTED_AUTO_PADS:
        raise NodeValidationError(
            reason_code="unsupported_attribute_value",
            message=f"auto_pad must be one of {_SUPPORTED_AUTO_PADS}. auto_pad={auto_pad}",
            node_name=node.name,
            node_op=node.op,
        )

    if auto_pad == "NOTSET":
        pads = attributes.pads if attributes.pads is not None else [0] * (spatial_rank * 2)
        pads = _require_length(node=node, attr_name="pads", values=pads, spatial_rank=spatial_rank, values_per_dim=2)
        padding_below = [int(v) for v in pads[:spatial_rank]]
        padding_above = [int(v) for v in pads[spatial_rank:]]
    elif auto_pad == "VALID":
        padding_below = [0] * spatial_rank
        padding_above = [0] * spatial_rank
    else:
        in_spatial_shape = [int(v) for v in data_signature[2:]]
        if len(in_spatial_shape) != spatial_rank or any(v < 0 for v in in_spatial_shape):
            raise NodeValidationError(
                reason_code="unknown_spatial_dimension",
                message=(
                    f"auto_pad={auto_pad} needs static spatial dims. "
                    f"input_shape={list(data_signature)}"
                ),
                node_name=node.name,
                node_op=node.op,
            )
        padding_below, padding_above = calc_same_pads(
            in_spatial_shape=in_spatial_shape,
            kernel_shape=kernel_shape,
            strides=strides,
            dilations=dilations,
            auto_pad=auto_pad,
        )

    return ConvParams(
        strides=[int(v) for v in strides],
        filter_dilations=[int(v) for v in dilations],
        data_dilations=[1] * spatial_rank,
        padding_below=padding_below,
        padding_above=padding_above,
        kernel_shape=[int(v) for v in kernel_shape],
    )


def conv_output_spatial_dim(
    *,
    in_size: int,
    kernel: int,
    stride: int,
    filter_dilation: int,
    data_dilation: int,
    pad_below: int,
    pad_above: int,
) -> int:
    if in_size < 0:
        return -1
    dilated_in = (in_size - 1) * data_dilation + 1 if in_size > 0 else 0
    dilated_kernel = (kernel - 1) * filter_dilation + 1
    padded = dilated_in + pad_below + pad_above
    if padded < dilated_kernel:
        return 0
    return (padded - dilated_kernel) // stride + 1
