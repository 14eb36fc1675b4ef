from onnx2qir.ir_builder.op_builders.shape import (
    build_identity_op,
    make_concat,
    make_slice,
)
from onnx2qir.ir_builder.op_builders.shared import (
    ConvParams,
    QLinearConvAttributes,
    get_conv_params,
)
from onnx2qir.ir_builder.op_builders.conv import (
    quantized_linear_convolution,
    quantized_linear_convolution_bias,
    quantized_linear_convolution_with_zero_points,
)
from onnx2qir.ir_builder.op_builders.quantized import (
    OpScale,
    build_qlinear_conv_op,
    make_quantized_conv,
    resolve_qlinear_conv_lowering,
    validate_qlinear_conv_group,
)

__all__ = [
    "build_identity_op",
    "make_concat",
    "make_slice",
    "ConvParams",
    "QLinearConvAttributes",
    "get_conv_params",
    "quantized_linear_convolution",
    "quantized_linear_convolution_bias",
    "quantized_linear_convolution_with_zero_points",
    "OpScale",
    "build_qlinear_conv_op",
    "make_quantized_conv",
    "resolve_qlinear_conv_lowering",
    "validate_qlinear_conv_group",
]
