from enum import Enum

import numpy as np
from onnx import TensorProto

ONNX_DTYPES_TO_IR_DTYPES = {
    TensorProto.FLOAT16: 'FLOAT16',
    TensorProto.FLOAT: 'FLOAT32',
    TensorProto.DOUBLE: 'FLOAT64',

    TensorProto.UINT8: 'UINT8',
    TensorProto.UINT16: 'UINT16',
    TensorProto.UINT32: 'UINT32',
    TensorProto.UINT64: 'UINT64',

    TensorProto.INT8: 'INT8',
    TensorProto.INT16: 'INT16',
    TensorProto.INT32: 'INT32',
    TensorProto.INT64: 'INT64',

    TensorProto.BOOL: 'BOOL',
}

NUMPY_DTYPES_TO_IR_DTYPES = {
    np.dtype('float16'): 'FLOAT16',
    np.dtype('float32'): 'FLOAT32',
    np.dtype('float64'): 'FLOAT64',

    np.dtype('uint8'): 'UINT8',
    np.dtype('uint16'): 'UINT16',
    np.dtype('uint32'): 'UINT32',
    np.dtype('uint64'): 'UINT64',

    np.dtype('int8'): 'INT8',
    np.dtype('int16'): 'INT16',
    np.dtype('int32'): 'INT32',
    np.dtype('int64'): 'INT64',

    np.dtype('bool_'): 'BOOL',
}

IR_DTYPES_TO_NUMPY_DTYPES = {
    ir_dtype: np_dtype for np_dtype, ir_dtype in NUMPY_DTYPES_TO_IR_DTYPES.items()
}


class QLinearConvLowering(Enum):
    """How one QLinearConv node is lowered.

    PLAIN           : group == 1, no bias, three-scale primitive
    BIASED          : group == 1, bias, three-scale primitive with bias
    FAST_PATH_U8    : group == 1, no bias, uint8 filters, six-operand primitive
    GROUPED_NO_BIAS : group > 1, no bias, slice -> primitive x group -> concat
    GROUPED_BIASED  : group > 1, bias. Not supported, always rejected
    """
    PLAIN           = 'PLAIN'
    BIASED          = 'BIASED'
    FAST_PATH_U8    = 'FAST_PATH_U8'
    GROUPED_NO_BIAS = 'GROUPED_NO_BIAS'
    GROUPED_BIASED  = 'GROUPED_BIASED'

    def __str__(self):
        return self.value
