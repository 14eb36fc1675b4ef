from types import SimpleNamespace

import pytest

from onnx2qir.ir_builder.errors import NodeValidationError
from onnx2qir.ir_builder.ir import ModelIR, TensorIR
from onnx2qir.ir_builder.op_builders.shared import (
    ConvParams,
    QLinearConvAttributes,
    calc_same_pads,
    conv_output_spatial_dim,
    get_conv_params,
    tensor_shape_signature,
)


class _FakeNode:
    def __init__(self, attrs):
        self.name = "qconv"
        self.op = "QLinearConv"
        self.attrs = attrs


def _params(attrs, data_signature=(1, 4, 5, 5), filter_shape=(4, 4, 3, 3)) -> ConvParams:
    node = _FakeNode(attrs)
    return get_conv_params(
        node=node,
        attributes=QLinearConvAttributes.from_node(node),
        data_signature=list(data_signature),
        filter_shape=list(filter_shape),
    )


def test_attributes_default_values() -> None:
    attributes = QLinearConvAttributes.from_node(_FakeNode({}))
    assert attributes.group == 1
    assert attributes.auto_pad == "NOTSET"
    assert attributes.kernel_shape is None
    assert attributes.strides is None
    assert attributes.dilations is None
    assert attributes.pads is None


def test_defaults_give_unit_strides_and_zero_padding() -> None:
    params = _params({})
    assert params.to_options() == {
        "strides": [1, 1],
        "filterDilations": [1, 1],
        "dataDilations": [1, 1],
        "paddingBelow": [0, 0],
        "paddingAbove": [0, 0],
    }
    assert params.kernel_shape == [3, 3]
    assert params.spatial_rank == 2


def test_explicit_pads_split_into_begin_and_end() -> None:
    params = _params({"pads": [1, 2, 3, 4], "strides": [2, 1], "dilations": [1, 2]})
    assert params.padding_below == [1, 2]
    assert params.padding_above == [3, 4]
    assert params.strides == [2, 1]
    assert params.filter_dilations == [1, 2]


def test_valid_auto_pad_ignores_pads() -> None:
    params = _params({"auto_pad": "VALID", "pads": [1, 1, 1, 1]})
    assert params.padding_below == [0, 0]
    assert params.padding_above == [0, 0]


@pytest.mark.parametrize(
    "auto_pad, expected_below, expected_above",
    [
        ("SAME_UPPER", [0, 0], [1, 1]),
        ("SAME_LOWER", [1, 1], [0, 0]),
    ],
)
def test_same_padding_places_odd_element(auto_pad, expected_below, expected_above) -> None:
    params = _params(
        {"auto_pad": auto_pad, "strides": [2, 2]},
        data_signature=(1, 4, 4, 4),
    )
    assert params.padding_below == expected_below
    assert params.padding_above == expected_above


def test_calc_same_pads_even_total() -> None:
    below, above = calc_same_pads(
        in_spatial_shape=[5],
        kernel_shape=[3],
        strides=[2],
        dilations=[1],
        auto_pad="SAME_UPPER",
    )
    assert below == [1]
    assert above == [1]


def test_calc_same_pads_with_dilation() -> None:
    below, above = calc_same_pads(
        in_spatial_shape=[6],
        kernel_shape=[3],
        strides=[1],
        dilations=[2],
        auto_pad="SAME_LOWER",
    )
    assert below == [2]
    assert above == [2]


def test_same_padding_needs_static_spatial_dims() -> None:
    with pytest.raises(NodeValidationError) as ex:
        _params({"auto_pad": "SAME_UPPER"}, data_signature=(1, 4, -1, 5))
    assert ex.value.reason_code == "unknown_spatial_dimension"


def test_explicit_pads_accept_unknown_spatial_dims() -> None:
    params = _params({"pads": [1, 1, 1, 1]}, data_signature=(-1, 4, -1, -1))
    assert params.padding_below == [1, 1]


def test_unknown_auto_pad_is_rejected() -> None:
    with pytest.raises(NodeValidationError) as ex:
        _params({"auto_pad": "SAME"})
    assert ex.value.reason_code == "unsupported_attribute_value"


@pytest.mark.parametrize(
    "attrs",
    [
        {"strides": [1]},
        {"dilations": [1, 1, 1]},
        {"pads": [0, 0]},
        {"kernel_shape": [3]},
    ],
)
def test_attribute_length_must_match_spatial_rank(attrs) -> None:
    with pytest.raises(NodeValidationError) as ex:
        _params(attrs)
    assert ex.value.reason_code == "invalid_attribute_length"


@pytest.mark.parametrize(
    "attrs, expected_text",
    [
        ({"pads": [1, 1]}, "'pads' must have 4 values for 2 spatial dims"),
        ({"strides": [1]}, "'strides' must have 2 values for 2 spatial dims"),
    ],
)
def test_attribute_length_message_names_spatial_rank(attrs, expected_text) -> None:
    with pytest.raises(NodeValidationError) as ex:
        _params(attrs)
    assert expected_text in ex.value.message


@pytest.mark.parametrize("attrs", [{"strides": [0, 1]}, {"dilations": [1, -1]}])
def test_strides_and_dilations_must_be_positive(attrs) -> None:
    with pytest.raises(NodeValidationError) as ex:
        _params(attrs)
    assert ex.value.reason_code == "unsupported_attribute_value"


def test_one_dimensional_convolution() -> None:
    params = _params(
        {"pads": [2, 0]},
        data_signature=(1, 2, 7),
        filter_shape=(2, 2, 5),
    )
    assert params.spatial_rank == 1
    assert params.padding_below == [2]
    assert params.padding_above == [0]


@pytest.mark.parametrize(
    "in_size, kernel, stride, dilation, pad_below, pad_above, expected",
    [
        (5, 3, 1, 1, 1, 1, 5),
        (5, 3, 2, 1, 1, 1, 3),
        (6, 3, 1, 2, 0, 0, 2),
        (2, 3, 1, 1, 0, 0, 0),
        (-1, 3, 1, 1, 1, 1, -1),
    ],
)
def test_conv_output_spatial_dim(
    in_size,
    kernel,
    stride,
    dilation,
    pad_below,
    pad_above,
    expected,
) -> None:
    assert conv_output_spatial_dim(
        in_size=in_size,
        kernel=kernel,
        stride=stride,
        filter_dilation=dilation,
        data_dilation=1,
        pad_below=pad_below,
        pad_above=pad_above,
    ) == expected


def test_tensor_shape_signature_falls_back_to_shape() -> None:
    model_ir = ModelIR(name="signatures")
    model_ir.tensors["dynamic"] = TensorIR(
        name="dynamic", dtype="UINT8", shape=[1, 4, 3, 3], shape_signature=[-1, 4, 3, 3],
    )
    model_ir.tensors["static"] = TensorIR(name="static", dtype="UINT8", shape=[1, 4, 3, 3])
    model_ir.tensors["mismatched"] = TensorIR(
        name="mismatched", dtype="UINT8", shape=[1, 4], shape_signature=[-1],
    )
    ctx = SimpleNamespace(model_ir=model_ir)
    assert tensor_shape_signature(ctx, "dynamic") == [-1, 4, 3, 3]
    assert tensor_shape_signature(ctx, "static") == [1, 4, 3, 3]
    assert tensor_shape_signature(ctx, "mismatched") == [1, 4]
