import json

import numpy as np
import onnx
from onnx import TensorProto, helper, numpy_helper

from onnx2qir.ir_builder.lower_from_onnx import (
    build_op_coverage_report,
    write_op_coverage_report,
)
from onnx2qir.ir_builder.op_registry import get_supported_onnx_ops


def _make_model(
    *,
    group: int = 2,
    with_bias: bool = False,
    tail_op: str = "Abs",
    **conv_attrs,
) -> onnx.ModelProto:
    w = np.ones((4, 4 // group, 1, 1), dtype=np.int8)
    initializers = [
        numpy_helper.from_array(np.asarray(0.5, dtype=np.float32), name="x_scale"),
        numpy_helper.from_array(np.asarray(0, dtype=np.uint8), name="x_zero_point"),
        numpy_helper.from_array(w, name="w"),
        numpy_helper.from_array(np.asarray(0.25, dtype=np.float32), name="w_scale"),
        numpy_helper.from_array(np.asarray(0, dtype=np.int8), name="w_zero_point"),
        numpy_helper.from_array(np.asarray(1.0, dtype=np.float32), name="y_scale"),
        numpy_helper.from_array(np.asarray(0, dtype=np.uint8), name="y_zero_point"),
    ]
    inputs = [
        "x",
        "x_scale",
        "x_zero_point",
        "w",
        "w_scale",
        "w_zero_point",
        "y_scale",
        "y_zero_point",
    ]
    if with_bias:
        initializers.append(numpy_helper.from_array(np.zeros((4,), dtype=np.int32), name="bias"))
        inputs.append("bias")
    x = helper.make_tensor_value_info("x", TensorProto.UINT8, [1, 4, 3, 3])
    z = helper.make_tensor_value_info("z", TensorProto.UINT8, [1, 4, 3, 3])
    nodes = [
        helper.make_node("QLinearConv", inputs, ["y"], name="QConvNode", group=group, **conv_attrs),
        helper.make_node("Identity", ["y"], ["y_id"], name="IdentityNode"),
        helper.make_node(tail_op, ["y_id"], ["z"], name="TailNode"),
    ]
    graph = helper.make_graph(nodes, "coverage_graph", [x], [z], initializer=initializers)
    return helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])


def test_op_coverage_report_keys_snapshot() -> None:
    report = build_op_coverage_report(
        onnx_graph=_make_model(),
        output_file_name="coverage_snapshot",
    )
    assert sorted(report.keys()) == [
        "conversion_error",
        "graph_node_reports",
        "graph_ops",
        "graph_summary",
        "graph_supported_ops",
        "graph_unsupported_ops",
        "schema_version",
        "supported_ops",
        "unsupported_nodes",
        "unsupported_reason_counts",
    ]
    assert report["schema_version"] == 1
    assert report["supported_ops"] == get_supported_onnx_ops()
    assert report["supported_ops"] == ["Identity", "QLinearConv"]


def test_op_coverage_report_counts_unsupported_ops() -> None:
    report = build_op_coverage_report(
        onnx_graph=_make_model(tail_op="Abs"),
        output_file_name="coverage_unsupported",
    )
    assert report["graph_ops"] == ["Abs", "Identity", "QLinearConv"]
    assert report["graph_supported_ops"] == ["Identity", "QLinearConv"]
    assert report["graph_unsupported_ops"] == ["Abs"]
    assert report["graph_summary"] == {
        "total_nodes": 3,
        "supported_nodes": 2,
        "unsupported_nodes": 1,
        "coverage_ratio": 2.0 / 3.0,
    }
    assert report["unsupported_reason_counts"] == {"unsupported_onnx_op": 1}
    issue = report["unsupported_nodes"][0]
    assert issue["node_name"] == "TailNode"
    assert issue["onnx_op"] == "Abs"
    assert issue["supported"] is False
    assert issue["dispatch_mode"] == "unsupported"
    assert report["conversion_error"] is None


def test_op_coverage_report_flags_grouped_bias() -> None:
    report = build_op_coverage_report(
        onnx_graph=_make_model(with_bias=True, tail_op="Identity"),
        output_file_name="coverage_grouped_bias",
        conversion_error="lowering failed",
    )
    assert report["unsupported_reason_counts"] == {
        "unsupported_grouped_convolution_with_bias": 1,
    }
    assert report["unsupported_nodes"][0]["node_name"] == "QConvNode"
    assert report["conversion_error"] == "lowering failed"


def test_op_coverage_report_flags_conv_attribute_errors() -> None:
    report = build_op_coverage_report(
        onnx_graph=_make_model(tail_op="Identity", pads=[1, 1]),
        output_file_name="coverage_bad_pads",
    )
    assert report["unsupported_reason_counts"] == {"invalid_attribute_length": 1}
    assert report["graph_summary"]["supported_nodes"] == 2
    issue = report["unsupported_nodes"][0]
    assert issue["node_name"] == "QConvNode"
    assert "4 values for 2 spatial dims" in issue["message"]

    report = build_op_coverage_report(
        onnx_graph=_make_model(tail_op="Identity", strides=[0, 0]),
        output_file_name="coverage_zero_strides",
    )
    assert report["unsupported_reason_counts"] == {"unsupported_attribute_value": 1}
    assert report["unsupported_nodes"][0]["node_name"] == "QConvNode"


def test_op_coverage_report_marks_supported_dispatch() -> None:
    report = build_op_coverage_report(
        onnx_graph=_make_model(tail_op="Identity"),
        output_file_name="coverage_all_supported",
    )
    assert report["unsupported_nodes"] == []
    assert report["graph_summary"]["coverage_ratio"] == 1.0
    for node_report in report["graph_node_reports"]:
        assert node_report["supported"] is True
        assert node_report["dispatch_mode"] == "builtin"


def test_write_op_coverage_report(tmp_path) -> None:
    report = build_op_coverage_report(
        onnx_graph=_make_model(),
        output_file_name="coverage_write",
    )
    output_path = write_op_coverage_report(
        report=report,
        output_report_path=str(tmp_path / "nested" / "coverage.json"),
    )
    with open(output_path, "r", encoding="utf-8") as f:
        loaded = json.load(f)
    assert loaded["graph_summary"]["total_nodes"] == 3
    assert loaded["unsupported_reason_counts"] == {"unsupported_onnx_op": 1}
