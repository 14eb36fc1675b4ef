import json
import os

import numpy as np
import pytest

from onnx2qir.ir_builder.ir import ModelIR, OperatorIR, TensorIR
from onnx2qir.ir_builder.model_writer import serialize_model, write_model_file


def _make_model_ir(with_dead_branch: bool = True) -> ModelIR:
    model_ir = ModelIR(name="writer_model")
    model_ir.tensors["x"] = TensorIR(name="x", dtype="UINT8", shape=[1, 4], shape_signature=[-1, 4])
    model_ir.tensors["shape"] = TensorIR(
        name="shape",
        dtype="INT32",
        shape=[2],
        shape_signature=[2],
        data=np.asarray([1, 4], dtype=np.int32),
    )
    model_ir.tensors["y"] = TensorIR(name="y", dtype="UINT8", shape=[1, 4], shape_signature=[-1, 4])
    model_ir.operators.append(
        OperatorIR(
            op_type="RESHAPE",
            inputs=["x", "shape"],
            outputs=["y"],
            options={"newShape": [1, 4]},
        )
    )
    if with_dead_branch:
        model_ir.tensors["dead"] = TensorIR(name="dead", dtype="UINT8", shape=[1, 4])
        model_ir.operators.append(
            OperatorIR(
                op_type="RESHAPE",
                inputs=["x", "shape"],
                outputs=["dead"],
                options={"newShape": [1, 4]},
            )
        )
    model_ir.inputs = ["x"]
    model_ir.outputs = ["y"]
    return model_ir


def test_serialize_model_prunes_on_a_copy() -> None:
    model_ir = _make_model_ir()
    model_dict = serialize_model(model_ir)

    assert model_dict["name"] == "writer_model"
    assert model_dict["description"] == "onnx2qir"
    assert model_dict["inputs"] == ["x"]
    assert model_dict["outputs"] == ["y"]
    assert [op["op_type"] for op in model_dict["operators"]] == ["RESHAPE"]
    assert model_dict["operators"][0]["options"] == {"newShape": [1, 4]}
    assert sorted(t["name"] for t in model_dict["tensors"]) == ["shape", "x", "y"]
    by_name = {t["name"]: t for t in model_dict["tensors"]}
    assert by_name["x"]["shape_signature"] == [-1, 4]
    assert by_name["shape"]["is_constant"] is True
    assert by_name["x"]["is_constant"] is False
    assert by_name["x"]["constant_key"] is None
    assert model_dict["constants"] == {by_name["shape"]["constant_key"]: "shape"}

    assert len(model_ir.operators) == 2
    assert "dead" in model_ir.tensors


def test_serialize_model_rejects_unknown_tensor() -> None:
    model_ir = _make_model_ir(with_dead_branch=False)
    model_ir.operators[0].inputs = ["x", "missing"]
    with pytest.raises(KeyError, match="missing"):
        serialize_model(model_ir)


def test_write_model_file_writes_json_and_constants(tmp_path) -> None:
    model_ir = _make_model_ir()
    output_path = write_model_file(
        model_ir=model_ir,
        output_json_path=str(tmp_path / "out" / "writer_model.json"),
    )
    with open(output_path, "r", encoding="utf-8") as f:
        loaded = json.load(f)
    assert [op["op_type"] for op in loaded["operators"]] == ["RESHAPE"]

    constants_path = tmp_path / "out" / "writer_model_constants.npz"
    assert constants_path.exists()
    with np.load(str(constants_path)) as constants:
        assert sorted(constants.files) == sorted(loaded["constants"].keys())
        arrays = {name: constants[key] for key, name in loaded["constants"].items()}
    np.testing.assert_array_equal(arrays["shape"], np.asarray([1, 4], dtype=np.int32))


def test_write_model_file_skips_empty_constants(tmp_path) -> None:
    model_ir = ModelIR(name="no_constants")
    model_ir.tensors["x"] = TensorIR(name="x", dtype="UINT8", shape=[1, 4])
    model_ir.inputs = ["x"]
    model_ir.outputs = ["x"]
    output_path = write_model_file(
        model_ir=model_ir,
        output_json_path=str(tmp_path / "no_constants.json"),
    )
    assert os.path.exists(output_path)
    assert not (tmp_path / "no_constants_constants.npz").exists()


def test_write_model_file_keeps_constants_named_like_savez_keywords(tmp_path) -> None:
    model_ir = ModelIR(name="keyword_names")
    model_ir.tensors["x"] = TensorIR(name="x", dtype="INT32", shape=[2])
    model_ir.tensors["file"] = TensorIR(
        name="file",
        dtype="INT32",
        shape=[2],
        data=np.asarray([3, 4], dtype=np.int32),
    )
    model_ir.tensors["allow_pickle"] = TensorIR(
        name="allow_pickle",
        dtype="FLOAT32",
        shape=[1],
        data=np.asarray([0.5], dtype=np.float32),
    )
    model_ir.tensors["y"] = TensorIR(name="y", dtype="INT32", shape=[2])
    model_ir.operators.append(
        OperatorIR(op_type="ADD", inputs=["x", "file"], outputs=["tmp"])
    )
    model_ir.tensors["tmp"] = TensorIR(name="tmp", dtype="INT32", shape=[2])
    model_ir.operators.append(
        OperatorIR(op_type="MUL", inputs=["tmp", "allow_pickle"], outputs=["y"])
    )
    model_ir.inputs = ["x"]
    model_ir.outputs = ["y"]

    output_path = write_model_file(
        model_ir=model_ir,
        output_json_path=str(tmp_path / "keyword_names.json"),
    )
    with open(output_path, "r", encoding="utf-8") as f:
        loaded = json.load(f)
    assert sorted(loaded["constants"].values()) == ["allow_pickle", "file"]

    with np.load(str(tmp_path / "keyword_names_constants.npz")) as constants:
        arrays = {name: constants[key] for key, name in loaded["constants"].items()}
    np.testing.assert_array_equal(arrays["file"], np.asarray([3, 4], dtype=np.int32))
    np.testing.assert_array_equal(arrays["allow_pickle"], np.asarray([0.5], dtype=np.float32))
