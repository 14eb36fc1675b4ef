from __future__ import annotations

from copy import deepcopy
import json
import os
from typing import Any, Dict, List, Optional

import numpy as np

from onnx2qir.ir_builder.ir import ModelIR, OperatorIR, TensorIR

SCHEMA_VERSION = 1
CONSTANT_KEY_PREFIX = "const_"


def _require_tensor_names(
    *,
    tensors: Dict[str, TensorIR],
    tensor_names: List[str],
    op_type: str,
    tensor_role: str,
) -> List[str]:
    for name in tensor_names:
        if name not in tensors:
            raise KeyError(
                f"Tensor is missing for {tensor_role}: name={name}, op={op_type}"
            )
    return list(tensor_names)


def _prune_unused_tensors_in_place(model_ir: ModelIR) -> None:
    used_tensor_names = set(model_ir.inputs + model_ir.outputs)
    for op in model_ir.operators:
        used_tensor_names.update(op.inputs)
        used_tensor_names.update(op.outputs)
    unused_tensor_names = [
        name for name in model_ir.tensors.keys() if name not in used_tensor_names
    ]
    for tensor_name in unused_tensor_names:
        del model_ir.tensors[tensor_name]


def _prune_dead_operators_in_place(model_ir: ModelIR) -> None:
    if len(model_ir.operators) == 0:
        return

    live_tensors = set(model_ir.outputs)
    keep_flags = [False for _ in model_ir.operators]

    for op_idx in range(len(model_ir.operators) - 1, -1, -1):
        op = model_ir.operators[op_idx]
        if len(op.outputs) == 0:
            continue
        if any(output_name in live_tensors for output_name in op.outputs):
            keep_flags[op_idx] = True
            for input_name in op.inputs:
                live_tensors.add(input_name)

    if all(keep_flags):
        return

    model_ir.operators = [
        op for idx, op in enumerate(model_ir.operators) if keep_flags[idx]
    ]


def _sanitize_model_ir_for_serialization(model_ir: ModelIR) -> ModelIR:
    # Serialization must not touch the caller's ModelIR.
    sanitized_model_ir = deepcopy(model_ir)
    _prune_dead_operators_in_place(sanitized_model_ir)
    _prune_unused_tensors_in_place(sanitized_model_ir)
    return sanitized_model_ir


def _constant_keys(tensors: Dict[str, TensorIR]) -> Dict[str, str]:
    # Archive keys are positional so tensor names never reach np.savez as keywords.
    constant_names = [name for name, tensor in tensors.items() if tensor.data is not None]
    return {name: f"{CONSTANT_KEY_PREFIX}{idx}" for idx, name in enumerate(constant_names)}


def _tensor_to_dict(tensor: TensorIR, constant_key: Optional[str]) -> Dict[str, Any]:
    return {
        "name": tensor.name,
        "dtype": tensor.dtype,
        "shape": [int(v) for v in tensor.shape],
        "shape_signature": (
            [int(v) for v in tensor.shape_signature]
            if tensor.shape_signature is not None
            else [int(v) for v in tensor.shape]
        ),
        "is_constant": tensor.data is not None,
        "constant_key": constant_key,
    }


def _operator_to_dict(op: OperatorIR, tensors: Dict[str, TensorIR]) -> Dict[str, Any]:
    return {
        "op_type": op.op_type,
        "version": int(op.version),
        "inputs": _require_tensor_names(
            tensors=tensors,
            tensor_names=op.inputs,
            op_type=op.op_type,
            tensor_role="input",
        ),
        "outputs": _require_tensor_names(
            tensors=tensors,
            tensor_names=op.outputs,
            op_type=op.op_type,
            tensor_role="output",
        ),
        "options": deepcopy(op.options),
    }


def serialize_model(model_ir: ModelIR) -> Dict[str, Any]:
    """Graph structure of `model_ir` as a JSON-ready dict.

    Constant payloads are not included. "constants" maps each archive key
    of `collect_constants` to its tensor name.
    """
    sanitized_model_ir = _sanitize_model_ir_for_serialization(model_ir)
    tensors = sanitized_model_ir.tensors
    constant_keys = _constant_keys(tensors)
    return {
        "schema_version": SCHEMA_VERSION,
        "name": sanitized_model_ir.name,
        "description": sanitized_model_ir.description,
        "inputs": _require_tensor_names(
            tensors=tensors,
            tensor_names=sanitized_model_ir.inputs,
            op_type="MODEL",
            tensor_role="graph input",
        ),
        "outputs": _require_tensor_names(
            tensors=tensors,
            tensor_names=sanitized_model_ir.outputs,
            op_type="MODEL",
            tensor_role="graph output",
        ),
        "tensors": [
            _tensor_to_dict(t, constant_keys.get(name, None))
            for name, t in tensors.items()
        ],
        "operators": [_operator_to_dict(op, tensors) for op in sanitized_model_ir.operators],
        "constants": {key: name for name, key in constant_keys.items()},
    }


def collect_constants(model_ir: ModelIR) -> Dict[str, np.ndarray]:
    sanitized_model_ir = _sanitize_model_ir_for_serialization(model_ir)
    tensors = sanitized_model_ir.tensors
    return {
        key: np.asarray(tensors[name].data)
        for name, key in _constant_keys(tensors).items()
    }


def write_model_file(
    *,
    model_ir: ModelIR,
    output_json_path: str,
) -> str:
    os.makedirs(os.path.dirname(output_json_path) or ".", exist_ok=True)
    model_dict = serialize_model(model_ir)
    with open(output_json_path, "w", encoding="utf-8") as f:
        json.dump(model_dict, f, ensure_ascii=False, indent=2)

    constants = collect_constants(model_ir)
    if len(constants) > 0:
        constants_path = f"{os.path.splitext(output_json_path)[0]}_constants.npz"
        np.savez(constants_path, **constants)
    return output_json_path
