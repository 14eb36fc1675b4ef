from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import onnx
from onnx import numpy_helper

from onnx2qir.ir_builder.ir import (
    ModelIR,
    TensorIR,
    normalize_onnx_shape,
)
from onnx2qir.ir_builder.op_registry import (
    NodeNotSupportedError,
    NodeValidationError,
    get_supported_onnx_ops,
    resolve_node_dispatch,
)
from onnx2qir.utils.enums import (
    NUMPY_DTYPES_TO_IR_DTYPES,
    ONNX_DTYPES_TO_IR_DTYPES,
)
from onnx2qir.utils.logging import debug, info


def ir_dtype_from_numpy(np_dtype: np.dtype) -> str:
    np_dtype = np.dtype(np_dtype)
    if np_dtype not in NUMPY_DTYPES_TO_IR_DTYPES:
        raise NotImplementedError(f"Unsupported numpy dtype for onnx2qir: {np_dtype}")
    return NUMPY_DTYPES_TO_IR_DTYPES[np_dtype]


def _dtype_from_onnx_elem_type(elem_type: Optional[int]) -> str:
    if elem_type is None:
        return "FLOAT32"
    if elem_type not in ONNX_DTYPES_TO_IR_DTYPES:
        raise NotImplementedError(f"Unsupported ONNX dtype for onnx2qir: elem_type={elem_type}")
    return ONNX_DTYPES_TO_IR_DTYPES[elem_type]


def _extract_tensor_info(
    onnx_graph: onnx.ModelProto,
) -> Tuple[Dict[str, List[Any]], Dict[str, str]]:
    shape_map: Dict[str, List[Any]] = {}
    dtype_map: Dict[str, str] = {}

    def _fill_value_info(value_info):
        if not value_info.type.HasField("tensor_type"):
            return
        name = value_info.name
        tensor_type = value_info.type.tensor_type
        if tensor_type.HasField("shape"):
            dims: List[Any] = []
            for d in tensor_type.shape.dim:
                if d.HasField("dim_value") and d.dim_value >= 0:
                    dims.append(int(d.dim_value))
                else:
                    dims.append(-1)
            shape_map[name] = dims
        if tensor_type.elem_type != onnx.TensorProto.UNDEFINED:
            dtype_map[name] = _dtype_from_onnx_elem_type(tensor_type.elem_type)

    for vi in onnx_graph.graph.input:
        _fill_value_info(vi)
    for vi in onnx_graph.graph.value_info:
        _fill_value_info(vi)
    for vi in onnx_graph.graph.output:
        _fill_value_info(vi)

    for ini in onnx_graph.graph.initializer:
        arr = numpy_helper.to_array(ini)
        shape_map[ini.name] = list(arr.shape)
        dtype_map[ini.name] = ir_dtype_from_numpy(arr.dtype)

    return shape_map, dtype_map


def _graph_has_missing_rank_info(onnx_graph: onnx.ModelProto) -> bool:
    value_infos = (
        list(onnx_graph.graph.input)
        + list(onnx_graph.graph.value_info)
        + list(onnx_graph.graph.output)
    )
    for vi in value_infos:
        if not vi.type.HasField("tensor_type"):
            continue
        if not vi.type.tensor_type.HasField("shape"):
            return True
    return False


def _infer_shapes_with_fallback(onnx_graph: onnx.ModelProto) -> onnx.ModelProto:
    inferred_graph = onnx_graph
    try:
        inferred_graph = onnx.shape_inference.infer_shapes(inferred_graph)
    except Exception as ex:
        debug(f'onnx shape inference failed, keeping declared shapes: {ex}')

    if not _graph_has_missing_rank_info(inferred_graph):
        return inferred_graph

    try:
        from onnxruntime.tools.symbolic_shape_infer import SymbolicShapeInference
    except ImportError:
        return inferred_graph

    try:
        return SymbolicShapeInference.infer_shapes(
            inferred_graph,
            auto_merge=True,
            guess_output_rank=True,
        )
    except Exception as ex:
        debug(f'symbolic shape inference failed, keeping declared shapes: {ex}')
        return inferred_graph


class LoweringContext:
    def __init__(
        self,
        model_ir: ModelIR,
        shape_map: Dict[str, List[Any]],
        dtype_map: Dict[str, str],
        constants: Dict[str, np.ndarray],
        enable_u8_fast_path: bool = True,
    ):
        self.model_ir = model_ir
        self.shape_map = shape_map
        self.dtype_map = dtype_map
        self.constants = constants
        self.enable_u8_fast_path = bool(enable_u8_fast_path)
        self._serial = 0

    def _next_name(self, base: str) -> str:
        self._serial += 1
        return f"{base}_{self._serial}"

    def get_tensor_shape(self, name: str) -> List[int]:
        if name in self.model_ir.tensors:
            return list(self.model_ir.tensors[name].shape)
        shape = self.shape_map.get(name, None)
        norm_shape, _ = normalize_onnx_shape(shape)
        return norm_shape

    def get_tensor_signature(self, name: str) -> List[int]:
        if name in self.model_ir.tensors:
            tensor = self.model_ir.tensors[name]
            if tensor.shape_signature is not None:
                return list(tensor.shape_signature)
            return list(tensor.shape)
        _, signature = normalize_onnx_shape(self.shape_map.get(name, None))
        return signature

    def get_tensor_dtype(self, name: str) -> str:
        if name in self.model_ir.tensors:
            return self.model_ir.tensors[name].dtype
        return self.dtype_map.get(name, "FLOAT32")

    def ensure_tensor(self, name: str, dtype: Optional[str] = None, shape: Optional[List[int]] = None) -> str:
        if name == "":
            raise ValueError("Tensor name must not be empty in onnx2qir lowering.")
        if name in self.model_ir.tensors:
            return name
        if dtype is None:
            dtype = self.dtype_map.get(name, "FLOAT32")
        if shape is None:
            shape = self.shape_map.get(name, None)
        shape, signature = normalize_onnx_shape(shape)
        self.model_ir.tensors[name] = TensorIR(
            name=name,
            dtype=dtype,
            shape=list(shape),
            shape_signature=list(signature),
            data=self.constants.get(name, None),
        )
        return name

    def add_const_tensor(self, base_name: str, data: np.ndarray) -> str:
        name = base_name
        if name in self.model_ir.tensors:
            name = self._next_name(base_name)
        data = np.asarray(data)
        dtype = ir_dtype_from_numpy(data.dtype)
        shape, signature = normalize_onnx_shape(list(data.shape))
        self.model_ir.tensors[name] = TensorIR(
            name=name,
            dtype=dtype,
            shape=shape,
            shape_signature=signature,
            data=data,
        )
        self.constants[name] = data
        return name

    def add_intermediate_tensor(self, base_name: str, dtype: str, shape: List[int]) -> str:
        if base_name == "":
            raise ValueError("Tensor name must not be empty in onnx2qir lowering.")
        name = base_name
        if name in self.model_ir.tensors:
            name = self._next_name(base_name)
        norm_shape, signature = normalize_onnx_shape(shape)
        self.model_ir.tensors[name] = TensorIR(
            name=name,
            dtype=dtype,
            shape=norm_shape,
            shape_signature=signature,
            data=None,
        )
        return name

    def add_operator(self, op) -> None:
        self.model_ir.operators.append(op)


class _NodeWrap:
    def __init__(self, n: onnx.NodeProto):
        self.name = n.name if n.name else n.op_type
        self.op = n.op_type
        self.attrs = {}
        for a in n.attribute:
            if a.type == onnx.AttributeProto.INT:
                self.attrs[a.name] = int(a.i)
            elif a.type == onnx.AttributeProto.FLOAT:
                self.attrs[a.name] = float(a.f)
            elif a.type == onnx.AttributeProto.INTS:
                self.attrs[a.name] = [int(v) for v in a.ints]
            elif a.type == onnx.AttributeProto.FLOATS:
                self.attrs[a.name] = [float(v) for v in a.floats]
            elif a.type == onnx.AttributeProto.STRING:
                self.attrs[a.name] = a.s.decode("utf-8")
        # Inputs stay positional: an empty name marks an omitted optional input.
        inputs = list(n.input)
        while len(inputs) > 0 and inputs[-1] == "":
            inputs.pop()
        self.inputs = [type("In", (), {"name": i}) for i in inputs]
        self.outputs = [type("Out", (), {"name": o}) for o in n.output if o != ""]


def _prune_dead_operators(model_ir: ModelIR) -> Dict[str, int]:
    live_tensors = set(model_ir.outputs)
    keep_flags = [False for _ in model_ir.operators]
    for op_idx in range(len(model_ir.operators) - 1, -1, -1):
        op = model_ir.operators[op_idx]
        if any(output_name in live_tensors for output_name in op.outputs):
            keep_flags[op_idx] = True
            for input_name in op.inputs:
                live_tensors.add(input_name)
    removed = len([flag for flag in keep_flags if not flag])
    if removed > 0:
        model_ir.operators = [
            op for idx, op in enumerate(model_ir.operators) if keep_flags[idx]
        ]
    return {"removed_operators": int(removed)}


def _constant_node_value(node: onnx.NodeProto) -> np.ndarray:
    for attr in node.attribute:
        if attr.name == "value":
            return np.asarray(numpy_helper.to_array(attr.t))
    raise NotImplementedError(f"Constant node without value is not supported. op={node.name}")


def _register_constant_node(
    *,
    ctx: LoweringContext,
    node: onnx.NodeProto,
) -> None:
    model_ir = ctx.model_ir
    output_name = node.output[0]
    const_array = _constant_node_value(node)
    if output_name in model_ir.tensors:
        t = model_ir.tensors[output_name]
        t.data = const_array
        t.dtype = ir_dtype_from_numpy(const_array.dtype)
        t.shape, t.shape_signature = normalize_onnx_shape(list(const_array.shape))
        ctx.constants[output_name] = const_array
    else:
        ctx.add_const_tensor(output_name, const_array)


def _make_lowering_context(
    *,
    onnx_graph: onnx.ModelProto,
    output_file_name: str,
    enable_u8_fast_path: bool,
) -> LoweringContext:
    shape_map, dtype_map = _extract_tensor_info(onnx_graph)
    constants: Dict[str, np.ndarray] = {}
    for ini in onnx_graph.graph.initializer:
        constants[ini.name] = np.asarray(numpy_helper.to_array(ini))

    model_ir = ModelIR(name=output_file_name)
    ctx = LoweringContext(
        model_ir=model_ir,
        shape_map=shape_map,
        dtype_map=dtype_map,
        constants=constants,
        enable_u8_fast_path=enable_u8_fast_path,
    )

    # Inputs
    initializer_names = {ini.name for ini in onnx_graph.graph.initializer}
    for graph_input in onnx_graph.graph.input:
        if graph_input.name in initializer_names:
            continue
        ctx.ensure_tensor(graph_input.name)
        model_ir.inputs.append(graph_input.name)

    # Initializers as tensors
    for name, value in list(constants.items()):
        if name not in model_ir.tensors:
            ctx.add_const_tensor(name, value)
    return ctx


def build_op_coverage_report(
    *,
    onnx_graph: onnx.ModelProto,
    output_file_name: str,
    conversion_error: Optional[str] = None,
    enable_u8_fast_path: bool = True,
) -> Dict[str, Any]:
    onnx_graph = _infer_shapes_with_fallback(onnx_graph)
    ctx = _make_lowering_context(
        onnx_graph=onnx_graph,
        output_file_name=output_file_name,
        enable_u8_fast_path=enable_u8_fast_path,
    )

    node_reports: List[Dict[str, Any]] = []
    unsupported_nodes: List[Dict[str, Any]] = []
    graph_unique_ops: set = set()
    for node in onnx_graph.graph.node:
        node_name = node.name if node.name else node.op_type
        graph_unique_ops.add(node.op_type)
        if node.op_type == "Constant":
            _register_constant_node(ctx=ctx, node=node)
            node_reports.append(
                {
                    "node_name": node_name,
                    "onnx_op": "Constant",
                    "supported": True,
                    "reason_code": "handled_inline",
                    "message": "Constant node is handled inline in lowering pass.",
                }
            )
            continue

        wrapped = _NodeWrap(node)
        try:
            resolution = resolve_node_dispatch(wrapped, ctx)
            node_reports.append(
                {
                    "node_name": node_name,
                    "onnx_op": node.op_type,
                    "supported": True,
                    "dispatch_mode": str(resolution.dispatch_mode),
                    "reason_code": None,
                    "message": None,
                }
            )
        except (NodeValidationError, NodeNotSupportedError) as ve:
            issue = ve.to_dict()
            issue["supported"] = False
            issue["dispatch_mode"] = "unsupported"
            node_reports.append(issue)
            unsupported_nodes.append(issue)

    reason_counts: Dict[str, int] = {}
    for issue in unsupported_nodes:
        reason = str(issue.get("reason_code", "unknown"))
        reason_counts[reason] = int(reason_counts.get(reason, 0) + 1)

    total_nodes = len(node_reports)
    supported_nodes = len([r for r in node_reports if r["supported"] is True])
    coverage = float(supported_nodes / total_nodes) if total_nodes > 0 else 1.0
    report: Dict[str, Any] = {
        "schema_version": 1,
        "supported_ops": get_supported_onnx_ops(),
        "graph_ops": sorted(graph_unique_ops),
        "graph_supported_ops": sorted(
            list({r["onnx_op"] for r in node_reports if r["supported"] is True})
        ),
        "graph_unsupported_ops": sorted(
            list({r["onnx_op"] for r in node_reports if r["supported"] is False})
        ),
        "graph_node_reports": node_reports,
        "unsupported_nodes": unsupported_nodes,
        "unsupported_reason_counts": reason_counts,
        "graph_summary": {
            "total_nodes": int(total_nodes),
            "supported_nodes": int(supported_nodes),
            "unsupported_nodes": int(total_nodes - supported_nodes),
            "coverage_ratio": float(coverage),
        },
        "conversion_error": conversion_error,
    }
    return report


def write_op_coverage_report(
    *,
    report: Dict[str, Any],
    output_report_path: str,
) -> str:
    os.makedirs(os.path.dirname(output_report_path) or ".", exist_ok=True)
    with open(output_report_path, "w", encoding="utf-8") as f:
        json.dump(report, f, ensure_ascii=False, indent=2)
    return output_report_path


def lower_onnx_to_ir(
    onnx_graph: onnx.ModelProto,
    output_file_name: str,
    enable_u8_fast_path: bool = True,
) -> ModelIR:
    onnx_graph = _infer_shapes_with_fallback(onnx_graph)
    ctx = _make_lowering_context(
        onnx_graph=onnx_graph,
        output_file_name=output_file_name,
        enable_u8_fast_path=enable_u8_fast_path,
    )
    model_ir = ctx.model_ir

    # Nodes
    for node in onnx_graph.graph.node:
        if node.op_type == "Constant":
            _register_constant_node(ctx=ctx, node=node)
            continue

        wrapped = _NodeWrap(node)
        try:
            resolution = resolve_node_dispatch(wrapped, ctx)
            resolution.entry.builder(wrapped, ctx)
        except NodeValidationError as ve:
            raise NotImplementedError(
                f"onnx2qir validation failed: "
                f"op={ve.node_op} node={ve.node_name} "
                f"reason_code={ve.reason_code} message={ve.message}"
            ) from ve
        except NodeNotSupportedError as ne:
            raise NotImplementedError(
                f"onnx2qir lowering is not supported: "
                f"op={ne.node_op} node={ne.node_name} "
                f"reason_code={ne.reason_code} message={ne.message}"
            ) from ne

    # Outputs
    for graph_output in onnx_graph.graph.output:
        ctx.ensure_tensor(graph_output.name)
        model_ir.outputs.append(graph_output.name)

    pruned = _prune_dead_operators(model_ir)
    info(
        f'lowered model: {model_ir.name} '
        f'operators: {len(model_ir.operators)} '
        f'tensors: {len(model_ir.tensors)} '
        f'pruned_operators: {pruned["removed_operators"]}'
    )
    return model_ir
