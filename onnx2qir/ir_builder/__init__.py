from __future__ import annotations

import os
from typing import Any, Dict

from onnx2qir.ir_builder.lower_from_onnx import (
    build_op_coverage_report,
    lower_onnx_to_ir,
    write_op_coverage_report,
)
from onnx2qir.ir_builder.model_writer import write_model_file
from onnx2qir.utils.logging import warn


def _parse_bool_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Cannot interpret {value!r} as a boolean flag.")


def _resolve_lowering_controls(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    enable_u8_fast_path = kwargs.get("enable_u8_fast_path", None)
    if enable_u8_fast_path is None:
        enable_u8_fast_path = os.environ.get("ONNX2QIR_ENABLE_U8_FAST_PATH", "1")
    return {
        "enable_u8_fast_path": _parse_bool_flag(enable_u8_fast_path),
    }


def export_qir_model(**kwargs: Any) -> Dict[str, Any]:
    output_folder_path = kwargs.get("output_folder_path", "qir_model")
    output_file_name = kwargs.get("output_file_name", "model")
    onnx_graph = kwargs.get("onnx_graph", None)
    report_op_coverage = bool(kwargs.get("report_op_coverage", False))
    disable_model_save = bool(kwargs.get("disable_model_save", False))
    lowering_controls = _resolve_lowering_controls(kwargs)

    if onnx_graph is None:
        raise ValueError("onnx_graph is required for export_qir_model.")

    op_coverage_report_path = None
    if report_op_coverage:
        op_coverage_report_path = os.path.join(
            output_folder_path,
            f"{output_file_name}_op_coverage_report.json",
        )

    def _write_coverage_report(conversion_error: str | None) -> None:
        if not report_op_coverage or op_coverage_report_path is None:
            return
        report = build_op_coverage_report(
            onnx_graph=onnx_graph,
            output_file_name=output_file_name,
            conversion_error=conversion_error,
            enable_u8_fast_path=lowering_controls["enable_u8_fast_path"],
        )
        write_op_coverage_report(
            report=report,
            output_report_path=op_coverage_report_path,
        )

    try:
        model_ir = lower_onnx_to_ir(
            onnx_graph=onnx_graph,
            output_file_name=output_file_name,
            enable_u8_fast_path=lowering_controls["enable_u8_fast_path"],
        )
    except Exception as ex:
        try:
            _write_coverage_report(str(ex))
        except Exception as report_ex:
            warn(f'op coverage report could not be written: {report_ex}')
        raise

    _write_coverage_report(None)

    model_path = None
    if not disable_model_save:
        model_path = write_model_file(
            model_ir=model_ir,
            output_json_path=os.path.join(output_folder_path, f"{output_file_name}.json"),
        )

    return {
        "model_ir": model_ir,
        "model_path": model_path,
        "op_coverage_report_path": op_coverage_report_path,
        "enable_u8_fast_path": lowering_controls["enable_u8_fast_path"],
    }
