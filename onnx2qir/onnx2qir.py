#! /usr/bin/env python

import os
import re
__path__ = (os.path.dirname(__file__), )
with open(os.path.join(__path__[0], '__init__.py')) as f:
    init_text = f.read()
    __version__ = re.search(r'__version__\s*=\s*[\'\"](.+?)[\'\"]', init_text).group(1)
import sys
import onnx
from typing import Optional
from argparse import ArgumentParser

from onnx2qir.ir_builder import export_qir_model
from onnx2qir.ir_builder.ir import ModelIR
from onnx2qir.utils.logging import *


def convert(
    input_onnx_file_path: Optional[str] = None,
    onnx_graph: Optional[onnx.ModelProto] = None,
    output_folder_path: Optional[str] = 'qir_model',
    output_file_name: Optional[str] = None,
    report_op_coverage: Optional[bool] = False,
    enable_u8_fast_path: Optional[bool] = None,
    disable_model_save: Optional[bool] = False,
    non_verbose: Optional[bool] = False,
    verbosity: Optional[str] = 'debug',
) -> ModelIR:
    """Lower an ONNX model with QLinearConv nodes to the quantized IR.

    Parameters
    ----------
    input_onnx_file_path: Optional[str]
        Input onnx file path.\n
        Either input_onnx_file_path or onnx_graph must be specified.

    onnx_graph: Optional[onnx.ModelProto]
        onnx.ModelProto.\n
        Either input_onnx_file_path or onnx_graph must be specified.\n
        onnx_graph If specified, ignore input_onnx_file_path and process onnx_graph.

    output_folder_path: Optional[str]
        Output folder path.\n
        Default: "qir_model"

    output_file_name: Optional[str]
        Base name of the written files.\n
        Default: the onnx file name without extension, or "model".

    report_op_coverage: Optional[bool]
        Write {output_file_name}_op_coverage_report.json listing every node,\n
        whether it can be lowered and why not.

    enable_u8_fast_path: Optional[bool]
        Lower group == 1 QLinearConv with uint8 filters and no bias to the\n
        six-operand QLINEAR_CONVOLUTION primitive.\n
        Default: environment variable ONNX2QIR_ENABLE_U8_FAST_PATH, "1" when unset.

    disable_model_save: Optional[bool]
        Do not write the converted model to output_folder_path.

    non_verbose: Optional[bool]
        Shorthand to display only error-level messages.

    verbosity: Optional[str]
        Change the level of information printed.\n
        Values are "debug", "info", "warn", and "error".\n
        Default: "debug"

    Returns
    ----------
    model_ir: ModelIR
        Lowered model
    """

    if verbosity is None:
        verbosity = 'debug'
    set_log_level('error' if non_verbose else verbosity)

    # Either designation required
    if not input_onnx_file_path and onnx_graph is None:
        error(
            f'One of input_onnx_file_path or onnx_graph must be specified.'
        )
        sys.exit(1)

    # If output_folder_path is empty, set the initial value
    if not output_folder_path:
        output_folder_path = 'qir_model'

    # Input file existence check
    if onnx_graph is None and not os.path.exists(input_onnx_file_path):
        error(
            f'The specified *.onnx file does not exist. ' +
            f'input_onnx_file_path: {input_onnx_file_path}'
        )
        sys.exit(1)

    # Extracting onnx filenames
    if not output_file_name:
        if input_onnx_file_path and onnx_graph is None:
            output_file_name = os.path.splitext(
                os.path.basename(input_onnx_file_path)
            )[0]
        else:
            output_file_name = 'model'

    if onnx_graph is None:
        onnx_graph = onnx.load(input_onnx_file_path)

    info(Color.REVERSE(f'Model lowering started'), '=' * 60)
    try:
        outputs = export_qir_model(
            onnx_graph=onnx_graph,
            output_folder_path=output_folder_path,
            output_file_name=output_file_name,
            report_op_coverage=report_op_coverage,
            enable_u8_fast_path=enable_u8_fast_path,
            disable_model_save=disable_model_save,
        )
    except (NotImplementedError, ValueError) as ex:
        error(f'Model lowering failed. {ex}')
        raise

    model_ir = outputs['model_ir']
    if outputs['op_coverage_report_path'] is not None:
        info(
            Color.GREEN(f'Op coverage report output complete!'),
            outputs['op_coverage_report_path'],
        )
    if outputs['model_path'] is not None:
        info(
            Color.GREEN(f'Model output complete!'),
            outputs['model_path'],
        )
    return model_ir


def main():
    parser = ArgumentParser()
    iV_group = parser.add_mutually_exclusive_group(required=True)
    iV_group.add_argument(
        '-i',
        '--input_onnx_file_path',
        type=str,
        help='Input onnx file path.'
    )
    iV_group.add_argument(
        '-V',
        '--version',
        action='store_true',
        help='Show version and exit.'
    )
    parser.add_argument(
        '-o',
        '--output_folder_path',
        type=str,
        help=\
            'Output folder path. \n' +
            'Default: "qir_model"'
    )
    parser.add_argument(
        '-ofn',
        '--output_file_name',
        type=str,
        help=\
            'Base name of the written files. \n' +
            'Default: the onnx file name without extension.'
    )
    parser.add_argument(
        '-rc',
        '--report_op_coverage',
        action='store_true',
        help=\
            'Write {output_file_name}_op_coverage_report.json with the lowering \n' +
            'status of every node.'
    )
    parser.add_argument(
        '-dfp',
        '--disable_u8_fast_path',
        action='store_true',
        help=\
            'Lower uint8 QLinearConv without bias through the three-scale primitive \n' +
            'instead of the six-operand QLINEAR_CONVOLUTION primitive.'
    )
    parser.add_argument(
        '-dms',
        '--disable_model_save',
        action='store_true',
        help='Does not save the converted model.'
    )
    parser.add_argument(
        '-n',
        '--non_verbose',
        action='store_true',
        help='Shorthand to specify a verbosity of "error".'
    )
    parser.add_argument(
        '-v',
        '--verbosity',
        type=str,
        choices=['debug', 'info', 'warn', 'error'],
        default='debug',
        help=\
            'Change the level of information printed. \n' +
            'Default: "debug"'
    )
    args = parser.parse_args()

    # Print version
    if args.version:
        print(__version__)
        sys.exit(0)

    # Convert
    convert(
        input_onnx_file_path=args.input_onnx_file_path,
        output_folder_path=args.output_folder_path,
        output_file_name=args.output_file_name,
        report_op_coverage=args.report_op_coverage,
        enable_u8_fast_path=False if args.disable_u8_fast_path else None,
        disable_model_save=args.disable_model_save,
        non_verbose=args.non_verbose,
        verbosity=args.verbosity,
    )


if __name__ == '__main__':
    main()
