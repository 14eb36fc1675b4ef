from onnx2qir.onnx2qir import convert, main

__version__ = '0.1.0'
