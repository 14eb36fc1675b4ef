from enum import Enum
from typing import Any, Dict, Union

__all__ = [
    "Color",
    "LOG_LEVELS",
    "debug",
    "info",
    "warn",
    "error",
    "set_log_level",
    "get_log_level",
    "format_node_message",
]

class Color(Enum):
    BLACK          = '\033[30m'
    RED            = '\033[31m'
    GREEN          = '\033[32m'
    YELLOW         = '\033[33m'
    BLUE           = '\033[34m'
    MAGENTA        = '\033[35m'
    CYAN           = '\033[36m'
    WHITE          = '\033[37m'
    COLOR_DEFAULT  = '\033[39m'
    BOLD           = '\033[1m'
    REVERSE        = '\033[07m'
    RESET          = '\033[0m'

    def __str__(self):
        return self.value

    def __call__(self, s):
        return str(self) + str(s) + str(Color.RESET)

LOG_LEVELS = {
    'debug': 0,
    'info':  1,
    'warn':  2,
    'error': 3,
}

log_level = 0

def set_log_level(level: Union[str, int]):
    global log_level
    if isinstance(level, str):
        if level not in LOG_LEVELS:
            raise ValueError(
                f'Unknown verbosity: {level}. Choose from {list(LOG_LEVELS.keys())}'
            )
        log_level = LOG_LEVELS[level]
    else:
        log_level = int(level)

def get_log_level():
    return log_level

def debug(*args):
    if log_level <= LOG_LEVELS['debug']:
        print(*args)
def info(*args):
    if log_level <= LOG_LEVELS['info']:
        print(*args)
def warn(*args, prefix=True):
    if log_level <= LOG_LEVELS['warn']:
        if prefix and any(args):
            print(
                Color.YELLOW('WARNING:'),
                *args
            )
        else:
            print(*args)
def error(*args, prefix=True):
    if log_level <= LOG_LEVELS['error']:
        if prefix and any(args):
            print(
                Color.RED('ERROR:'),
                *args
            )
        else:
            print(*args)

def format_node_message(
    *,
    node_op: str,
    node_name: str,
    fields: Dict[str, Any],
) -> str:
    """Render one lowering step as a single colored line.

    e.g. `onnx_op_type: QLinearConv onnx_op_name: conv1 lowering: GROUPED_NO_BIAS group: 2`
    """
    text = \
        f'{Color.MAGENTA}onnx_op_type{Color.RESET}: {node_op} ' + \
        f'{Color.MAGENTA}onnx_op_name{Color.RESET}: {node_name}'
    for key, value in fields.items():
        text += f' {Color.CYAN}{key}{Color.RESET}: {value}'
    return text
