"""Utility modules."""

from .logger import init_logger
from .config_registry import ConfigRegistry
from .encoding_utils import read_file_robust, write_file_robust
from .size_units import parse_size, format_size

__all__ = [
    "init_logger",
    "ConfigRegistry",
    "read_file_robust",
    "write_file_robust",
    "parse_size",
    "format_size"
]
