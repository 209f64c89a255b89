"""
Scriptflow Core Module

Contains core systems including configuration, constants, exceptions,
logging, retry and cancellation.
"""

from .config import ScriptflowConfig, load_config, save_config
from .constants import *
from .exceptions import *
from .logging_config import setup_logging, get_logger

__all__ = [
    'ScriptflowConfig',
    'load_config',
    'save_config',
    'setup_logging',
    'get_logger',
]
