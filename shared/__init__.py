"""
ROMTRACK Shared Module

Common utilities used across all services.
"""

from .utils import setup_logger, success_response, log_execution_time, handle_exceptions

__all__ = [
    'setup_logger',
    'success_response',
    'log_execution_time',
    'handle_exceptions',
]
