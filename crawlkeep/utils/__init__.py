"""
Utility modules for the crawler.
"""

from .config import Config, ConfigValidationError, load_config, write_config

__all__ = ['Config', 'ConfigValidationError', 'load_config', 'write_config']
