"""
Utility modules for the tunnel.
Includes configuration and logging.
"""

from common.utils.config import ConfigManager, ConfigError
from common.utils.logging_setup import setup_logging

__all__ = [
    'ConfigManager',
    'ConfigError',
    'setup_logging'
]
