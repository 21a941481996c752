"""
Config Module

YAML feed configuration loading and validation.
"""

from .loader import ConfigLoader, FeedConfig, StreamSettings

__all__ = [
    "ConfigLoader",
    "FeedConfig",
    "StreamSettings",
]
