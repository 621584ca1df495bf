"""
Core module initialization.
Exports configuration, logging utilities and error kinds.
"""

from qrorder.core.config import get_settings, setup_logging, Settings, EnvironmentMode

__all__ = ["get_settings", "setup_logging", "Settings", "EnvironmentMode"]
