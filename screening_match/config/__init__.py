"""Configuration module."""
from .settings import get_settings, Settings
from .logging_config import setup_logging, get_logger, bind_execution_ref, unbind_execution_ref

__all__ = ["get_settings", "Settings", "setup_logging", "get_logger", "bind_execution_ref", "unbind_execution_ref"]
