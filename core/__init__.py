"""
Core Module Package.

This package contains the core infrastructure components
that all other modules depend on.

Components:
- clock: Unified time abstraction
- config: Pipeline, storage and telemetry settings
- exceptions: Custom exception hierarchy
- constants: System-wide constants
- logging_setup: Root logger configuration
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock, now_utc
from .config import AppConfig, get_config, set_config
from .exceptions import PipelineException

__all__ = [
    "ClockFactory",
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "now_utc",
    "AppConfig",
    "get_config",
    "set_config",
    "PipelineException",
]
