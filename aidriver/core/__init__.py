"""Core configuration, logging and error handling for aidriver.

This module provides:
- Settings: Central configuration using Pydantic Settings
- DriverLogger: Unified logging with Rich console and JSON file output
- get_logger: Factory function for creating loggers
- ProviderError / ErrorKind: the single tagged error type and its taxonomy
- Driver: the multi-provider façade (see ``aidriver.core.llm``)
"""

from aidriver.core.config import Settings
from aidriver.core.errors import DriverError, ErrorInfo, ErrorKind, ProviderError
from aidriver.core.logging import DriverLogger, LoggerProtocol, get_logger
from aidriver.core.llm.driver import Driver
from aidriver.core.llm.models import Message, Response, TokenUsage

__all__ = [
    "Settings",
    "DriverLogger",
    "LoggerProtocol",
    "get_logger",
    "DriverError",
    "ErrorInfo",
    "ErrorKind",
    "ProviderError",
    "Driver",
    "Message",
    "Response",
    "TokenUsage",
]
