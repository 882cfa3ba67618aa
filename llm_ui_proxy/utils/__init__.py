"""
LLM UI Proxy utilities module.
"""

from llm_ui_proxy.utils.config import Settings, get_settings, load_settings
from llm_ui_proxy.utils.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "load_settings",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
