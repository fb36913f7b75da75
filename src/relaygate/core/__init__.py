"""Core utilities shared by the gateway and its frontends."""

from relaygate.core.logging_config import JsonFormatter, configure_logging

__all__ = ["JsonFormatter", "configure_logging"]
