"""Structured logging."""

from p2p_desk.logging.setup import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
