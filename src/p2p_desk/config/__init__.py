"""Configuration system."""

from p2p_desk.config.loader import PositioningWatcher, load_config
from p2p_desk.config.resolver import resolve_positioning
from p2p_desk.config.schema import AppConfig, PositioningConfig

__all__ = ["AppConfig", "PositioningConfig", "PositioningWatcher", "load_config", "resolve_positioning"]
