"""Event channel and its observers."""

from p2p_desk.events.bus import DeskEvent, EventBus, consume
from p2p_desk.events.observers import EventRecorder, log_event

__all__ = ["DeskEvent", "EventBus", "EventRecorder", "consume", "log_event"]
