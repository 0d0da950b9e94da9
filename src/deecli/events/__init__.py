"""Event bus for decoupling the conversation service from the UI."""

from deecli.events.bus import WILDCARD, EventBus

__all__ = ["EventBus", "WILDCARD"]
