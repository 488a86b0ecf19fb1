"""In-process event bus with a closed message set."""

from event_bus.bus import EventBus, Subscription
from event_bus.messages import MESSAGE_TYPES, parse_message

__all__ = ["EventBus", "Subscription", "MESSAGE_TYPES", "parse_message"]
