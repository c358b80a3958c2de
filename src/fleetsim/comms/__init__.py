"""Messaging primitives: internal pub/sub and the optional MQTT relay."""

from .event_bus import EventBus

__all__ = ["EventBus"]
