"""Redis Streams messaging for events and notifications."""

from automation_engine.messaging.connection import RedisConnection
from automation_engine.messaging.streams import EventStream, NotificationStream

__all__ = ["RedisConnection", "EventStream", "NotificationStream"]
