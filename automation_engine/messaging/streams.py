"""
Domain event ingestion and failure notices over Redis Streams.

Provides at-least-once delivery with consumer groups and acknowledgment;
payloads that cannot be parsed are moved to a dead letter stream.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from automation_engine.core.models import DomainEvent, Workflow, WorkflowExecution

logger = logging.getLogger(__name__)


class StreamGroup:
    """Stream plus consumer group, created lazily and re-created on NOGROUP."""

    def __init__(
        self,
        client: redis.Redis,
        stream_key: str,
        consumer_group: str,
        max_length: Optional[int] = None,
    ):
        self.client = client
        self.stream_key = stream_key
        self.consumer_group = consumer_group
        self.max_length = max_length

    async def init(self) -> None:
        """Initialize the stream and consumer group."""
        try:
            await self.client.xgroup_create(
                self.stream_key,
                self.consumer_group,
                id="0",
                mkstream=True,
            )
        except redis.ResponseError as e:
            # Group already exists
            if "BUSYGROUP" not in str(e):
                raise

    async def add(self, fields: dict[str, str]) -> str:
        if self.max_length:
            return await self.client.xadd(
                self.stream_key,
                fields,
                maxlen=self.max_length,
                approximate=True,
            )
        return await self.client.xadd(self.stream_key, fields)

    async def read(
        self,
        consumer_id: str,
        count: int,
        block_ms: int,
    ) -> list[tuple[str, dict[str, str]]]:
        try:
            messages = await self.client.xreadgroup(
                groupname=self.consumer_group,
                consumername=consumer_id,
                streams={self.stream_key: ">"},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                await self.init()
                return []
            raise

        if not messages:
            return []

        return [
            (msg_id, msg_data)
            for _, stream_messages in messages
            for msg_id, msg_data in stream_messages
        ]

    async def claim_stale(
        self,
        consumer_id: str,
        min_idle_ms: int,
        count: int,
    ) -> list[tuple[str, dict[str, str]]]:
        """Claim messages left pending by a consumer that died."""
        try:
            result = await self.client.xautoclaim(
                self.stream_key,
                self.consumer_group,
                consumer_id,
                min_idle_time=min_idle_ms,
                count=count,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                await self.init()
                return []
            raise

        if not result or len(result) < 2:
            return []

        # Deleted entries come back with empty data
        return [(msg_id, msg_data) for msg_id, msg_data in result[1] if msg_data]

    async def acknowledge(self, message_id: str) -> None:
        await self.client.xack(self.stream_key, self.consumer_group, message_id)

    async def pending_count(self) -> int:
        try:
            info = await self.client.xpending(self.stream_key, self.consumer_group)
        except redis.ResponseError:
            return 0
        return info["pending"] if info else 0


class EventStream:
    """
    Domain event stream consumed by automation workers.

    Each entry carries the event JSON under ``payload`` plus a few
    top-level fields for inspection with redis-cli.
    """

    STREAM_KEY = "automation:stream:events"
    DLQ_KEY = "automation:dlq:events"
    CONSUMER_GROUP = "automation-workers"

    def __init__(self, client: redis.Redis, max_length: Optional[int] = None):
        self.client = client
        self._group = StreamGroup(client, self.STREAM_KEY, self.CONSUMER_GROUP, max_length)

    async def init(self) -> None:
        await self._group.init()

    async def publish(self, event: DomainEvent) -> str:
        """
        Publish a domain event.

        Returns the stream message ID.
        """
        message_id = await self._group.add({
            "event_id": event.event_id,
            "kind": event.kind.value,
            "publication_id": event.publication_id,
            "payload": event.model_dump_json(),
        })
        logger.debug(f"Published event {event.event_id} ({event.kind.value}) as {message_id}")
        return message_id

    async def consume(
        self,
        consumer_id: str,
        count: int = 10,
        block_ms: int = 5000,
    ) -> list[tuple[str, DomainEvent]]:
        """
        Read new events for this consumer.

        Malformed entries are dead-lettered and acknowledged, never returned.
        """
        messages = await self._group.read(consumer_id, count, block_ms)
        return await self._parse_messages(messages)

    async def claim_stale(
        self,
        consumer_id: str,
        min_idle_ms: int = 120000,
        count: int = 10,
    ) -> list[tuple[str, DomainEvent]]:
        messages = await self._group.claim_stale(consumer_id, min_idle_ms, count)
        return await self._parse_messages(messages)

    async def _parse_messages(
        self,
        messages: list[tuple[str, dict[str, str]]],
    ) -> list[tuple[str, DomainEvent]]:
        events = []
        for msg_id, msg_data in messages:
            try:
                events.append((msg_id, DomainEvent.model_validate_json(msg_data["payload"])))
            except (KeyError, ValidationError) as e:
                logger.error(f"Malformed event {msg_id} moved to dead letter stream: {e}")
                await self.reject(msg_id, msg_data, str(e))
        return events

    async def acknowledge(self, message_id: str) -> None:
        """Acknowledge successful event processing."""
        await self._group.acknowledge(message_id)

    async def reject(self, message_id: str, message_data: dict[str, Any], error: str) -> None:
        """Acknowledge the message and copy it to the dead letter stream."""
        await self._group.acknowledge(message_id)
        await self.client.xadd(self.DLQ_KEY, {
            **{k: str(v) for k, v in message_data.items()},
            "original_message_id": message_id,
            "error": error[:1000],
            "rejected_at": datetime.now(timezone.utc).isoformat(),
        })

    async def get_pending_count(self) -> int:
        return await self._group.pending_count()

    async def get_dlq_count(self) -> int:
        return await self.client.xlen(self.DLQ_KEY)


class NotificationStream:
    """
    Failure notices for publication owners.

    A separate notification service consumes this stream and emails the owner.
    """

    STREAM_KEY = "automation:stream:notifications"

    def __init__(self, client: redis.Redis, max_length: Optional[int] = None):
        self.client = client
        self.max_length = max_length

    async def publish_failure(self, workflow: Workflow, execution: WorkflowExecution) -> str:
        data = {
            "type": "execution_failed",
            "publication_id": workflow.publication_id,
            "workflow_id": str(workflow.id),
            "workflow_name": workflow.name,
            "execution_id": str(execution.id),
            "subscriber_id": execution.subscriber_id,
            "node_id": execution.current_node_id or "",
            "error": execution.last_error or "",
            "failed_at": (execution.completed_at or datetime.now(timezone.utc)).isoformat(),
            "context": json.dumps({"event_id": execution.event_id}),
        }
        if self.max_length:
            return await self.client.xadd(
                self.STREAM_KEY,
                data,
                maxlen=self.max_length,
                approximate=True,
            )
        return await self.client.xadd(self.STREAM_KEY, data)
