"""
Unit tests for shared events module.

Redis is replaced by AsyncMock clients; publishing must never raise.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
import redis.asyncio as redis

from config.settings import RedisSettings
from shared.events import EventMetadata, EventPublisher, EventSource, EventType, SyncEvent


class TestSyncEvent:
    """Test cases for SyncEvent."""

    def test_event_type_values(self):
        assert EventType.SYNC_COMPLETED.value == "sync.completed"
        assert EventType.REPOSITORY_MISSING.value == "repository.missing"
        assert EventType.REPOSITORY_RENAMED.value == "repository.renamed"
        assert EventType.FORK_LINKED.value == "fork.linked"

    def test_to_json(self):
        """Test the serialized envelope carries type, repository, data and metadata."""
        event = SyncEvent(
            event_type=EventType.REPOSITORY_RENAMED,
            repository_id=7,
            data={"old_full_name": "acme/widgets", "new_full_name": "acme/gizmos"},
            metadata=EventMetadata(source=EventSource.RENAME_DETECTOR),
        )

        payload = json.loads(event.to_json())

        assert payload["event_type"] == "repository.renamed"
        assert payload["repository_id"] == 7
        assert payload["data"]["new_full_name"] == "acme/gizmos"
        assert payload["metadata"]["source"] == "rename_detector"
        assert payload["metadata"]["event_id"]
        assert payload["metadata"]["timestamp"].endswith("+00:00")

    def test_metadata_ids_are_unique(self):
        assert EventMetadata().event_id != EventMetadata().event_id


class TestEventPublisher:
    """Test cases for EventPublisher."""

    @pytest.fixture
    def config(self):
        return RedisSettings(enabled=True, channel="test_events")

    @pytest.mark.asyncio
    async def test_publish(self, config):
        client = AsyncMock()
        publisher = EventPublisher(config, client=client)

        published = await publisher.publish(
            EventType.SYNC_COMPLETED, 3, {"commits_created": 2}, source=EventSource.SYNC_ENGINE
        )

        assert published is True
        channel, message = client.publish.await_args.args
        assert channel == "test_events"
        payload = json.loads(message)
        assert payload["event_type"] == "sync.completed"
        assert payload["data"] == {"commits_created": 2}
        assert payload["metadata"]["correlation_id"] == "3"

    @pytest.mark.asyncio
    async def test_publish_without_client(self, config):
        """Test an uninitialized publisher drops events quietly."""
        assert await EventPublisher(config).publish(EventType.FORK_LINKED, 1) is False

    @pytest.mark.asyncio
    async def test_publish_failure_is_not_raised(self, config):
        """Test Redis errors are logged and reported as False."""
        client = AsyncMock()
        client.publish.side_effect = redis.ConnectionError("connection refused")
        publisher = EventPublisher(config, client=client)

        assert await publisher.publish(EventType.REPOSITORY_MISSING, 1) is False

    @pytest.mark.asyncio
    async def test_initialize_tolerates_unreachable_redis(self, config):
        client = AsyncMock()
        client.ping.side_effect = redis.ConnectionError("connection refused")

        with patch("shared.events.redis.from_url", return_value=client) as from_url:
            publisher = EventPublisher(config)
            await publisher.initialize()

        from_url.assert_called_once()
        assert publisher.redis_client is client

    @pytest.mark.asyncio
    async def test_close(self, config):
        client = AsyncMock()
        publisher = EventPublisher(config, client=client)

        await publisher.close()

        client.aclose.assert_awaited_once()
        assert publisher.redis_client is None
