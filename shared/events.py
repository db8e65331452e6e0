"""
Event publishing for the commit sync service.

This module provides:
- Type-safe event definitions for sync and repository lifecycle changes
- Event envelopes with tracing metadata
- A best-effort Redis publisher
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional
from dataclasses import dataclass, field

import redis.asyncio as redis
from pydantic import BaseModel, Field, field_validator

from config.settings import RedisSettings

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types emitted by the sync service."""

    SYNC_COMPLETED = "sync.completed"
    REPOSITORY_MISSING = "repository.missing"
    REPOSITORY_FOUND = "repository.found"
    REPOSITORY_RENAMED = "repository.renamed"
    FORK_LINKED = "fork.linked"


class EventSource(Enum):
    """Event source components."""
    SYNC_ENGINE = "sync_engine"
    AVAILABILITY = "availability"
    RENAME_DETECTOR = "rename_detector"
    FORK_LINKER = "fork_linker"


@dataclass
class EventMetadata:
    """Event metadata for tracking and auditing."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: EventSource = EventSource.SYNC_ENGINE
    version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "version": self.version,
        }


class SyncEvent(BaseModel):
    """Envelope for one published event."""

    event_type: EventType
    repository_id: int
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @field_validator("data")
    @classmethod
    def validate_data(cls, v):
        if not isinstance(v, dict):
            raise ValueError("Event data must be a dictionary")
        return v

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "repository_id": self.repository_id,
            "data": self.data,
            "metadata": self.metadata.to_dict(),
        }

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return json.dumps(self.to_dict(), default=str)


class EventPublisher:
    """Publishes events to a Redis channel; failures are logged, never raised."""

    def __init__(self, config: RedisSettings, client: Optional[redis.Redis] = None):
        self.config = config
        self.redis_client = client

    async def initialize(self):
        """Connect to Redis."""
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.config.url,
                decode_responses=True,
                socket_connect_timeout=self.config.socket_connect_timeout,
                socket_timeout=self.config.socket_timeout,
            )
        try:
            await self.redis_client.ping()
            logger.info(f"Event publisher connected to {self.config.url}")
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis unavailable, events will be dropped until it recovers: {e}")

    async def close(self):
        """Close the Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    async def publish(
        self,
        event_type: EventType,
        repository_id: int,
        data: Optional[Dict[str, Any]] = None,
        source: EventSource = EventSource.SYNC_ENGINE,
    ) -> bool:
        """Publish one event; returns whether Redis accepted it."""
        if self.redis_client is None:
            return False

        event = SyncEvent(
            event_type=event_type,
            repository_id=repository_id,
            data=data or {},
            metadata=EventMetadata(source=source, correlation_id=str(repository_id)),
        )
        try:
            await self.redis_client.publish(self.config.channel, event.to_json())
            logger.debug(f"Published {event_type.value} for repository {repository_id}")
            return True
        except (redis.RedisError, OSError) as e:
            # Event publishing is not critical for sync results
            logger.error(f"Error publishing {event_type.value} event: {e}")
            return False
