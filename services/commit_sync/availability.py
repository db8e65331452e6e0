"""Two-state availability flag of a tracked repository (available or missing)."""

import logging
from typing import Optional

from shared.database import Stores
from shared.events import EventPublisher, EventSource, EventType
from shared.models import Repository
from services.commit_sync.errors import RepositoryNotFound

logger = logging.getLogger(__name__)


class AvailabilityTracker:
    def __init__(self, stores: Stores, publisher: Optional[EventPublisher] = None):
        self.stores = stores
        self.publisher = publisher

    async def _load(self, repository_id: int) -> Repository:
        repository = await self.stores.repositories.get_by_id(repository_id)
        if repository is None:
            raise RepositoryNotFound(repository_id)
        return repository

    async def mark_missing(self, repository_id: int):
        """Flag a repository as no longer reachable on the host."""
        repository = await self._load(repository_id)
        await self.stores.repositories.set_missing(repository_id, True)
        logger.warning(f"Repository {repository.full_name} marked as missing")
        if self.publisher is not None:
            await self.publisher.publish(
                EventType.REPOSITORY_MISSING,
                repository_id,
                {"full_name": repository.full_name},
                source=EventSource.AVAILABILITY,
            )

    async def mark_found(self, repository_id: int):
        """Clear the missing flag."""
        repository = await self._load(repository_id)
        await self.stores.repositories.set_missing(repository_id, False)
        logger.info(f"Repository {repository.full_name} marked as found")
        if self.publisher is not None:
            await self.publisher.publish(
                EventType.REPOSITORY_FOUND,
                repository_id,
                {"full_name": repository.full_name},
                source=EventSource.AVAILABILITY,
            )
