"""
Rename detection by immutable host id.

The host keeps a repository's numeric id across renames, so fetching by id and
comparing names tells a rename apart from a deletion.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from shared.database import Stores
from shared.events import EventPublisher, EventSource, EventType
from shared.models import HostRepository, RenameCheck, Repository
from services.commit_sync.errors import RepositoryNotFound
from services.github_gateway import GitHubClient, HostError, NotFoundError

logger = logging.getLogger(__name__)


class RenameDetector:
    def __init__(self, stores: Stores, client: GitHubClient, publisher: Optional[EventPublisher] = None):
        self.stores = stores
        self.client = client
        self.publisher = publisher

    async def check(self, repository: Repository) -> RenameCheck:
        """
        Compare the stored name with the host's current name and persist a rename.

        ``exists`` is False when the host no longer knows the id, and None when
        the host could not be asked.
        """
        try:
            payload = await self.client.get_repository_by_id(repository.github_id)
            descriptor = HostRepository.from_api(payload)
        except NotFoundError:
            logger.warning(f"Repository {repository.full_name} (GitHub ID {repository.github_id}) no longer exists")
            return RenameCheck(exists=False, old_full_name=repository.full_name)
        except (HostError, ValidationError) as e:
            logger.error(f"Error checking for rename of {repository.full_name}: {e}")
            return RenameCheck(exists=None, old_full_name=repository.full_name)

        if descriptor.full_name == repository.full_name:
            return RenameCheck(exists=True, old_full_name=repository.full_name)

        logger.info(
            f"Repository rename detected: {repository.full_name} -> {descriptor.full_name} "
            f"(Repository ID: {repository.id}, GitHub ID: {repository.github_id})"
        )
        await self.stores.repositories.rename(repository.id, descriptor.full_name)
        if self.publisher is not None:
            await self.publisher.publish(
                EventType.REPOSITORY_RENAMED,
                repository.id,
                {"old_full_name": repository.full_name, "new_full_name": descriptor.full_name},
                source=EventSource.RENAME_DETECTOR,
            )
        return RenameCheck(
            renamed=True,
            exists=True,
            old_full_name=repository.full_name,
            new_full_name=descriptor.full_name,
        )

    async def check_and_update(self, repository_id: int) -> RenameCheck:
        repository = await self.stores.repositories.get_by_id(repository_id)
        if repository is None:
            raise RepositoryNotFound(repository_id)
        return await self.check(repository)
