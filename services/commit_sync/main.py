"""
Commit Sync Service

Process-level wiring of the sync components. One service object owns the
database manager, the shared request gateway, the GitHub client, the event
publisher and the sync engine, and exposes every operation the CLI offers.
"""

import logging
import re
from typing import Optional

from config.settings import Settings, get_settings
from shared.database import DatabaseManager, Stores
from shared.events import EventPublisher
from shared.models import (
    BatchResult,
    ForkLink,
    HostRepository,
    RenameCheck,
    Repository,
    SyncOptions,
    SyncOutcome,
)
from services.commit_sync.batch import sync_batch
from services.commit_sync.engine import CommitSyncEngine
from services.commit_sync.errors import RepositoryNotFound
from services.commit_sync.forks import LinkReport, ReconcileReport, reconcile_fork_attribution
from services.github_gateway import Gateway, GitHubClient

logger = logging.getLogger(__name__)

REPOSITORY_URL = re.compile(r"^(?:https?://)?(?:www\.)?github\.com/([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")
FULL_NAME = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def parse_full_name(value: str) -> str:
    """Accept "owner/name" or a github.com URL and return "owner/name"."""
    value = value.strip()
    match = REPOSITORY_URL.match(value)
    if match:
        return f"{match.group(1)}/{match.group(2)}"
    if FULL_NAME.match(value):
        return value
    raise ValueError(f"Not a repository name or GitHub URL: {value}")


class CommitSyncService:
    """Core commit sync service."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        db: Optional[DatabaseManager] = None,
        client: Optional[GitHubClient] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.config = config or get_settings()
        self.db = db or DatabaseManager(config=self.config)
        self.gateway = Gateway.from_settings(self.config.gateway)
        self.client = client or GitHubClient(self.config.github, self.gateway)
        if publisher is None and self.config.redis.enabled:
            publisher = EventPublisher(self.config.redis)
        self.publisher = publisher
        self.stores = Stores(self.db)
        self.engine = CommitSyncEngine(self.stores, self.client, self.config.sync, self.publisher)

    async def initialize(self):
        """Initialize the service."""
        self.db.initialize()
        if self.publisher is not None:
            await self.publisher.initialize()
        logger.info("Commit sync service initialized successfully")

    async def close(self):
        """Close service connections."""
        await self.client.close()
        if self.publisher is not None:
            await self.publisher.close()
        await self.db.close()
        logger.info("Commit sync service connections closed")

    async def __aenter__(self) -> "CommitSyncService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def register_repository(self, name_or_url: str) -> Repository:
        """
        Start tracking a repository, or refresh one already tracked.

        The record is keyed by the host id, so registering a renamed
        repository updates the existing record instead of adding a second one.
        Forks already stored and waiting for this repository as their parent
        are linked to it.
        """
        full_name = parse_full_name(name_or_url)
        descriptor = HostRepository.from_api(await self.client.get_repository(full_name))
        repository = await self.stores.repositories.upsert_from_host(descriptor)
        logger.info(f"Registered {repository.full_name} (GitHub ID {repository.github_id})")

        link = await self.engine.forks.detect_and_link_fork(repository.id, descriptor)
        if link.is_fork and not link.parent_linked:
            logger.info(f"Parent {link.parent_full_name} is not tracked; commits will stay on the fork")

        await self.engine.forks.link_unlinked_forks(parent_full_name=repository.full_name)
        return await self.stores.repositories.get_by_id(repository.id)

    async def detect_and_link_fork(self, repository_id: int) -> ForkLink:
        """Refresh fork status of a stored repository from the host."""
        repository = await self.stores.repositories.get_by_id(repository_id)
        if repository is None:
            raise RepositoryNotFound(repository_id)
        descriptor = HostRepository.from_api(await self.client.get_repository(repository.full_name))
        return await self.engine.forks.detect_and_link_fork(repository_id, descriptor)

    async def find_repository(self, name_or_id: str) -> Optional[Repository]:
        if name_or_id.isdigit():
            return await self.stores.repositories.get_by_id(int(name_or_id))
        return await self.stores.repositories.get_by_full_name(parse_full_name(name_or_id))

    async def sync(self, repository_id: int, options: Optional[SyncOptions] = None) -> SyncOutcome:
        return await self.engine.sync(repository_id, options)

    async def sync_batch(
        self, older_than: str, skip_missing: bool = True, max_concurrency: Optional[int] = None
    ) -> BatchResult:
        return await sync_batch(self.engine, older_than, skip_missing, max_concurrency)

    async def link_unlinked_forks(self, dry_run: bool = False) -> LinkReport:
        return await self.engine.forks.link_unlinked_forks(dry_run=dry_run)

    async def reconcile_fork_attribution(self) -> ReconcileReport:
        return await reconcile_fork_attribution(self.stores)

    async def check_and_update(self, repository_id: int) -> RenameCheck:
        return await self.engine.renames.check_and_update(repository_id)

    async def mark_missing(self, repository_id: int):
        await self.engine.availability.mark_missing(repository_id)

    async def mark_found(self, repository_id: int):
        await self.engine.availability.mark_found(repository_id)
