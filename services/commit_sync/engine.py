"""
Commit synchronization engine.

Pages through a repository's commit listing on the host and stores every
commit exactly once, under the fork or its parent, with a resolved author.
Runs are idempotent: re-running after any partial failure only adds what is
missing, and the watermark moves only when a run reaches the end of the
history.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from config.settings import SyncSettings
from shared.database import Stores
from shared.events import EventPublisher, EventSource, EventType
from shared.models import (
    AuthorInfo,
    HostCommit,
    Repository,
    SyncOptions,
    SyncOutcome,
    utcnow,
)
from services.commit_sync.authors import AuthorResolver, is_bot
from services.commit_sync.availability import AvailabilityTracker
from services.commit_sync.errors import (
    IncompleteIdentityError,
    MalformedCommitError,
    RepositoryNotFound,
)
from services.commit_sync.forks import ForkLinker, ParentHashCache, attribution_target
from services.commit_sync.renames import RenameDetector
from services.github_gateway import GitHubClient, HostError, RepositoryUnavailableError

logger = logging.getLogger(__name__)

COMMIT_ERRORS = (ValidationError, MalformedCommitError, IncompleteIdentityError, SQLAlchemyError)


class CommitSyncEngine:
    """Syncs repositories one at a time or many under a concurrency bound."""

    def __init__(
        self,
        stores: Stores,
        client: GitHubClient,
        config: SyncSettings,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.stores = stores
        self.client = client
        self.config = config
        self.publisher = publisher
        self._clock = clock
        self._monotonic = monotonic

        self.resolver = AuthorResolver(stores.authors)
        self.forks = ForkLinker(stores, publisher)
        self.availability = AvailabilityTracker(stores, publisher)
        self.renames = RenameDetector(stores, client, publisher)

    def default_options(self) -> SyncOptions:
        return SyncOptions(page_batch_size=self.config.page_batch_size)

    async def sync(self, repository_id: int, options: Optional[SyncOptions] = None) -> SyncOutcome:
        """
        Sync one repository.

        Args:
            repository_id: Local repository id
            options: Full or incremental mode, chunk size and timeout

        Returns:
            SyncOutcome: Counters and per-commit/page errors of the run

        Raises:
            RepositoryNotFound: If no local record has ``repository_id``
        """
        # Parent hashes are cached for this run only
        parent_cache = ParentHashCache(self.stores)
        return await self._sync(repository_id, options or self.default_options(), parent_cache, sync_parent=True)

    async def sync_many(
        self,
        repository_ids: Iterable[int],
        options: Optional[SyncOptions] = None,
        max_concurrency: Optional[int] = None,
    ) -> List[Union[SyncOutcome, BaseException]]:
        """Sync several repositories concurrently; results are in input order."""
        semaphore = asyncio.Semaphore(max_concurrency or self.config.max_concurrent_syncs)

        async def run(repository_id: int) -> SyncOutcome:
            async with semaphore:
                return await self.sync(repository_id, options)

        return await asyncio.gather(*(run(rid) for rid in repository_ids), return_exceptions=True)

    async def _sync(
        self, repository_id: int, options: SyncOptions, parent_cache: ParentHashCache, sync_parent: bool
    ) -> SyncOutcome:
        repository = await self.stores.repositories.get_by_id(repository_id)
        if repository is None:
            raise RepositoryNotFound(repository_id)

        started_at = self._clock()
        outcome = SyncOutcome(repository_id=repository_id)
        logger.info(f"Syncing {repository.full_name} ({'full' if options.full_sync else 'incremental'})")

        parent_shas = None
        if repository.is_fork and repository.parent_repository_id is not None:
            if sync_parent:
                await self._sync_parent(repository, options, parent_cache, outcome)
            try:
                parent_shas = await parent_cache.get(
                    repository.parent_repository_id, repository.default_branch
                )
            except SQLAlchemyError as e:
                outcome.errors.append(f"Warning: Could not load parent commits for fork comparison: {e}")

        since = None if options.full_sync else repository.last_synced_at
        completed = await self._fetch_pages(repository, since, options, parent_shas, outcome)

        if completed:
            if repository.is_missing:
                await self.availability.mark_found(repository.id)
            await self.stores.repositories.advance_watermark(repository.id, started_at)
            outcome.watermark = started_at

        logger.info(
            f"Sync of {repository.full_name} finished: {outcome.commits_processed} processed, "
            f"{outcome.commits_created} created, {outcome.commits_skipped_duplicate} duplicates, "
            f"{outcome.commits_skipped_bots} bots, {len(outcome.errors)} errors"
        )
        await self._publish_completed(outcome)
        return outcome

    async def _sync_parent(
        self,
        repository: Repository,
        options: SyncOptions,
        parent_cache: ParentHashCache,
        outcome: SyncOutcome,
    ):
        """Bring the parent up to date first so its hashes drive attribution."""
        parent_id = repository.parent_repository_id
        logger.info(f"Fork detected: {repository.full_name} -> {repository.parent_full_name}, syncing parent first")
        parent_options = SyncOptions(
            full_sync=False, page_batch_size=options.page_batch_size, timeout=options.timeout
        )
        try:
            outcome.parent_outcome = await self._sync(parent_id, parent_options, parent_cache, sync_parent=False)
        except Exception as e:
            # The fork sync continues whatever happened to the parent
            logger.exception(f"Failed to sync parent repository {parent_id}")
            outcome.errors.append(f"Parent sync failed: {e}")
        finally:
            await parent_cache.invalidate(parent_id)

    async def _fetch_pages(
        self,
        repository: Repository,
        since: Optional[datetime],
        options: SyncOptions,
        parent_shas: Optional[FrozenSet[str]],
        outcome: SyncOutcome,
    ) -> bool:
        """Page through the listing; True when the end of the history was reached."""
        full_name = repository.full_name
        per_page = min(self.config.per_page, 100)
        deadline = self._monotonic() + options.timeout if options.timeout else None
        followed_rename = False
        page = 1

        while True:
            if deadline is not None and self._monotonic() >= deadline:
                outcome.errors.append(f"Sync timed out after {options.timeout}s before page {page}")
                return False

            try:
                entries = await self.client.list_commits(
                    full_name,
                    branch=repository.default_branch,
                    since=since,
                    page=page,
                    per_page=per_page,
                )
            except RepositoryUnavailableError as e:
                current = repository.model_copy(update={"full_name": full_name})
                check = await self.renames.check(current)
                if check.renamed and not followed_rename:
                    full_name = check.new_full_name
                    followed_rename = True
                    continue
                if check.exists is False:
                    outcome.errors.append(f"Repository not found: {e}. Marking as missing.")
                    await self.availability.mark_missing(repository.id)
                    outcome.marked_missing = True
                    return False
                outcome.errors.append(f"Error fetching commits (page {page}): {e}")
                return False
            except HostError as e:
                outcome.errors.append(f"Error fetching commits (page {page}): {e}")
                return False

            if not entries:
                return True

            for start in range(0, len(entries), options.page_batch_size):
                for entry in entries[start:start + options.page_batch_size]:
                    await self._process_commit(entry, repository, parent_shas, outcome)

            if len(entries) < per_page:
                return True
            page += 1

    async def _process_commit(
        self,
        entry: Dict[str, Any],
        repository: Repository,
        parent_shas: Optional[FrozenSet[str]],
        outcome: SyncOutcome,
    ):
        outcome.commits_processed += 1
        sha = entry.get("sha") if isinstance(entry, dict) else None
        try:
            if not isinstance(entry, dict):
                raise MalformedCommitError("Commit entry is not an object")
            commit = HostCommit.from_api(entry)

            if is_bot(commit.author_login, self.config.bot_suffix):
                outcome.commits_skipped_bots += 1
                return

            commit_date = commit.commit_date
            if commit_date is None:
                raise MalformedCommitError(f"No commit date found for commit {commit.sha}")

            author = await self.resolver.resolve(AuthorInfo.from_commit(commit))
            if author.created:
                outcome.authors_created += 1

            target = attribution_target(repository, commit.sha, parent_shas)
            created = await self.stores.commits.insert_if_absent(
                target, author.id, commit.sha, commit_date, repository.default_branch
            )
            if created:
                outcome.commits_created += 1
            else:
                outcome.commits_skipped_duplicate += 1
        except COMMIT_ERRORS as e:
            outcome.errors.append(f"Error processing commit {sha}: {e}")

    async def _publish_completed(self, outcome: SyncOutcome):
        if self.publisher is None:
            return
        await self.publisher.publish(
            EventType.SYNC_COMPLETED,
            outcome.repository_id,
            {
                "completed": outcome.completed,
                "commits_processed": outcome.commits_processed,
                "commits_created": outcome.commits_created,
                "authors_created": outcome.authors_created,
                "errors": len(outcome.errors),
                "marked_missing": outcome.marked_missing,
            },
            source=EventSource.SYNC_ENGINE,
        )
