"""
Fork detection, parent linking and fork-aware commit attribution.

A commit observed while syncing a fork belongs to the parent repository when
the parent already stores the same hash, and to the fork otherwise.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from shared.database import Stores
from shared.events import EventPublisher, EventSource, EventType
from shared.models import ForkLink, HostRepository, Repository

logger = logging.getLogger(__name__)


def extract_fork_info(descriptor: HostRepository) -> Tuple[bool, Optional[str]]:
    """Fork flag and parent "owner/name" from a host repository descriptor."""
    return descriptor.is_fork, descriptor.parent_full_name


def attribution_target(
    repository: Repository, sha: str, parent_shas: Optional[FrozenSet[str]]
) -> int:
    """Repository id a commit is stored under."""
    if repository.parent_repository_id is not None and parent_shas and sha in parent_shas:
        return repository.parent_repository_id
    return repository.id


class ParentHashCache:
    """Commit hashes of parent repositories, loaded once per (parent, branch) within one sync run."""

    def __init__(self, stores: Stores):
        self.stores = stores
        self._entries: Dict[Tuple[int, str], FrozenSet[str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, parent_id: int, branch: str) -> FrozenSet[str]:
        key = (parent_id, branch)
        async with self._lock:
            if key not in self._entries:
                shas = await self.stores.commits.get_shas(parent_id, branch)
                self._entries[key] = frozenset(shas)
                logger.debug(f"Loaded {len(shas)} parent hashes for repository {parent_id} on {branch}")
            return self._entries[key]

    async def invalidate(self, parent_id: int):
        """Drop every cached branch of a parent."""
        async with self._lock:
            for key in [k for k in self._entries if k[0] == parent_id]:
                del self._entries[key]


@dataclass
class LinkReport:
    """Outcome of a bulk fork linking pass."""

    dry_run: bool = False
    linked: List[Tuple[str, str]] = field(default_factory=list)
    not_found: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.linked) + len(self.not_found)


@dataclass
class ReconcileReport:
    """Outcome of removing fork rows that duplicate parent rows."""

    forks_checked: int = 0
    removed: Dict[str, int] = field(default_factory=dict)

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())


class ForkLinker:
    """Persists fork status and resolves parent references to local records."""

    def __init__(self, stores: Stores, publisher: Optional[EventPublisher] = None):
        self.stores = stores
        self.publisher = publisher

    async def link_to_parent(self, repository_id: int, parent_full_name: Optional[str]) -> Optional[int]:
        """Link a fork to its parent by exact name; None when the parent is not stored."""
        if not parent_full_name:
            return None

        parent = await self.stores.repositories.get_by_full_name(parent_full_name)
        if parent is None:
            logger.info(f"Parent {parent_full_name} of repository {repository_id} is not stored yet")
            return None

        await self.stores.repositories.set_parent(repository_id, parent.id)
        logger.info(f"Linked repository {repository_id} to parent {parent_full_name} ({parent.id})")
        if self.publisher is not None:
            await self.publisher.publish(
                EventType.FORK_LINKED,
                repository_id,
                {"parent_repository_id": parent.id, "parent_full_name": parent_full_name},
                source=EventSource.FORK_LINKER,
            )
        return parent.id

    async def detect_and_link_fork(self, repository_id: int, descriptor: HostRepository) -> ForkLink:
        """Store fork status from a host descriptor and link the parent if it is stored."""
        is_fork, parent_full_name = extract_fork_info(descriptor)
        await self.stores.repositories.set_fork_info(repository_id, is_fork, parent_full_name)

        parent_id = None
        if is_fork and parent_full_name:
            parent_id = await self.link_to_parent(repository_id, parent_full_name)

        return ForkLink(
            is_fork=is_fork,
            parent_full_name=parent_full_name,
            parent_repository_id=parent_id,
            parent_linked=parent_id is not None,
        )

    async def link_unlinked_forks(
        self, parent_full_name: Optional[str] = None, dry_run: bool = False
    ) -> LinkReport:
        """Link every fork that names a parent but has no parent id yet."""
        report = LinkReport(dry_run=dry_run)
        forks = await self.stores.repositories.list_unlinked_forks(parent_full_name)

        for fork in forks:
            parent = await self.stores.repositories.get_by_full_name(fork.parent_full_name)
            if parent is None:
                report.not_found.append((fork.full_name, fork.parent_full_name))
                continue
            if not dry_run:
                await self.link_to_parent(fork.id, fork.parent_full_name)
            report.linked.append((fork.full_name, fork.parent_full_name))

        logger.info(
            f"Fork linking {'(dry run) ' if dry_run else ''}finished: "
            f"{len(report.linked)} linked, {len(report.not_found)} parents not found"
        )
        return report


async def reconcile_fork_attribution(stores: Stores, chunk_size: int = 1000) -> ReconcileReport:
    """
    Delete fork commit rows whose hash is also stored under the linked parent.

    Repairs forks that were synced before their parent was imported. Sync never
    calls this; it runs only when invoked explicitly.
    """
    report = ReconcileReport()
    for fork in await stores.repositories.list_linked_forks():
        report.forks_checked += 1
        shas = sorted(await stores.commits.find_shared_shas(fork.id, fork.parent_repository_id))
        if not shas:
            continue

        deleted = 0
        for i in range(0, len(shas), chunk_size):
            deleted += await stores.commits.delete_shas(fork.id, shas[i:i + chunk_size])

        report.removed[fork.full_name] = deleted
        logger.info(f"Removed {deleted} commits from {fork.full_name} already stored under its parent")

    return report
