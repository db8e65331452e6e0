"""Batch sync of repositories that have not been synced recently."""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from shared.models import BatchEntry, BatchResult, BatchStatus, SyncOptions, utcnow
from services.commit_sync.engine import CommitSyncEngine

logger = logging.getLogger(__name__)

PERIOD_PATTERN = re.compile(r"^(\d+)(h|d)$")


def parse_time_period(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Turn "24h", "7d" or "never" into a cutoff time.

    Returns None for "never", meaning only never-synced repositories qualify.
    """
    if period == "never":
        return None

    match = PERIOD_PATTERN.match(period)
    if not match:
        raise ValueError(f'Invalid time period format: {period}. Use format like "24h" or "7d"')

    amount, unit = int(match.group(1)), match.group(2)
    delta = timedelta(hours=amount) if unit == "h" else timedelta(days=amount)
    return (now or utcnow()) - delta


async def sync_batch(
    engine: CommitSyncEngine,
    older_than: str,
    skip_missing: bool = True,
    max_concurrency: Optional[int] = None,
) -> BatchResult:
    """Sync every repository due under ``older_than`` and aggregate the outcomes."""
    cutoff = parse_time_period(older_than)
    repositories = await engine.stores.repositories.list_due_for_sync(cutoff, skip_missing=skip_missing)
    logger.info(f"Batch sync: {len(repositories)} repositories due (older than {older_than})")

    outcomes = await engine.sync_many(
        [repo.id for repo in repositories],
        SyncOptions(page_batch_size=engine.config.page_batch_size),
        max_concurrency=max_concurrency,
    )

    result = BatchResult(total_processed=len(repositories))
    for repo, outcome in zip(repositories, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(f"Batch sync of {repo.full_name} failed: {outcome}")
            result.failed += 1
            result.results.append(
                BatchEntry(
                    repository_id=repo.id,
                    full_name=repo.full_name,
                    status=BatchStatus.FAILED,
                    error=str(outcome) or type(outcome).__name__,
                )
            )
            continue

        if outcome.marked_missing:
            result.marked_missing += 1
            result.results.append(
                BatchEntry(
                    repository_id=repo.id,
                    full_name=repo.full_name,
                    status=BatchStatus.MISSING,
                    error="Repository not found (marked as missing)",
                )
            )
            continue

        result.successful += 1
        result.total_commits_created += outcome.commits_created
        result.total_authors_created += outcome.authors_created
        result.results.append(
            BatchEntry(
                repository_id=repo.id,
                full_name=repo.full_name,
                status=BatchStatus.SUCCESS,
                commits_created=outcome.commits_created,
                authors_created=outcome.authors_created,
            )
        )

    return result
