"""
Tests for the commit synchronization engine.

The engine runs against in-memory SQLite and ``FakeHost``; every scenario
checks both the returned outcome and what ended up in the store.
"""

import asyncio
import itertools
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import SyncSettings
from shared.events import EventType
from shared.models import HostRepository, SyncOptions, SyncOutcome
from services.commit_sync.engine import CommitSyncEngine
from services.commit_sync.errors import RepositoryNotFound
from services.github_gateway import HostError, RepositoryUnavailableError, TransientError

from fakes import START, make_commit, make_sha, track

FULL = SyncOptions(full_sync=True)


def history(count: int, start: int = 0, **kwargs):
    return [make_commit(make_sha(start + n), **kwargs) for n in range(count)]


class TestFullSync:
    """Test cases for plain repository syncs."""

    @pytest.mark.asyncio
    async def test_paginated_full_sync(self, engine, host, stores):
        """Test 100 + 37 commits are fetched in two pages and all stored."""
        host.add_repository("acme/widgets", 1, commits=history(137))
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_processed == 137
        assert outcome.commits_created == 137
        assert outcome.authors_created == 1
        assert outcome.errors == []
        assert [call["page"] for call in host.calls] == [1, 2]
        assert all(call["since"] is None for call in host.calls)
        assert all(call["branch"] == "main" for call in host.calls)
        assert await stores.commits.count_for_repository(repo.id) == 137

        stored = await stores.repositories.get_by_id(repo.id)
        assert stored.last_synced_at == START
        assert outcome.watermark == START
        assert outcome.completed

    @pytest.mark.asyncio
    async def test_empty_page_ends_paging(self, engine, host, stores):
        """Test an exact multiple of the page size stops at the empty page."""
        host.add_repository("acme/widgets", 1, commits=history(100))
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_created == 100
        assert [call["page"] for call in host.calls] == [1, 2]
        assert outcome.completed

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, engine, host, stores):
        """Test a second full sync adds nothing."""
        host.add_repository("acme/widgets", 1, commits=history(137))
        repo = await track(stores, host, 1)

        await engine.sync(repo.id, FULL)
        second = await engine.sync(repo.id, FULL)

        assert second.commits_processed == 137
        assert second.commits_created == 0
        assert second.commits_skipped_duplicate == 137
        assert second.authors_created == 0
        assert await stores.commits.count_for_repository(repo.id) == 137
        assert await stores.authors.count() == 1

    @pytest.mark.asyncio
    async def test_small_page_batch_size(self, engine, host, stores):
        """Test chunked processing handles every commit once."""
        host.add_repository("acme/widgets", 1, commits=history(25))
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, SyncOptions(full_sync=True, page_batch_size=7))

        assert outcome.commits_processed == 25
        assert outcome.commits_created == 25

    @pytest.mark.asyncio
    async def test_incremental_sync_uses_watermark(self, engine, host, stores):
        """Test an incremental run fetches only commits after the watermark."""
        host.add_repository("acme/widgets", 1, commits=history(3, date="2024-01-01T00:00:00Z"))
        repo = await track(stores, host, 1)
        await engine.sync(repo.id, FULL)

        host.commits[1] = history(2, start=10, date="2024-07-01T00:00:00Z") + host.commits[1]
        host.calls.clear()
        outcome = await engine.sync(repo.id)

        assert host.calls[0]["since"] == START
        assert outcome.commits_processed == 2
        assert outcome.commits_created == 2
        assert await stores.commits.count_for_repository(repo.id) == 5

    @pytest.mark.asyncio
    async def test_full_sync_ignores_watermark(self, engine, host, stores):
        """Test full_sync fetches everything even with a watermark."""
        host.add_repository("acme/widgets", 1, commits=history(3))
        repo = await track(stores, host, 1)
        await engine.sync(repo.id, FULL)

        host.calls.clear()
        await engine.sync(repo.id, FULL)

        assert host.calls[0]["since"] is None

    @pytest.mark.asyncio
    async def test_unknown_repository(self, engine):
        """Test syncing an id with no record raises RepositoryNotFound."""
        with pytest.raises(RepositoryNotFound):
            await engine.sync(999)

    @pytest.mark.asyncio
    async def test_commit_stored_with_author_and_date(self, engine, host, stores):
        """Test stored rows carry the resolved author, date and branch."""
        host.add_repository(
            "acme/widgets",
            1,
            commits=[make_commit(make_sha(1), date=None, committer_date="2024-03-04T05:06:07Z")],
            default_branch="trunk",
        )
        repo = await track(stores, host, 1)

        await engine.sync(repo.id, FULL)

        [commit] = await stores.commits.get_by_repository(repo.id)
        author = await stores.authors.get_by_github_id(1)
        assert commit.author_id == author.id
        assert commit.commit_date == datetime(2024, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        assert commit.branch == "trunk"


class TestCommitFiltering:
    """Test cases for bots and per-commit errors."""

    @pytest.mark.asyncio
    async def test_bot_commits_are_skipped(self, engine, host, stores):
        """Test bot commits are counted and neither authors nor commits are stored."""
        commits = [
            make_commit(make_sha(1)),
            make_commit(make_sha(2), login="dependabot[bot]", user_id=49699333, email="bot@github.com"),
            make_commit(make_sha(3), login="github-actions[bot]", user_id=41898282, email=None),
        ]
        host.add_repository("acme/widgets", 1, commits=commits)
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_processed == 3
        assert outcome.commits_skipped_bots == 2
        assert outcome.commits_created == 1
        assert outcome.authors_created == 1
        assert await stores.authors.get_by_github_id(49699333) is None
        assert await stores.commits.get_shas(repo.id) == {make_sha(1)}

    @pytest.mark.asyncio
    async def test_per_commit_errors_do_not_stop_the_run(self, engine, host, stores):
        """Test bad commits are reported and the rest are stored."""
        commits = [
            make_commit(make_sha(1)),
            make_commit(make_sha(2), date=None, committer_date=None),
            make_commit(make_sha(3), login=None, user_id=None, email=None),
            make_commit("abc"),
            make_commit(make_sha(5)),
        ]
        host.add_repository("acme/widgets", 1, commits=commits)
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_processed == 5
        assert outcome.commits_created == 2
        assert len(outcome.errors) == 3
        assert any(make_sha(2) in error and "No commit date" in error for error in outcome.errors)
        assert any(make_sha(3) in error for error in outcome.errors)
        assert any("abc" in error for error in outcome.errors)
        assert outcome.completed

    @pytest.mark.asyncio
    async def test_integrity_failure_is_an_error_not_a_duplicate(self, engine, host, stores):
        """Test a commit pointing at a vanished author is reported rather than counted as stored."""
        host.add_repository("acme/widgets", 1, commits=[make_commit(make_sha(1))])
        repo = await track(stores, host, 1)
        engine.resolver.resolve = AsyncMock(return_value=MagicMock(id=999, created=False))

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_skipped_duplicate == 0
        assert outcome.commits_created == 0
        assert len(outcome.errors) == 1
        assert make_sha(1) in outcome.errors[0]
        assert await stores.commits.count_for_repository(repo.id) == 0

    @pytest.mark.asyncio
    async def test_email_only_authors_are_deduplicated(self, engine, host, stores):
        """Test commits without an account resolve by email across case."""
        commits = [
            make_commit(make_sha(1), login=None, user_id=None, email="Dev@Example.com"),
            make_commit(make_sha(2), login=None, user_id=None, email="dev@example.com"),
            make_commit(make_sha(3), login="dev", user_id=8, email="DEV@example.com"),
        ]
        host.add_repository("acme/widgets", 1, commits=commits)
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.authors_created == 1
        assert await stores.authors.count() == 1
        assert (await stores.authors.get_by_github_id(8)).email == "Dev@Example.com"


class TestForkAttribution:
    """Test cases for syncing forks."""

    async def setup_fork(self, host, stores, engine, link=True):
        host.add_repository("acme/widgets", 1, commits=[make_commit("h1" * 20), make_commit("h2" * 20)])
        host.add_repository(
            "bob/widgets",
            2,
            commits=[make_commit("h3" * 20), make_commit("h1" * 20), make_commit("h2" * 20)],
            parent="acme/widgets",
        )
        parent = await track(stores, host, 1)
        fork = await track(stores, host, 2)
        if link:
            await engine.forks.link_to_parent(fork.id, "acme/widgets")
        return parent, fork

    @pytest.mark.asyncio
    async def test_shared_commits_go_to_parent(self, engine, host, stores):
        """Test parent hashes stay with the parent and only fork-only commits go to the fork."""
        parent, fork = await self.setup_fork(host, stores, engine)

        outcome = await engine.sync(fork.id, FULL)

        assert outcome.parent_outcome is not None
        assert outcome.parent_outcome.commits_created == 2
        assert outcome.commits_processed == 3
        assert outcome.commits_created == 1
        assert outcome.commits_skipped_duplicate == 2
        assert await stores.commits.get_shas(parent.id) == {"h1" * 20, "h2" * 20}
        assert await stores.commits.get_shas(fork.id) == {"h3" * 20}

    @pytest.mark.asyncio
    async def test_parent_is_synced_first(self, engine, host, stores):
        """Test the parent listing is fetched before the fork listing."""
        parent, fork = await self.setup_fork(host, stores, engine)

        await engine.sync(fork.id, FULL)

        assert [call["full_name"] for call in host.calls] == ["acme/widgets", "bob/widgets"]
        assert (await stores.repositories.get_by_id(parent.id)).last_synced_at == START

    @pytest.mark.asyncio
    async def test_parent_not_stored_attributes_everything_to_fork(self, engine, host, stores):
        """Test an unlinked fork keeps all of its commits."""
        host.add_repository(
            "bob/widgets", 2, commits=[make_commit("h1" * 20), make_commit("h3" * 20)], parent="acme/widgets"
        )
        fork = await track(stores, host, 2)
        await engine.forks.detect_and_link_fork(fork.id, HostRepository.from_api(host.repositories[2]))

        outcome = await engine.sync(fork.id, FULL)

        assert outcome.parent_outcome is None
        assert outcome.commits_created == 2
        assert await stores.commits.get_shas(fork.id) == {"h1" * 20, "h3" * 20}

    @pytest.mark.asyncio
    async def test_parent_failure_is_recorded_not_raised(self, engine, host, stores):
        """Test an exception in the parent pre-sync leaves the fork sync running."""
        parent, fork = await self.setup_fork(host, stores, engine)
        host.fail("acme/widgets", 1, RuntimeError("parent exploded"))

        outcome = await engine.sync(fork.id, FULL)

        assert any("Parent sync failed" in error for error in outcome.errors)
        assert outcome.commits_created == 3
        assert outcome.completed

    @pytest.mark.asyncio
    async def test_parent_page_error_stays_in_parent_outcome(self, engine, host, stores):
        """Test a host error while syncing the parent is reported on the parent outcome."""
        parent, fork = await self.setup_fork(host, stores, engine)
        host.fail("acme/widgets", 1, TransientError("unavailable", status_code=503))

        outcome = await engine.sync(fork.id, FULL)

        assert outcome.parent_outcome.errors
        assert not outcome.parent_outcome.completed
        assert (await stores.repositories.get_by_id(parent.id)).last_synced_at is None
        assert outcome.completed

    @pytest.mark.asyncio
    async def test_parent_hashes_reloaded_after_parent_sync(self, engine, host, stores):
        """Test hashes the parent gains between fork syncs are honoured."""
        parent, fork = await self.setup_fork(host, stores, engine)
        await engine.sync(fork.id, FULL)

        new = make_commit("h4" * 20, date="2024-07-01T00:00:00Z")
        host.commits[1].insert(0, new)
        host.commits[2].insert(0, new)
        await engine.sync(fork.id, FULL)

        assert "h4" * 20 in await stores.commits.get_shas(parent.id)
        assert "h4" * 20 not in await stores.commits.get_shas(fork.id)

    @pytest.mark.asyncio
    async def test_parent_hashes_are_not_reused_across_runs(self, engine, host, stores):
        """Test a later run sees parent commits stored by an intervening direct parent sync."""
        shared = make_commit("a1" * 20)
        host.add_repository("acme/widgets", 1, commits=[shared])
        host.add_repository("bob/widgets", 2, commits=[shared], parent="acme/widgets")
        host.add_repository("eve/widgets", 3, commits=[make_commit("e1" * 20)], parent="bob/widgets")
        acme = await track(stores, host, 1)
        bob = await track(stores, host, 2)
        eve = await track(stores, host, 3)
        await engine.forks.link_to_parent(bob.id, "acme/widgets")
        await engine.forks.link_to_parent(eve.id, "bob/widgets")
        await engine.sync(bob.id)

        upstream = make_commit("a4" * 20, date="2024-07-01T00:00:00Z")
        host.commits[1].insert(0, upstream)
        host.commits[2].insert(0, upstream)
        await engine.sync(acme.id)
        await engine.sync(eve.id)

        assert "a4" * 20 in await stores.commits.get_shas(acme.id)
        assert await stores.commits.get_shas(bob.id) == set()

    @pytest.mark.asyncio
    async def test_parent_presync_does_not_recurse(self, engine, host, stores):
        """Test syncing a fork of a fork pre-syncs only the direct parent."""
        parent, fork = await self.setup_fork(host, stores, engine)
        host.add_repository("eve/widgets", 3, commits=[make_commit("h5" * 20)], parent="bob/widgets")
        grandchild = await track(stores, host, 3)
        await engine.forks.link_to_parent(grandchild.id, "bob/widgets")

        outcome = await engine.sync(grandchild.id, FULL)

        assert [call["full_name"] for call in host.calls] == ["bob/widgets", "eve/widgets"]
        assert outcome.parent_outcome.parent_outcome is None


class TestAvailabilityDuringSync:
    """Test cases for page errors, missing and renamed repositories."""

    @pytest.mark.asyncio
    async def test_page_error_stops_without_watermark(self, engine, host, stores):
        """Test a failed page keeps earlier commits and leaves the watermark alone."""
        host.add_repository("acme/widgets", 1, commits=history(150))
        host.fail("acme/widgets", 2, TransientError("bad gateway", status_code=502))
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_created == 100
        assert any("page 2" in error for error in outcome.errors)
        assert outcome.watermark is None
        assert (await stores.repositories.get_by_id(repo.id)).last_synced_at is None

    @pytest.mark.asyncio
    async def test_other_host_error_is_not_retried_by_engine(self, engine, host, stores):
        """Test the engine records a non-transient host error once and stops."""
        host.add_repository("acme/widgets", 1, commits=history(3))
        host.fail("acme/widgets", 1, HostError("conflict", status_code=409))
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, FULL)

        assert len(host.calls) == 1
        assert outcome.commits_processed == 0
        assert not outcome.completed

    @pytest.mark.asyncio
    async def test_deleted_repository_is_marked_missing(self, engine, host, stores):
        """Test a repository gone from the host is flagged missing without raising."""
        host.add_repository("acme/widgets", 1, commits=history(3))
        repo = await track(stores, host, 1)
        host.delete(1)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.marked_missing is True
        assert any("Marking as missing" in error for error in outcome.errors)
        stored = await stores.repositories.get_by_id(repo.id)
        assert stored.is_missing is True
        assert stored.last_synced_at is None

    @pytest.mark.asyncio
    async def test_successful_sync_marks_found(self, engine, host, stores):
        """Test a missing repository that syncs again is flagged available."""
        host.add_repository("acme/widgets", 1, commits=history(3))
        repo = await track(stores, host, 1)
        await stores.repositories.set_missing(repo.id, True)

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.completed
        assert (await stores.repositories.get_by_id(repo.id)).is_missing is False

    @pytest.mark.asyncio
    async def test_renamed_repository_continues_under_new_name(self, engine, host, stores):
        """Test a rename is detected by host id and paging resumes under the new name."""
        host.add_repository("acme/widgets", 1, commits=history(5))
        repo = await track(stores, host, 1)
        host.rename(1, "acme/gizmos")

        outcome = await engine.sync(repo.id, FULL)

        assert outcome.commits_created == 5
        assert outcome.completed
        assert not outcome.marked_missing
        assert [call["full_name"] for call in host.calls] == ["acme/widgets", "acme/gizmos"]
        stored = await stores.repositories.get_by_id(repo.id)
        assert stored.full_name == "acme/gizmos"
        assert stored.is_missing is False

    @pytest.mark.asyncio
    async def test_unavailable_but_existing_is_a_page_error(self, engine, host, stores):
        """Test a 404 on the listing for a repository that still exists is only recorded."""
        host.add_repository("acme/widgets", 1, commits=history(3))
        repo = await track(stores, host, 1)
        host.fail("acme/widgets", 1, RepositoryUnavailableError(full_name="acme/widgets"))

        outcome = await engine.sync(repo.id, FULL)

        assert not outcome.marked_missing
        assert not outcome.completed
        assert (await stores.repositories.get_by_id(repo.id)).is_missing is False

    @pytest.mark.asyncio
    async def test_timeout_stops_at_page_boundary(self, stores, host):
        """Test an expired timeout ends the run between pages without a watermark."""
        ticks = itertools.count(0, 0.6)
        engine = CommitSyncEngine(
            stores, host, SyncSettings(), clock=lambda: START, monotonic=lambda: next(ticks)
        )
        host.add_repository("acme/widgets", 1, commits=history(250))
        repo = await track(stores, host, 1)

        outcome = await engine.sync(repo.id, SyncOptions(full_sync=True, timeout=1.0))

        assert outcome.commits_created == 100
        assert any("timed out" in error for error in outcome.errors)
        assert outcome.watermark is None


class TestSyncEvents:
    """Test cases for event publication."""

    @pytest.mark.asyncio
    async def test_sync_completed_event(self, stores, host):
        """Test a finished run publishes a sync-completed event."""
        publisher = AsyncMock()
        engine = CommitSyncEngine(stores, host, SyncSettings(), publisher=publisher, clock=lambda: START)
        host.add_repository("acme/widgets", 1, commits=history(2))
        repo = await track(stores, host, 1)

        await engine.sync(repo.id, FULL)

        event_type, repository_id, data = publisher.publish.await_args.args
        assert event_type == EventType.SYNC_COMPLETED
        assert repository_id == repo.id
        assert data["commits_created"] == 2
        assert data["completed"] is True


class TestSyncMany:
    """Test cases for concurrent multi-repository syncs."""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, engine):
        """Test no more than max_concurrency syncs run at once and order is kept."""
        running = 0
        peak = 0

        async def fake_sync(repository_id, options=None):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            if repository_id == 3:
                raise RepositoryNotFound(3)
            return SyncOutcome(repository_id=repository_id)

        engine.sync = fake_sync
        results = await engine.sync_many([1, 2, 3, 4, 5], max_concurrency=2)

        assert peak == 2
        assert [r.repository_id for r in results if not isinstance(r, BaseException)] == [1, 2, 4, 5]
        assert isinstance(results[2], RepositoryNotFound)
