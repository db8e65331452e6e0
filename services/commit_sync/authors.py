"""
Author identity resolution.

An author is the same person when the host account ids match or, failing that,
when the emails match ignoring case. Resolution never creates a second record
for an identity that already exists.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from shared.database import AuthorRepository
from shared.models import Author, AuthorInfo
from services.commit_sync.errors import IncompleteIdentityError

logger = logging.getLogger(__name__)


def is_bot(username: Optional[str], suffix: str = "[bot]") -> bool:
    """Whether a username follows the host's bot-account naming convention."""
    return bool(username) and username.endswith(suffix)


@dataclass(frozen=True)
class ResolvedAuthor:
    id: int
    created: bool


class AuthorResolver:
    """Find-or-create for commit authors."""

    def __init__(self, authors: AuthorRepository):
        self.authors = authors

    async def _lookup(self, info: AuthorInfo) -> Optional[Author]:
        if info.github_id is not None:
            existing = await self.authors.get_by_github_id(info.github_id)
            if existing is not None:
                if info.username and existing.username != info.username:
                    logger.info(
                        f"Author {existing.id} renamed from {existing.username} to {info.username}"
                    )
                    await self.authors.update(existing.id, {"username": info.username})
                return existing

        if info.email:
            existing = await self.authors.get_by_email(info.email)
            if existing is not None:
                # Backfill the durable id onto an email-only author, never replace one
                if info.github_id is not None and existing.github_id is None:
                    await self.authors.update(
                        existing.id,
                        {"github_id": info.github_id, "username": info.username or existing.username},
                    )
                return existing

        return None

    async def resolve(self, info: AuthorInfo) -> ResolvedAuthor:
        """
        Resolve commit author signals to a stored author.

        Precedence is host account id, then case-insensitive email, then a new
        record. Raises ``IncompleteIdentityError`` when neither id nor email
        is present.
        """
        if not info.has_identity:
            raise IncompleteIdentityError("Commit author has neither a GitHub id nor an email")

        existing = await self._lookup(info)
        if existing is not None:
            return ResolvedAuthor(id=existing.id, created=False)

        try:
            author = await self.authors.create(
                {
                    "github_id": info.github_id,
                    "username": info.username,
                    "name": info.name,
                    "email": info.email,
                }
            )
        except IntegrityError:
            # Another sync stored the same identity since our lookup
            existing = await self._lookup(info)
            if existing is None:
                raise
            return ResolvedAuthor(id=existing.id, created=False)

        logger.debug(f"Created author {author.id} ({info.username or info.email})")
        return ResolvedAuthor(id=author.id, created=True)
