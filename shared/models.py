"""
Data models for the commit sync service.

This module provides:
- SQLAlchemy tables for repositories, authors and commits
- Pydantic models for records read back from the store
- Pydantic models parsed from host API payloads
- Per-run results (sync outcome, fork link, rename check, batch report)
"""

from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset on storage)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class RepositoryStatus(Enum):
    """Availability of a repository on the host."""
    AVAILABLE = "available"
    MISSING = "missing"


# SQLAlchemy Models for Database
class RepositoryModel(Base):
    """SQLAlchemy model for tracked repositories."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    github_id = Column(BigInteger, nullable=False, unique=True)
    full_name = Column(String(255), nullable=False, unique=True)
    default_branch = Column(String(255), nullable=False, default="main")
    is_fork = Column(Boolean, nullable=False, default=False)
    parent_full_name = Column(String(255), nullable=True)
    parent_repository_id = Column(
        Integer, ForeignKey("repositories.id", ondelete="SET NULL"), nullable=True
    )
    is_missing = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_repositories_parent_repository_id", "parent_repository_id"),
        Index("idx_repositories_is_fork", "is_fork"),
        Index("idx_repositories_last_synced_at", "last_synced_at"),
    )


class AuthorModel(Base):
    """SQLAlchemy model for commit authors."""

    __tablename__ = "authors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    github_id = Column(BigInteger, nullable=True, unique=True)
    username = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(320), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "github_id IS NOT NULL OR email IS NOT NULL", name="ck_authors_identity"
        ),
    )


# Emails identify an author case-insensitively
Index("uq_authors_email_lower", func.lower(AuthorModel.email), unique=True)


class CommitModel(Base):
    """SQLAlchemy model for commits."""

    __tablename__ = "commits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(
        Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    author_id = Column(Integer, ForeignKey("authors.id"), nullable=False, index=True)
    sha = Column(String(40), nullable=False, index=True)
    commit_date = Column(DateTime(timezone=True), nullable=False, index=True)
    branch = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("repository_id", "sha", name="uq_commits_repository_sha"),
        Index("idx_commits_repository_branch", "repository_id", "branch"),
        Index("idx_commits_repository_commit_date", "repository_id", "commit_date"),
    )


# Pydantic models for stored records
class Repository(BaseModel):
    """Repository record as stored locally."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    github_id: int
    full_name: str
    default_branch: str = "main"
    is_fork: bool = False
    parent_full_name: Optional[str] = None
    parent_repository_id: Optional[int] = None
    is_missing: bool = False
    last_synced_at: Optional[datetime] = None

    @field_validator("last_synced_at")
    @classmethod
    def validate_last_synced_at(cls, v):
        return ensure_utc(v)

    @property
    def owner_and_name(self) -> tuple:
        """Split "owner/name" into its parts."""
        owner, _, name = self.full_name.partition("/")
        if not owner or not name:
            raise ValueError(f"Invalid repository full name: {self.full_name}")
        return owner, name

    @property
    def status(self) -> RepositoryStatus:
        return RepositoryStatus.MISSING if self.is_missing else RepositoryStatus.AVAILABLE


class Author(BaseModel):
    """Author record as stored locally."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    github_id: Optional[int] = None
    username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


class Commit(BaseModel):
    """Commit record as stored locally."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    repository_id: int
    author_id: int
    sha: str
    commit_date: datetime
    branch: str

    @field_validator("commit_date")
    @classmethod
    def validate_commit_date(cls, v):
        return ensure_utc(v)


# Pydantic models for host payloads
class HostRepository(BaseModel):
    """Repository descriptor returned by the host."""

    host_id: int
    full_name: str
    default_branch: str = "main"
    is_fork: bool = False
    parent_full_name: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "HostRepository":
        parent = payload.get("parent") or {}
        return cls(
            host_id=payload.get("id"),
            full_name=payload.get("full_name"),
            default_branch=payload.get("default_branch") or "main",
            is_fork=bool(payload.get("fork", False)),
            parent_full_name=parent.get("full_name"),
        )


class HostCommit(BaseModel):
    """Flattened view of one entry of the host's commit listing."""

    sha: str = Field(..., min_length=7, max_length=40)
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    authored_at: Optional[datetime] = None
    committed_at: Optional[datetime] = None
    author_id: Optional[int] = None
    author_login: Optional[str] = None

    @field_validator("author_name", "author_email", "author_login")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "HostCommit":
        commit = payload.get("commit") or {}
        git_author = commit.get("author") or {}
        committer = commit.get("committer") or {}
        account = payload.get("author") or {}
        return cls(
            sha=payload.get("sha"),
            author_name=git_author.get("name"),
            author_email=git_author.get("email"),
            authored_at=git_author.get("date"),
            committed_at=committer.get("date"),
            author_id=account.get("id"),
            author_login=account.get("login"),
        )

    @property
    def commit_date(self) -> Optional[datetime]:
        """Author date, falling back to the committer date."""
        return ensure_utc(self.authored_at or self.committed_at)


class AuthorInfo(BaseModel):
    """Identity signals carried by a commit."""

    name: Optional[str] = None
    email: Optional[str] = None
    github_id: Optional[int] = None
    username: Optional[str] = None

    @classmethod
    def from_commit(cls, commit: HostCommit) -> "AuthorInfo":
        return cls(
            name=commit.author_name,
            email=commit.author_email,
            github_id=commit.author_id,
            username=commit.author_login,
        )

    @property
    def has_identity(self) -> bool:
        return self.github_id is not None or bool(self.email)


# Operation inputs and results
class SyncOptions(BaseModel):
    """Options for one repository sync."""

    full_sync: bool = Field(default=False, description="Ignore the watermark")
    page_batch_size: int = Field(default=1000, ge=1, description="Commits per processing chunk")
    timeout: Optional[float] = Field(
        default=None, gt=0, description="Seconds after which paging stops at the next page boundary"
    )


class SyncOutcome(BaseModel):
    """Counters and non-fatal errors of one sync run."""

    repository_id: int
    commits_processed: int = 0
    commits_created: int = 0
    commits_skipped_duplicate: int = 0
    commits_skipped_bots: int = 0
    authors_created: int = 0
    errors: List[str] = Field(default_factory=list)
    marked_missing: bool = False
    watermark: Optional[datetime] = None
    parent_outcome: Optional["SyncOutcome"] = None

    @property
    def completed(self) -> bool:
        """Whether the run reached the end of the history and advanced the watermark."""
        return self.watermark is not None


class ForkLink(BaseModel):
    """Result of fork detection and parent linking."""

    is_fork: bool
    parent_full_name: Optional[str] = None
    parent_repository_id: Optional[int] = None
    parent_linked: bool = False


class RenameCheck(BaseModel):
    """Result of a rename check against the host."""

    renamed: bool = False
    exists: Optional[bool] = None
    old_full_name: Optional[str] = None
    new_full_name: Optional[str] = None


class BatchStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    MISSING = "missing"


class BatchEntry(BaseModel):
    repository_id: int
    full_name: str
    status: BatchStatus
    commits_created: int = 0
    authors_created: int = 0
    error: Optional[str] = None


class BatchResult(BaseModel):
    """Aggregate report of a batch sync."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    marked_missing: int = 0
    total_commits_created: int = 0
    total_authors_created: int = 0
    results: List[BatchEntry] = Field(default_factory=list)


__all__ = [
    "Base", "utcnow", "ensure_utc", "RepositoryStatus",
    "RepositoryModel", "AuthorModel", "CommitModel",
    "Repository", "Author", "Commit",
    "HostRepository", "HostCommit", "AuthorInfo",
    "SyncOptions", "SyncOutcome", "ForkLink", "RenameCheck",
    "BatchStatus", "BatchEntry", "BatchResult",
]
