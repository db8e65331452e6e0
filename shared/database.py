"""
Database layer for the commit sync service.

This module provides:
- Async engine and session management
- Repository pattern implementation for repositories, authors and commits
- Transaction management
- Uniqueness-backed idempotent commit inserts
- Database health monitoring
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, AsyncGenerator, Iterable, Set
from functools import wraps

from sqlalchemy import event, text, or_, and_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import select, update, delete, func

from config.settings import Settings, get_database_url, settings as default_settings
from shared.models import (
    Base,
    RepositoryModel,
    AuthorModel,
    CommitModel,
    Repository,
    Author,
    Commit,
    HostRepository,
    utcnow,
)

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores REFERENCES clauses unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def parent_changed(record, is_fork: bool, parent_full_name: Optional[str]) -> bool:
    """Whether a linked record's parent differs from fresh host fork info."""
    if record.parent_repository_id is None:
        return False
    return not is_fork or record.parent_full_name != parent_full_name


def to_async_url(url: str) -> str:
    """Select the async driver for a configured database URL."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, url: Optional[str] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.url = to_async_url(url or get_database_url(self.config))
        self.engine = None
        self.SessionLocal = None
        self._initialized = False

    def initialize(self):
        """Initialize database connections."""
        if self._initialized:
            return

        if self.url.startswith("sqlite"):
            # One shared connection keeps in-memory databases alive
            self.engine = create_async_engine(
                self.url,
                poolclass=StaticPool,
                echo=self.config.database.echo,
                connect_args={"check_same_thread": False},
            )
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        else:
            self.engine = create_async_engine(
                self.url,
                pool_size=self.config.database.pool_size,
                max_overflow=self.config.database.max_overflow,
                pool_timeout=self.config.database.pool_timeout,
                pool_recycle=self.config.database.pool_recycle,
                echo=self.config.database.echo,
            )

        self.SessionLocal = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

        self._initialized = True
        logger.info("Database manager initialized successfully")

    async def create_tables(self):
        """Create all database tables."""
        if not self._initialized:
            self.initialize()

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")

    async def drop_tables(self):
        """Drop all database tables."""
        if not self._initialized:
            self.initialize()

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped successfully")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous database session committed on exit."""
        if not self._initialized:
            self.initialize()

        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> Dict[str, Any]:
        """Perform database health check."""
        try:
            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()
            return {"status": "healthy", "timestamp": utcnow()}
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e), "timestamp": utcnow()}

    async def close(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


def database_transaction(func):
    """Decorator running a repository method inside its own session."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        async with self.db.session() as session:
            try:
                return await func(self, *args, session=session, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"Database transaction failed in {func.__qualname__}: {e}")
                raise

    return wrapper


class BaseRepository:
    """Base repository class with common database operations."""

    model_class = None
    schema_class = None

    def __init__(self, db: DatabaseManager):
        self.db = db

    def _to_schema(self, instance):
        if instance is None:
            return None
        return self.schema_class.model_validate(instance)

    @database_transaction
    async def create(self, data: Dict[str, Any], session: AsyncSession):
        """Create a new record."""
        instance = self.model_class(**data)
        session.add(instance)
        await session.flush()
        await session.refresh(instance)
        return self._to_schema(instance)

    @database_transaction
    async def get_by_id(self, record_id: int, session: AsyncSession):
        """Get record by ID."""
        result = await session.execute(
            select(self.model_class).where(self.model_class.id == record_id)
        )
        return self._to_schema(result.scalar_one_or_none())

    @database_transaction
    async def update(self, record_id: int, data: Dict[str, Any], session: AsyncSession) -> bool:
        """Update a record; returns whether a row matched."""
        values = dict(data)
        if hasattr(self.model_class, "updated_at"):
            values["updated_at"] = utcnow()
        result = await session.execute(
            update(self.model_class).where(self.model_class.id == record_id).values(**values)
        )
        return result.rowcount > 0

    @database_transaction
    async def count(self, session: AsyncSession) -> int:
        """Get total count of records."""
        result = await session.execute(select(func.count(self.model_class.id)))
        return result.scalar() or 0


class RepoRepository(BaseRepository):
    """Repository for tracked repository records."""

    model_class = RepositoryModel
    schema_class = Repository

    @database_transaction
    async def get_by_full_name(self, full_name: str, session: AsyncSession) -> Optional[Repository]:
        result = await session.execute(
            select(RepositoryModel).where(RepositoryModel.full_name == full_name)
        )
        return self._to_schema(result.scalar_one_or_none())

    @database_transaction
    async def get_by_github_id(self, github_id: int, session: AsyncSession) -> Optional[Repository]:
        result = await session.execute(
            select(RepositoryModel).where(RepositoryModel.github_id == github_id)
        )
        return self._to_schema(result.scalar_one_or_none())

    @database_transaction
    async def upsert_from_host(self, descriptor: HostRepository, session: AsyncSession) -> Repository:
        """Create a record for a host repository, or refresh the one keyed by its host id."""
        result = await session.execute(
            select(RepositoryModel).where(RepositoryModel.github_id == descriptor.host_id)
        )
        instance = result.scalar_one_or_none()
        if instance is None:
            instance = RepositoryModel(
                github_id=descriptor.host_id,
                full_name=descriptor.full_name,
                default_branch=descriptor.default_branch,
                is_fork=descriptor.is_fork,
                parent_full_name=descriptor.parent_full_name,
            )
            session.add(instance)
        else:
            if parent_changed(instance, descriptor.is_fork, descriptor.parent_full_name):
                instance.parent_repository_id = None
            instance.full_name = descriptor.full_name
            instance.default_branch = descriptor.default_branch
            instance.is_fork = descriptor.is_fork
            instance.parent_full_name = descriptor.parent_full_name
            instance.updated_at = utcnow()
        await session.flush()
        await session.refresh(instance)
        return self._to_schema(instance)

    @database_transaction
    async def list_all(self, session: AsyncSession) -> List[Repository]:
        result = await session.execute(select(RepositoryModel).order_by(RepositoryModel.full_name))
        return [self._to_schema(row) for row in result.scalars().all()]

    @database_transaction
    async def list_due_for_sync(
        self,
        cutoff: Optional[datetime],
        skip_missing: bool = True,
        session: AsyncSession = None,
    ) -> List[Repository]:
        """Never-synced repositories, plus those synced before ``cutoff`` when given."""
        if cutoff is None:
            condition = RepositoryModel.last_synced_at.is_(None)
        else:
            condition = or_(
                RepositoryModel.last_synced_at.is_(None),
                RepositoryModel.last_synced_at < cutoff,
            )
        if skip_missing:
            condition = and_(condition, RepositoryModel.is_missing.is_(False))
        result = await session.execute(
            select(RepositoryModel).where(condition).order_by(RepositoryModel.full_name)
        )
        return [self._to_schema(row) for row in result.scalars().all()]

    @database_transaction
    async def list_unlinked_forks(
        self, parent_full_name: Optional[str] = None, session: AsyncSession = None
    ) -> List[Repository]:
        """Forks that know their parent's name but are not linked to a parent record."""
        condition = and_(
            RepositoryModel.is_fork.is_(True),
            RepositoryModel.parent_full_name.isnot(None),
            RepositoryModel.parent_repository_id.is_(None),
        )
        if parent_full_name is not None:
            condition = and_(condition, RepositoryModel.parent_full_name == parent_full_name)
        result = await session.execute(
            select(RepositoryModel).where(condition).order_by(RepositoryModel.full_name)
        )
        return [self._to_schema(row) for row in result.scalars().all()]

    @database_transaction
    async def list_linked_forks(self, session: AsyncSession) -> List[Repository]:
        result = await session.execute(
            select(RepositoryModel)
            .where(
                RepositoryModel.is_fork.is_(True),
                RepositoryModel.parent_repository_id.isnot(None),
            )
            .order_by(RepositoryModel.full_name)
        )
        return [self._to_schema(row) for row in result.scalars().all()]

    async def set_fork_info(self, repository_id: int, is_fork: bool, parent_full_name: Optional[str]) -> bool:
        """Store fork status; a removed or different parent drops the existing parent link."""
        data = {"is_fork": is_fork, "parent_full_name": parent_full_name}
        current = await self.get_by_id(repository_id)
        if current is not None and parent_changed(current, is_fork, parent_full_name):
            logger.info(
                f"Repository {repository_id} no longer descends from {current.parent_full_name}; "
                f"clearing parent link {current.parent_repository_id}"
            )
            data["parent_repository_id"] = None
        return await self.update(repository_id, data)

    async def set_parent(self, repository_id: int, parent_repository_id: Optional[int]) -> bool:
        return await self.update(repository_id, {"parent_repository_id": parent_repository_id})

    async def set_missing(self, repository_id: int, is_missing: bool) -> bool:
        return await self.update(repository_id, {"is_missing": is_missing})

    async def rename(self, repository_id: int, full_name: str) -> bool:
        return await self.update(repository_id, {"full_name": full_name})

    async def advance_watermark(self, repository_id: int, synced_at: datetime) -> bool:
        return await self.update(repository_id, {"last_synced_at": synced_at})


class AuthorRepository(BaseRepository):
    """Repository for commit authors."""

    model_class = AuthorModel
    schema_class = Author

    @database_transaction
    async def get_by_github_id(self, github_id: int, session: AsyncSession) -> Optional[Author]:
        result = await session.execute(
            select(AuthorModel).where(AuthorModel.github_id == github_id).limit(1)
        )
        return self._to_schema(result.scalar_one_or_none())

    @database_transaction
    async def get_by_email(self, email: str, session: AsyncSession) -> Optional[Author]:
        """Get author by email, ignoring case."""
        result = await session.execute(
            select(AuthorModel).where(func.lower(AuthorModel.email) == email.lower()).limit(1)
        )
        return self._to_schema(result.scalar_one_or_none())


class CommitRepository(BaseRepository):
    """Repository for commit operations."""

    model_class = CommitModel
    schema_class = Commit

    @database_transaction
    async def insert_if_absent(
        self,
        repository_id: int,
        author_id: int,
        sha: str,
        commit_date: datetime,
        branch: str,
        session: AsyncSession,
    ) -> bool:
        """Insert a commit row; returns False when (repository, sha) is already stored.

        Only the (repository, sha) uniqueness conflict is absorbed; any other
        integrity failure such as a dangling author reference is raised.
        """
        insert = postgresql_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
        statement = (
            insert(CommitModel)
            .values(
                repository_id=repository_id,
                author_id=author_id,
                sha=sha,
                commit_date=commit_date,
                branch=branch,
            )
            .on_conflict_do_nothing(index_elements=["repository_id", "sha"])
        )
        result = await session.execute(statement)
        if result.rowcount == 0:
            logger.debug(f"Commit {sha} already stored for repository {repository_id}")
            return False
        return True

    @database_transaction
    async def get_shas(self, repository_id: int, branch: Optional[str] = None, session: AsyncSession = None) -> Set[str]:
        """All commit hashes stored for a repository, optionally limited to one branch."""
        query = select(CommitModel.sha).where(CommitModel.repository_id == repository_id)
        if branch is not None:
            query = query.where(CommitModel.branch == branch)
        result = await session.execute(query)
        return set(result.scalars().all())

    @database_transaction
    async def get_by_repository(self, repository_id: int, session: AsyncSession) -> List[Commit]:
        result = await session.execute(
            select(CommitModel)
            .where(CommitModel.repository_id == repository_id)
            .order_by(CommitModel.commit_date.desc())
        )
        return [self._to_schema(row) for row in result.scalars().all()]

    @database_transaction
    async def count_for_repository(self, repository_id: int, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count(CommitModel.id)).where(CommitModel.repository_id == repository_id)
        )
        return result.scalar() or 0

    @database_transaction
    async def find_shared_shas(self, fork_id: int, parent_id: int, session: AsyncSession) -> Set[str]:
        """Hashes stored under both the fork and its parent."""
        parent_shas = select(CommitModel.sha).where(CommitModel.repository_id == parent_id)
        result = await session.execute(
            select(CommitModel.sha).where(
                CommitModel.repository_id == fork_id,
                CommitModel.sha.in_(parent_shas),
            )
        )
        return set(result.scalars().all())

    @database_transaction
    async def delete_shas(self, repository_id: int, shas: Iterable[str], session: AsyncSession) -> int:
        shas = list(shas)
        if not shas:
            return 0
        result = await session.execute(
            delete(CommitModel).where(
                CommitModel.repository_id == repository_id,
                CommitModel.sha.in_(shas),
            )
        )
        return result.rowcount or 0


class Stores:
    """The three record repositories sharing one database manager."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.repositories = RepoRepository(db)
        self.authors = AuthorRepository(db)
        self.commits = CommitRepository(db)


__all__ = [
    "DatabaseManager",
    "BaseRepository",
    "RepoRepository",
    "AuthorRepository",
    "CommitRepository",
    "Stores",
    "database_transaction",
    "to_async_url",
]
