"""Persisted API key table.

The gateway itself only ever does a point lookup by key value followed by an
independent ``last_used_at`` write.  The remaining operations exist for the
``chatgate keys`` command group.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import StoreFailure

logger = logging.getLogger("chatgate.keystore")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_key() -> str:
    """Return a new opaque API key (32 random bytes as 64 hex chars)."""
    return secrets.token_hex(32)


class Base(DeclarativeBase):
    pass


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        # Never include the key value; it ends up in logs.
        return f"<ApiKey id={self.id} active={self.is_active}>"


class KeyNotFound(LookupError):
    """No API key row with the requested id."""

    def __init__(self, key_id: int) -> None:
        super().__init__(f"API key {key_id} not found")
        self.key_id = key_id


class KeyStore:
    """Async access to the ``api_keys`` table.

    One instance owns one SQLAlchemy engine (and its connection pool); it is
    safe to share between concurrent requests because every operation runs
    in its own short-lived session.
    """

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine: AsyncEngine = create_async_engine(database_url, echo=echo)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)

    async def connect(self) -> None:
        """Create the table if needed and verify connectivity.

        Raises ``SQLAlchemyError`` (or ``OSError``) when the store is
        unreachable; callers treat that as fatal at startup.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text("SELECT 1"))

    async def ping(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Key store health probe failed: %s", exc)
            return False
        return True

    async def close(self) -> None:
        await self.engine.dispose()

    # --- request path ---

    async def find_by_key(self, key: str) -> ApiKey | None:
        """Point lookup by key value.

        Raises
        ------
        StoreFailure
            If the store cannot be queried.
        """
        try:
            async with self._sessions() as session:
                result = await session.execute(select(ApiKey).where(ApiKey.key == key))
                return result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreFailure() from exc

    async def touch(self, key_id: int, when: datetime | None = None) -> None:
        """Record *when* (default: now) as the key's last use.

        Concurrent touches of the same key are last-write-wins.
        """
        async with self._sessions() as session:
            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .values(last_used_at=when or utcnow())
            )
            await session.commit()

    # --- management ---

    async def create(self, description: str | None = None) -> ApiKey:
        record = ApiKey(key=generate_key(), description=description or "No description")
        async with self._sessions() as session:
            session.add(record)
            await session.commit()
        return record

    async def list_keys(self) -> list[ApiKey]:
        """All keys, newest first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(ApiKey).order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
            )
            return list(result.scalars().all())

    async def get(self, key_id: int) -> ApiKey:
        async with self._sessions() as session:
            record = await session.get(ApiKey, key_id)
        if record is None:
            raise KeyNotFound(key_id)
        return record

    async def set_active(self, key_id: int, active: bool) -> ApiKey:
        async with self._sessions() as session:
            record = await session.get(ApiKey, key_id)
            if record is None:
                raise KeyNotFound(key_id)
            record.is_active = active
            await session.commit()
        return record

    async def delete(self, key_id: int) -> None:
        async with self._sessions() as session:
            result = await session.execute(delete(ApiKey).where(ApiKey.id == key_id))
            if result.rowcount == 0:
                raise KeyNotFound(key_id)
            await session.commit()
