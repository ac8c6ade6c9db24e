from __future__ import annotations

import os
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy import DateTime, Integer, delete, func, select
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

logger = logging.getLogger("counter.storage")

DEFAULT_MYSQL_DATABASE = "nodejs_demo"
DEFAULT_SQLITE_PATH = "counter.db"


class RecordStoreError(RuntimeError):
    """A store call failed; `operation` names the call."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"record store {operation} failed: {type(cause).__name__}: {cause}")
        self.operation = operation


class RecordStore(Protocol):
    backend: str

    async def init(self) -> None: ...

    async def append_record(self) -> None: ...

    async def count_records(self) -> int: ...

    async def clear_all_records(self) -> None: ...

    async def close(self) -> None: ...


# ---------- SQL ----------
class Base(DeclarativeBase):
    pass


class CounterRecord(Base):
    # Column names match the table already in the cloud MySQL deployment
    __tablename__ = "Counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column("createdAt", DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        "updatedAt", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<CounterRecord(id={self.id}, count={self.count})>"


class SqlRecordStore:
    """
    Records live in one table; the counter is its row count.

    Each call runs in its own transaction, so a single append/count/clear is
    atomic. Nothing spans calls.
    """

    backend = "sql"

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self._engine: AsyncEngine = create_async_engine(url, echo=echo)
        self._session = async_sessionmaker(self._engine, expire_on_commit=False)

    async def init(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise RecordStoreError("init", e) from e
        logger.info("Schema ready", extra={"url": make_url(self.url).render_as_string(hide_password=True)})

    async def append_record(self) -> None:
        try:
            async with self._session.begin() as session:
                session.add(CounterRecord())
        except SQLAlchemyError as e:
            raise RecordStoreError("append", e) from e

    async def count_records(self) -> int:
        try:
            async with self._session() as session:
                n = await session.scalar(select(func.count()).select_from(CounterRecord))
        except SQLAlchemyError as e:
            raise RecordStoreError("count", e) from e
        return int(n or 0)

    async def clear_all_records(self) -> None:
        try:
            async with self._session.begin() as session:
                await session.execute(delete(CounterRecord))
        except SQLAlchemyError as e:
            raise RecordStoreError("clear", e) from e

    async def close(self) -> None:
        await self._engine.dispose()


# ---------- In-memory ----------
class InMemoryRecordStore:
    backend = "memory"

    def __init__(self):
        self._records: List[Dict[str, object]] = []
        self._next_id = 1

    async def init(self) -> None:
        return None

    async def append_record(self) -> None:
        self._records.append({"id": self._next_id, "count": 1, "created_at": datetime.now(timezone.utc)})
        self._next_id += 1

    async def count_records(self) -> int:
        return len(self._records)

    async def clear_all_records(self) -> None:
        self._records.clear()

    async def close(self) -> None:
        return None

    def iter_records(self):
        """Yield (id, count, created_at) per stored record, for inspection only."""
        for r in self._records:
            yield (r["id"], r["count"], r["created_at"])


# ---------- Factory ----------
def database_url_from_env(env: Optional[Dict[str, str]] = None) -> str:
    """
    DATABASE_URL wins, then the MYSQL_* variables of the cloud deployment,
    then a local SQLite file.
    """
    env = os.environ if env is None else env

    url = env.get("DATABASE_URL")
    if url:
        return url

    address = env.get("MYSQL_ADDRESS")
    if address:
        host, _, port = address.partition(":")
        return URL.create(
            "mysql+aiomysql",
            username=env.get("MYSQL_USERNAME"),
            password=env.get("MYSQL_PASSWORD"),
            host=host,
            port=int(port) if port else None,
            database=env.get("MYSQL_DATABASE", DEFAULT_MYSQL_DATABASE),
        ).render_as_string(hide_password=False)

    return f"sqlite+aiosqlite:///{env.get('SQLITE_PATH', DEFAULT_SQLITE_PATH)}"


def create_store(backend: Optional[str] = None, url: Optional[str] = None) -> RecordStore:
    backend = (backend or os.getenv("STORE_BACKEND", "sql")).lower()
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "sql":
        return SqlRecordStore(url or database_url_from_env())
    raise ValueError(f"Unknown STORE_BACKEND: {backend!r} (expected 'sql' or 'memory')")
