import pathlib
from typing import Any, Dict, Iterable, Type

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class Database:
    """Handle on the durable store: one engine (connection pool) per process.

    Usage:
        db = Database(settings.database_url)
        await db.init()
        async with db.session() as session:
            ...
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    def _ensure_data_dir(self) -> None:
        if self.url.startswith("sqlite") and ":memory:" not in self.url:
            path = pathlib.Path(self.url.split("///", 1)[-1]).parent
            path.mkdir(parents=True, exist_ok=True)

    async def init(self) -> None:
        self._ensure_data_dir()
        self._engine = create_async_engine(self.url, echo=self._echo, future=True)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)

        # import models and create tables
        from . import models  # noqa: F401
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    def session(self) -> AsyncSession:
        """New session, meant for ``async with``."""
        assert self._sessionmaker is not None, "DB is not initialized"
        return self._sessionmaker()

    @property
    def dialect_name(self) -> str:
        assert self._engine is not None, "DB is not initialized"
        return self._engine.dialect.name

    def upsert(
        self,
        model: Type[Base],
        values: Dict[str, Any],
        conflict_columns: Iterable[str],
        update_columns: Iterable[str],
    ):
        """
        Build ``INSERT ... ON CONFLICT (...) DO UPDATE`` for the active dialect.

        Args:
            model: Mapped class to insert into
            values: Column values for the new row
            conflict_columns: Natural unique key of the table
            update_columns: Columns overwritten when the key already exists

        Returns:
            Executable insert statement
        """
        dialect = postgresql if self.dialect_name == "postgresql" else sqlite
        stmt = dialect.insert(model).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={column: stmt.excluded[column] for column in update_columns},
        )
