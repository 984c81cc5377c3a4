from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ngurra_api.config import settings

# Async engine with connection pooling, shared by every request in this process.
# Creating it does not connect; the first checkout does.
engine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_timeout=settings.db_pool_timeout,
    pool_recycle=settings.db_pool_recycle,
    pool_pre_ping=settings.db_pool_pre_ping,
    echo=settings.db_echo,
    # asyncpg driver options, passed straight to asyncpg.connect()
    connect_args={"command_timeout": settings.db_statement_timeout},
)

# expire_on_commit=False keeps objects usable after commit without re-querying,
# which would otherwise trigger implicit I/O outside an await.
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that provides a database session per request.

    Commits on success, rolls back on exception. ORM errors are re-raised
    untouched; the global error handler maps unique-constraint violations to
    409 and missing rows to 404.
    """
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def ping(session: AsyncSession) -> None:
    """Round-trip a trivial query. Raises SQLAlchemyError if the database is unreachable."""
    await session.execute(text("SELECT 1"))


async def shutdown() -> None:
    """Close all pooled connections; called from the app lifespan on shutdown."""
    await engine.dispose()
