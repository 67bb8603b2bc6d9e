from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from index_engine.core.config import settings


def build_engine(database_url: str, echo: bool = False):
    """Create an async engine; in-memory SQLite shares one connection."""
    kwargs = {"echo": echo, "future": True}
    in_memory = ":memory:" in database_url or database_url in ("sqlite://", "sqlite+aiosqlite://")
    if database_url.startswith("sqlite") and in_memory:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(database_url, **kwargs)


def build_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False
    )


# Create async engine
engine = build_engine(settings.database_url, echo=settings.database_echo)

# Create async session factory
async_session = build_session_factory(engine)

# Base class for models
Base = declarative_base()
