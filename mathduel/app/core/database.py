from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./mathduel.db")
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")

def get_database_url(env: str = "prod") -> str:
    """Helper to retrieve DB URL in scripts context"""
    return TEST_DATABASE_URL if env == "test" else DATABASE_URL

def build_engine(url: str):
    if url.startswith("sqlite"):
        # In-memory SQLite needs a single shared connection
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        url,
        echo=False,
        # Concurrent games + pairing ticks + API traffic
        pool_size=20,
        max_overflow=20
    )

engine = build_engine(DATABASE_URL)
AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()

_session_makers = {"prod": AsyncSessionLocal}

def get_session_maker(env: str = "prod"):
    if env not in _session_makers:
        _session_makers[env] = sessionmaker(
            bind=build_engine(get_database_url(env)),
            class_=AsyncSession,
            expire_on_commit=False
        )
    return _session_makers[env]

# Dependency for API routes
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
