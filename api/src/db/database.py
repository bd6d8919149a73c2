from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from api.src.config import get_settings

settings = get_settings()

def async_database_url(url: str) -> str:
    """Select the async driver for the configured database URL."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url

engine = create_async_engine(
    async_database_url(settings.database_url),
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()

async def get_db():
    """Request-scoped session; routes commit explicitly."""
    async with async_session() as session:
        yield session

async def init_db():
    """Create the repositories, runs and stages tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
