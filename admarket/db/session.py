from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from admarket.core.config import settings

# One pool per process; Celery workers bind it to worker_loop()
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
