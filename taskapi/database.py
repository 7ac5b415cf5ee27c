from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from taskapi.core.config import Settings, get_settings


def build_engine(url: str, settings: Settings) -> AsyncEngine:
    options = {"echo": False, "future": True, "pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg"):
        # bound every statement so a stuck query surfaces as an error
        options["pool_timeout"] = settings.db_pool_timeout
        options["connect_args"] = {"command_timeout": settings.db_command_timeout}
    return create_async_engine(url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


settings = get_settings()

# Create async engines; the service engine carries the privileged credentials
# used by the archival sweep
engine = build_engine(settings.database_url, settings)
service_engine = (
    build_engine(settings.service_database_url, settings)
    if settings.service_database_url
    else engine
)

async_session = build_session_factory(engine)
service_session = build_session_factory(service_engine)


# Dependency for getting an owner-scoped DB session
async def get_db():
    async with async_session() as session:
        yield session


# Dependency for the privileged session; never used by the task routes
async def get_service_db():
    async with service_session() as session:
        yield session
