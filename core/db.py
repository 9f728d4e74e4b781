"""
Async database engine and session management.

Purpose:
- Create SQLAlchemy async engine (aiomysql in production, aiosqlite in tests)
- Provide async session factory for dependency injection
- Provide Base declarative class for ORM models
- Create tables on startup for local development

Production notes:
- Use connection pooling with appropriate pool_size and max_overflow
- Use Alembic migrations instead of create_all
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from config.settings import settings
import logging
from typing import AsyncGenerator, Optional

logger = logging.getLogger(__name__)

Base = declarative_base()

# When DATABASE_URL is "disabled", do not create an engine at all.
engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
	return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


if settings.db_enabled:
	engine = create_async_engine(
		settings.DATABASE_URL,
		echo=settings.DEBUG,
		pool_pre_ping=True,
	)
	async_session_maker = build_session_maker(engine)
	logger.info("Async DB engine created for %s", engine.url.render_as_string(hide_password=True))
else:
	logger.warning("DATABASE_URL is 'disabled' - DB engine will not be created.")


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
	"""
	Yield an AsyncSession bound to the configured engine.

	Raises RuntimeError when the database is disabled; tests override this
	dependency with their own session factory.
	"""
	if async_session_maker is None:
		raise RuntimeError("Database is disabled (DATABASE_URL=disabled)")

	async with async_session_maker() as session:
		try:
			yield session
		finally:
			await session.close()


async def init_models(bind: Optional[AsyncEngine] = None) -> None:
	"""Create all tables registered on Base (development convenience)."""
	from models import db_models  # noqa: F401 ensure models are imported so tables are registered

	target = bind or engine
	if target is None:
		logger.warning("init_models skipped: no engine configured")
		return
	async with target.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)
