"""
Pytest configuration and fixtures for testing
"""
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from database import Base
from crud.user import UserRepository
from tests.helpers import START, FakeGateway, add_plan
from utils.clock import FrozenClock

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Create test engine
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    future=True,
)

# Create test session factory
TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


@pytest.fixture
async def test_db():
    """
    Fixture that provides an isolated, in-memory SQLite database connection for each test.

    This fixture:
    - Creates all tables before the test runs
    - Yields a clean AsyncSession for the test
    - Drops all tables after the test completes
    """
    async with test_engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def file_session_factory(tmp_path):
    """
    Session factory over an on-disk SQLite database.

    Each session gets its own connection, so concurrent sessions really
    contend for the same rows (the in-memory engine shares one connection).
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", echo=False)
    async with engine.begin() as conn:
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
async def free_plan(test_db):
    return await add_plan(test_db, "FREE")


@pytest.fixture
async def basic_plan(test_db):
    return await add_plan(test_db, "BASIC")


@pytest.fixture
async def premium_plan(test_db):
    return await add_plan(test_db, "PREMIUM")


@pytest.fixture
async def user(test_db):
    return await UserRepository(test_db).create_user(
        {"id": "user-1", "email": "Estudiante@example.com", "name": "Test Student"}
    )


@pytest.fixture
def gateway():
    return FakeGateway()
