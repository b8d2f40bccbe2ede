from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.core.db import get_session
from app.core.security import ADMIN_ROLE, create_access_token
from app.main import app
from app.models import topic as _topic  # noqa: F401
from app.models.topic import Topic, TopicStatus
from app.services.topics import SqlTopicStore, TopicService

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
async def session_maker() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
async def session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_maker() as db_session:
        yield db_session


@pytest.fixture
def topic_service(session: AsyncSession) -> TopicService:
    return TopicService(SqlTopicStore(session))


@pytest.fixture
async def client(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncClient]:
    async def override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_maker() as db_session:
            yield db_session

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    token = create_access_token("admin@example.com", role=ADMIN_ROLE)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def editor_headers() -> dict[str, str]:
    token = create_access_token("editor@example.com", role="editor")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_topic() -> Callable[..., Topic]:
    """Build detached Topic rows for the pure tree/placement/visibility tests."""
    counter = {"value": 0}

    def _make(
        name: str,
        *,
        parent: Topic | None = None,
        level: int | None = None,
        status: TopicStatus = TopicStatus.ACTIVE,
        order_index: int = 0,
        topic_id: UUID | None = None,
        parent_id: UUID | None = None,
    ) -> Topic:
        counter["value"] += 1
        resolved_parent_id = parent.id if parent is not None else parent_id
        if level is None:
            level = parent.level + 1 if parent is not None else 0
        return Topic(
            id=topic_id or uuid4(),
            name=name,
            slug=name.lower(),
            status=status,
            parent_id=resolved_parent_id,
            level=level,
            order_index=order_index,
            created_at=BASE_TIME + timedelta(seconds=counter["value"]),
            updated_at=BASE_TIME,
        )

    return _make
