"""Record store access for topic rows.

The topic services only depend on the :class:`TopicStore` protocol. Every
call is an independent round trip that commits on its own; nothing groups
several calls into one transaction.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.topic import Topic, TopicStatus, utc_now_naive
from app.services.topics.errors import InvalidTopicDataError, TopicNotFoundError

ANY_PARENT: Any = object()

DEFAULT_ORDER_BY: tuple[str, ...] = ("parent_id", "order_index", "created_at", "id")

_SORTABLE_COLUMNS = {
    "id": Topic.id,
    "name": Topic.name,
    "slug": Topic.slug,
    "status": Topic.status,
    "parent_id": Topic.parent_id,
    "level": Topic.level,
    "order_index": Topic.order_index,
    "created_at": Topic.created_at,
    "updated_at": Topic.updated_at,
}

_IMMUTABLE_FIELDS = {"id", "created_at"}


@dataclass(frozen=True)
class TopicFilter:
    status: TopicStatus | None = None
    # ANY_PARENT matches every row; None matches roots only.
    parent_id: Any = ANY_PARENT
    slug: str | None = None
    ids: Sequence[UUID] | None = field(default=None)


class TopicStore(Protocol):
    async def fetch_all(self) -> list[Topic]: ...

    async def fetch_filtered(
        self,
        filters: TopicFilter,
        order_by: Sequence[str] = DEFAULT_ORDER_BY,
    ) -> list[Topic]: ...

    async def insert(self, fields: Mapping[str, Any]) -> Topic: ...

    async def update_by_id(self, topic_id: UUID, patch: Mapping[str, Any]) -> Topic: ...

    async def delete_by_id(self, topic_id: UUID) -> None: ...


def _order_clauses(order_by: Sequence[str]) -> list[Any]:
    clauses = []
    for raw_name in order_by:
        descending = raw_name.startswith("-")
        name = raw_name.lstrip("-")
        column = _SORTABLE_COLUMNS.get(name)
        if column is None:
            raise InvalidTopicDataError(f"Cannot sort topics by {name!r}")
        clauses.append(column.desc() if descending else column.asc())
    return clauses


class SqlTopicStore:
    """Topic store backed by an async SQLModel session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def fetch_all(self) -> list[Topic]:
        return await self.fetch_filtered(TopicFilter())

    async def fetch_filtered(
        self,
        filters: TopicFilter,
        order_by: Sequence[str] = DEFAULT_ORDER_BY,
    ) -> list[Topic]:
        stmt = select(Topic)
        if filters.status is not None:
            stmt = stmt.where(Topic.status == filters.status)
        if filters.parent_id is None:
            stmt = stmt.where(Topic.parent_id.is_(None))
        elif filters.parent_id is not ANY_PARENT:
            stmt = stmt.where(Topic.parent_id == filters.parent_id)
        if filters.slug is not None:
            stmt = stmt.where(Topic.slug == filters.slug)
        if filters.ids is not None:
            stmt = stmt.where(Topic.id.in_(list(filters.ids)))
        stmt = stmt.order_by(*_order_clauses(order_by))
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def insert(self, fields: Mapping[str, Any]) -> Topic:
        now = utc_now_naive()
        topic = Topic(**{"created_at": now, "updated_at": now, **fields})
        self.session.add(topic)
        await self.session.commit()
        await self.session.refresh(topic)
        return topic

    async def update_by_id(self, topic_id: UUID, patch: Mapping[str, Any]) -> Topic:
        topic = await self._get(topic_id)
        for key, value in patch.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            setattr(topic, key, value)
        topic.updated_at = utc_now_naive()
        self.session.add(topic)
        await self.session.commit()
        await self.session.refresh(topic)
        return topic

    async def delete_by_id(self, topic_id: UUID) -> None:
        topic = await self._get(topic_id)
        await self.session.delete(topic)
        await self.session.commit()

    async def _get(self, topic_id: UUID) -> Topic:
        result = await self.session.execute(
            select(Topic)
            .where(Topic.id == topic_id)
            .execution_options(populate_existing=True)
        )
        topic = result.scalar_one_or_none()
        if not topic:
            raise TopicNotFoundError(topic_id)
        return topic
