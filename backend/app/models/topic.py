from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Column, String, Text
from sqlmodel import Field, SQLModel


def utc_now_naive() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class TopicStatus(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"


class Topic(SQLModel, table=True):
    __tablename__ = "topics"

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(120), nullable=False))
    # Not unique: the same slug may appear under different parents.
    slug: str = Field(sa_column=Column(String(160), nullable=False, index=True))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: TopicStatus = Field(default=TopicStatus.ACTIVE, nullable=False, index=True)
    parent_id: UUID | None = Field(
        default=None,
        foreign_key="topics.id",
        nullable=True,
        index=True,
    )
    level: int = Field(default=0, nullable=False)
    order_index: int = Field(default=0, nullable=False)
    created_by: str | None = Field(default=None, max_length=255, nullable=True)
    created_at: datetime = Field(default_factory=utc_now_naive, nullable=False)
    updated_at: datetime = Field(default_factory=utc_now_naive, nullable=False)
