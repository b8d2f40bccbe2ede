from __future__ import annotations

from pydantic import BaseModel, Field

from app.models.topic import TopicStatus


class TopicItem(BaseModel):
    id: str
    name: str
    slug: str
    description: str | None = None
    status: TopicStatus
    parent_id: str | None = None
    level: int
    order_index: int
    created_by: str | None = None
    created_at: str
    updated_at: str


class TopicNodeItem(TopicItem):
    children: list[TopicNodeItem] = Field(default_factory=list)


class TopicListResponse(BaseModel):
    items: list[TopicItem]


class TopicTreeResponse(BaseModel):
    roots: list[TopicNodeItem]


class TopicCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    slug: str | None = Field(default=None, max_length=160)
    description: str | None = None
    status: TopicStatus = TopicStatus.ACTIVE
    parent_id: str | None = None
    order_index: int | None = None


class TopicUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    slug: str | None = Field(default=None, max_length=160)
    description: str | None = None
    status: TopicStatus | None = None
    order_index: int | None = None


class TopicReparentRequest(BaseModel):
    parent_id: str | None = None


class TopicReorderRequest(BaseModel):
    parent_id: str | None = None
    ordered_ids: list[str] = Field(min_length=1)


class TopicPlacementResponse(BaseModel):
    topic_id: str
    parent_id: str | None = None
    allowed: bool
    reason: str
    message: str | None = None


class TopicDeleteResponse(BaseModel):
    topic_id: str
    message: str


TopicNodeItem.model_rebuild()
