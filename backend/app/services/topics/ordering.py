from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from uuid import UUID

from app.models.topic import Topic


def sibling_sort_key(topic: Topic) -> tuple[int, datetime, str]:
    # order_index may collide after a partial swap; created_at then id keeps the order stable.
    return (
        topic.order_index if topic.order_index is not None else 0,
        topic.created_at or datetime.min,
        str(topic.id),
    )


def sort_siblings(topics: Iterable[Topic]) -> list[Topic]:
    return sorted(topics, key=sibling_sort_key)


def get_siblings(all_topics: Iterable[Topic], parent_id: UUID | None) -> list[Topic]:
    return sort_siblings(topic for topic in all_topics if topic.parent_id == parent_id)


def find_neighbour(siblings: Sequence[Topic], topic_id: UUID, offset: int) -> Topic | None:
    """Return the sibling ``offset`` positions away from ``topic_id``, if any."""
    for position, topic in enumerate(siblings):
        if topic.id != topic_id:
            continue
        target = position + offset
        if 0 <= target < len(siblings):
            return siblings[target]
        return None
    return None


def next_order_index(all_topics: Iterable[Topic], parent_id: UUID | None) -> int:
    values = [
        topic.order_index
        for topic in all_topics
        if topic.parent_id == parent_id and topic.order_index is not None
    ]
    if not values:
        return 0
    return max(values) + 1


def plan_dense_order(
    siblings: Sequence[Topic],
    ordered_ids: Sequence[UUID],
) -> dict[UUID, int]:
    """Map each sibling whose rank changes to its new dense ``order_index``.

    ``ordered_ids`` must be a permutation of the sibling ids; callers validate
    that before planning.
    """
    current = {topic.id: topic.order_index for topic in siblings}
    changes: dict[UUID, int] = {}
    for index, topic_id in enumerate(ordered_ids):
        if current.get(topic_id) != index:
            changes[topic_id] = index
    return changes
