from __future__ import annotations

from collections.abc import Iterable, Mapping
from uuid import UUID

from app.models.topic import Topic, TopicStatus
from app.services.topics.placement import MAX_TOPIC_LEVELS, index_topics


def is_effectively_visible(topic: Topic, topic_by_id: Mapping[UUID, Topic]) -> bool:
    """True when ``topic`` and every ancestor it can resolve are active.

    An unresolvable parent id ends the walk as visible. The walk gives up
    (not visible) after ``MAX_TOPIC_LEVELS`` steps, which only happens on
    cyclic or over-deep data.
    """
    current: Topic | None = topic
    for _ in range(MAX_TOPIC_LEVELS):
        if current.status != TopicStatus.ACTIVE:
            return False
        if current.parent_id is None:
            return True
        current = topic_by_id.get(current.parent_id)
        if current is None:
            return True
    return False


def filter_effectively_visible(topics: Iterable[Topic]) -> list[Topic]:
    topic_list = list(topics)
    topic_by_id = index_topics(topic_list)
    return [topic for topic in topic_list if is_effectively_visible(topic, topic_by_id)]
