"""Placement validation for re-parenting topics.

Checks run in a fixed order and the first failure wins:

1. a root placement (no parent) is always accepted;
2. the proposed parent must not be the topic itself or one of its descendants;
3. the proposed parent must exist;
4. the moved subtree must still fit under ``MAX_TOPIC_LEVEL``.

Everything here is pure. Callers must run the check before writing the new
parent, and surface the returned reason to the user.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from uuid import UUID

from app.models.topic import Topic
from app.services.topics.errors import PlacementResult

MAX_TOPIC_LEVELS = 3
MAX_TOPIC_LEVEL = MAX_TOPIC_LEVELS - 1


@dataclass(frozen=True)
class PlacementRequest:
    topic_id: UUID
    proposed_parent_id: UUID | None
    topics_by_id: Mapping[UUID, Topic]
    children_by_parent: Mapping[UUID | None, list[Topic]]


PlacementCheck = Callable[[PlacementRequest], PlacementResult | None]


def index_topics(all_topics: Iterable[Topic]) -> dict[UUID, Topic]:
    return {topic.id: topic for topic in all_topics}


def group_children(all_topics: Iterable[Topic]) -> dict[UUID | None, list[Topic]]:
    grouped: dict[UUID | None, list[Topic]] = defaultdict(list)
    for topic in all_topics:
        grouped[topic.parent_id].append(topic)
    return dict(grouped)


def subtree_depth(
    topic_id: UUID,
    children_by_parent: Mapping[UUID | None, list[Topic]],
) -> int:
    """Number of levels below ``topic_id`` in its current subtree (0 for a leaf)."""
    depth = 0
    frontier = [topic_id]
    seen = {topic_id}
    while True:
        next_frontier = [
            child.id
            for parent_id in frontier
            for child in children_by_parent.get(parent_id, [])
            if child.id not in seen
        ]
        if not next_frontier:
            return depth
        seen.update(next_frontier)
        frontier = next_frontier
        depth += 1


def descendants_with_depth(
    topic_id: UUID,
    children_by_parent: Mapping[UUID | None, list[Topic]],
) -> list[tuple[Topic, int]]:
    """Topics below ``topic_id`` breadth first, with their distance from it."""
    found: list[tuple[Topic, int]] = []
    seen = {topic_id}
    frontier = [topic_id]
    depth = 0
    while frontier:
        depth += 1
        next_frontier: list[UUID] = []
        for parent_id in frontier:
            for child in children_by_parent.get(parent_id, []):
                if child.id in seen:
                    continue
                seen.add(child.id)
                found.append((child, depth))
                next_frontier.append(child.id)
        frontier = next_frontier
    return found


def _check_root(request: PlacementRequest) -> PlacementResult | None:
    if request.proposed_parent_id is None:
        return PlacementResult.OK
    return None


def _check_cycle(request: PlacementRequest) -> PlacementResult | None:
    current: UUID | None = request.proposed_parent_id
    # Bounded by the topic count so malformed cyclic data still terminates.
    for _ in range(len(request.topics_by_id) + 1):
        if current is None:
            return None
        if current == request.topic_id:
            return PlacementResult.CYCLE
        topic = request.topics_by_id.get(current)
        if topic is None:
            return None
        current = topic.parent_id
    return PlacementResult.CYCLE


def _check_parent_exists(request: PlacementRequest) -> PlacementResult | None:
    if request.proposed_parent_id not in request.topics_by_id:
        return PlacementResult.MISSING_PARENT
    return None


def _check_depth(request: PlacementRequest) -> PlacementResult | None:
    parent = request.topics_by_id[request.proposed_parent_id]
    new_level = parent.level + 1
    if new_level + subtree_depth(request.topic_id, request.children_by_parent) > MAX_TOPIC_LEVEL:
        return PlacementResult.DEPTH_EXCEEDED
    return None


PLACEMENT_CHECKS: tuple[PlacementCheck, ...] = (
    _check_root,
    _check_cycle,
    _check_parent_exists,
    _check_depth,
)


def check_placement(
    all_topics: Iterable[Topic],
    topic_id: UUID,
    proposed_parent_id: UUID | None,
) -> PlacementResult:
    topic_list = list(all_topics)
    request = PlacementRequest(
        topic_id=topic_id,
        proposed_parent_id=proposed_parent_id,
        topics_by_id=index_topics(topic_list),
        children_by_parent=group_children(topic_list),
    )
    for check in PLACEMENT_CHECKS:
        result = check(request)
        if result is not None:
            return result
    return PlacementResult.OK


def can_place(
    all_topics: Iterable[Topic],
    topic_id: UUID,
    proposed_parent_id: UUID | None,
) -> bool:
    return check_placement(all_topics, topic_id, proposed_parent_id) is PlacementResult.OK
