"""Topic service: the entry point admin and public code use for topics.

Every write operation reads a fresh snapshot from the store, validates
locally, and only then writes. The snapshot is read while holding the
serializer keys it implies, so with a locking serializer no other guarded
write can change the rows a decision was based on. Structural operations
(create, delete, reparent) also hold the tree-wide key.

Multi-row operations (sibling swap, reorder, reparent with descendant level
updates) issue one store call per row with no enclosing transaction: if a
later write fails, the earlier ones stay applied and the error propagates
unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Hashable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, NoReturn
from uuid import UUID

from app.models.topic import Topic, TopicStatus
from app.services.topics.errors import (
    InvalidTopicDataError,
    PlacementRejected,
    PlacementResult,
    TopicHasChildrenError,
    TopicNotFoundError,
)
from app.services.topics.locks import NullWriteSerializer, WriteSerializer
from app.services.topics.ordering import (
    find_neighbour,
    get_siblings,
    next_order_index,
    plan_dense_order,
    sibling_sort_key,
)
from app.services.topics.placement import (
    MAX_TOPIC_LEVEL,
    MAX_TOPIC_LEVELS,
    check_placement,
    descendants_with_depth,
    group_children,
    index_topics,
)
from app.services.topics.slug import clean_topic_name, create_slug
from app.services.topics.store import TopicFilter, TopicStore
from app.services.topics.tree import TopicNode, build_topic_tree
from app.services.topics.visibility import filter_effectively_visible

logger = logging.getLogger(__name__)

ROOTS_SCOPE = "topics:roots"
TREE_SCOPE = "topics:tree"

PATCHABLE_FIELDS = frozenset({"name", "slug", "description", "status", "order_index"})

KeyDeriver = Callable[[Mapping[UUID, Topic]], tuple[Hashable, ...]]


def _root_of(topic_by_id: Mapping[UUID, Topic], topic_id: UUID) -> UUID:
    current = topic_id
    for _ in range(MAX_TOPIC_LEVELS + 1):
        topic = topic_by_id.get(current)
        if topic is None or topic.parent_id is None:
            return current
        current = topic.parent_id
    return current


def _scope_of(topic_by_id: Mapping[UUID, Topic], parent_id: UUID | None) -> Hashable:
    if parent_id is None:
        return ROOTS_SCOPE
    return _root_of(topic_by_id, parent_id)


def _topic_keys(topic_by_id: Mapping[UUID, Topic], topic_id: UUID) -> tuple[Hashable, ...]:
    """Sibling scope and root subtree of an existing topic."""
    topic = topic_by_id.get(topic_id)
    if topic is None:
        return (topic_id,)
    return (_scope_of(topic_by_id, topic.parent_id), _root_of(topic_by_id, topic_id))


def _coerce_status(value: Any) -> TopicStatus:
    try:
        return TopicStatus(value)
    except ValueError as exc:
        raise InvalidTopicDataError(f"Unknown topic status: {value!r}") from exc


def _require_name(name: str | None) -> str:
    cleaned = clean_topic_name(name or "")
    if not cleaned:
        raise InvalidTopicDataError("Topic name cannot be empty.")
    return cleaned


class TopicService:
    def __init__(
        self,
        store: TopicStore,
        *,
        serializer: WriteSerializer | None = None,
    ) -> None:
        self.store = store
        self.serializer = serializer or NullWriteSerializer()

    async def list_all(self) -> list[Topic]:
        return await self.store.fetch_all()

    async def list_active_visible(self) -> list[Topic]:
        return filter_effectively_visible(await self.list_all())

    def build_tree(self, topics: Iterable[Topic]) -> list[TopicNode]:
        return build_topic_tree(topics)

    async def get(self, topic_id: UUID) -> Topic:
        rows = await self.store.fetch_filtered(TopicFilter(ids=[topic_id]))
        if not rows:
            raise TopicNotFoundError(topic_id)
        return rows[0]

    async def get_visible_by_slug(self, slug: str) -> Topic:
        visible = [topic for topic in await self.list_active_visible() if topic.slug == slug]
        if not visible:
            raise TopicNotFoundError(slug)
        visible.sort(key=lambda topic: (topic.level, sibling_sort_key(topic)))
        return visible[0]

    async def get_siblings(
        self,
        parent_id: UUID | None,
        topics: Iterable[Topic] | None = None,
    ) -> list[Topic]:
        if topics is None:
            topics = await self.list_all()
        return get_siblings(topics, parent_id)

    async def check_placement(
        self,
        topic_id: UUID,
        proposed_parent_id: UUID | None,
    ) -> PlacementResult:
        snapshot = await self.list_all()
        if topic_id not in index_topics(snapshot):
            raise TopicNotFoundError(topic_id)
        return check_placement(snapshot, topic_id, proposed_parent_id)

    async def create(
        self,
        *,
        name: str,
        slug: str | None = None,
        description: str | None = None,
        status: TopicStatus | str = TopicStatus.ACTIVE,
        parent_id: UUID | None = None,
        order_index: int | None = None,
        created_by: str | None = None,
    ) -> Topic:
        cleaned_name = _require_name(name)
        topic_slug = create_slug(slug or "") or create_slug(cleaned_name)
        if not topic_slug:
            raise InvalidTopicDataError("Topic slug cannot be empty.")
        topic_status = _coerce_status(status)

        def keys(topic_by_id: Mapping[UUID, Topic]) -> tuple[Hashable, ...]:
            return (TREE_SCOPE, _scope_of(topic_by_id, parent_id))

        async with self._guarded_snapshot(keys) as snapshot:
            topic_by_id = index_topics(snapshot)
            level = 0
            if parent_id is not None:
                parent = topic_by_id.get(parent_id)
                if parent is None:
                    self._reject(PlacementResult.MISSING_PARENT, None, parent_id)
                level = parent.level + 1
                if level > MAX_TOPIC_LEVEL:
                    self._reject(PlacementResult.DEPTH_EXCEEDED, None, parent_id)

            topic = await self.store.insert(
                {
                    "name": cleaned_name,
                    "slug": topic_slug,
                    "description": description,
                    "status": topic_status,
                    "parent_id": parent_id,
                    "level": level,
                    "order_index": (
                        order_index
                        if order_index is not None
                        else next_order_index(snapshot, parent_id)
                    ),
                    "created_by": created_by,
                }
            )
        logger.info("Created topic %s (%s) under %s", topic.id, topic.slug, parent_id)
        return topic

    async def update(self, topic_id: UUID, patch: Mapping[str, Any]) -> Topic:
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise InvalidTopicDataError(
                "Cannot update topic field(s): " + ", ".join(sorted(unknown))
            )

        async with self._guarded_snapshot(
            lambda topic_by_id: _topic_keys(topic_by_id, topic_id)
        ) as snapshot:
            current = index_topics(snapshot).get(topic_id)
            if current is None:
                raise TopicNotFoundError(topic_id)

            changes: dict[str, Any] = {}
            if "name" in patch:
                changes["name"] = _require_name(patch["name"])
            if "slug" in patch:
                changes["slug"] = create_slug(patch["slug"] or "") or create_slug(
                    changes.get("name", current.name)
                )
            if "description" in patch:
                changes["description"] = patch["description"]
            if "status" in patch:
                changes["status"] = _coerce_status(patch["status"])
            if "order_index" in patch and patch["order_index"] is not None:
                changes["order_index"] = int(patch["order_index"])

            if not changes:
                return current
            topic = await self.store.update_by_id(topic_id, changes)
        logger.info("Updated topic %s: %s", topic_id, ", ".join(sorted(changes)))
        return topic

    async def delete(self, topic_id: UUID) -> None:
        def keys(topic_by_id: Mapping[UUID, Topic]) -> tuple[Hashable, ...]:
            return (TREE_SCOPE, *_topic_keys(topic_by_id, topic_id))

        async with self._guarded_snapshot(keys) as snapshot:
            if topic_id not in index_topics(snapshot):
                raise TopicNotFoundError(topic_id)

            child_count = sum(1 for candidate in snapshot if candidate.parent_id == topic_id)
            if child_count:
                logger.warning(
                    "Rejected delete of topic %s: %s child topic(s)", topic_id, child_count
                )
                raise TopicHasChildrenError(topic_id, child_count)

            await self.store.delete_by_id(topic_id)
        logger.info("Deleted topic %s", topic_id)

    async def reparent(self, topic_id: UUID, new_parent_id: UUID | None) -> Topic:
        def keys(topic_by_id: Mapping[UUID, Topic]) -> tuple[Hashable, ...]:
            return (
                TREE_SCOPE,
                *_topic_keys(topic_by_id, topic_id),
                _scope_of(topic_by_id, new_parent_id),
            )

        async with self._guarded_snapshot(keys) as snapshot:
            topic_by_id = index_topics(snapshot)
            topic = topic_by_id.get(topic_id)
            if topic is None:
                raise TopicNotFoundError(topic_id)
            if topic.parent_id == new_parent_id:
                return topic

            result = check_placement(snapshot, topic_id, new_parent_id)
            if result is not PlacementResult.OK:
                self._reject(result, topic_id, new_parent_id)

            new_level = 0 if new_parent_id is None else topic_by_id[new_parent_id].level + 1
            descendants = descendants_with_depth(topic_id, group_children(snapshot))

            moved = await self.store.update_by_id(
                topic_id,
                {
                    "parent_id": new_parent_id,
                    "level": new_level,
                    "order_index": next_order_index(snapshot, new_parent_id),
                },
            )
            for descendant, distance in descendants:
                if descendant.level != new_level + distance:
                    await self.store.update_by_id(
                        descendant.id, {"level": new_level + distance}
                    )
        logger.info(
            "Moved topic %s under %s (level %s, %s descendant(s))",
            topic_id,
            new_parent_id,
            new_level,
            len(descendants),
        )
        return moved

    async def move_up(self, topic_id: UUID) -> Topic:
        return await self._move(topic_id, -1)

    async def move_down(self, topic_id: UUID) -> Topic:
        return await self._move(topic_id, 1)

    async def reorder(
        self,
        parent_id: UUID | None,
        ordered_ids: Sequence[UUID],
    ) -> list[Topic]:
        async with self._guarded_snapshot(
            lambda topic_by_id: (_scope_of(topic_by_id, parent_id),)
        ) as snapshot:
            if parent_id is not None and parent_id not in index_topics(snapshot):
                raise TopicNotFoundError(parent_id)

            siblings = get_siblings(snapshot, parent_id)
            sibling_ids = {topic.id for topic in siblings}
            if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != sibling_ids:
                raise InvalidTopicDataError(
                    "Reorder must list every sibling under the parent exactly once."
                )

            changes = plan_dense_order(siblings, ordered_ids)
            for sibling_id, index in changes.items():
                await self.store.update_by_id(sibling_id, {"order_index": index})
        if changes:
            logger.info("Reordered %s topic(s) under %s", len(changes), parent_id)
        return await self.get_siblings(parent_id)

    async def _move(self, topic_id: UUID, offset: int) -> Topic:
        async with self._guarded_snapshot(
            lambda topic_by_id: _topic_keys(topic_by_id, topic_id)
        ) as snapshot:
            topic = index_topics(snapshot).get(topic_id)
            if topic is None:
                raise TopicNotFoundError(topic_id)

            siblings = get_siblings(snapshot, topic.parent_id)
            neighbour = find_neighbour(siblings, topic_id, offset)
            if neighbour is None:
                return topic

            topic_rank = topic.order_index
            neighbour_rank = neighbour.order_index
            if topic_rank != neighbour_rank:
                moved = await self.store.update_by_id(topic_id, {"order_index": neighbour_rank})
                await self.store.update_by_id(neighbour.id, {"order_index": topic_rank})
            else:
                # Equal ranks would make a swap invisible; renumber the siblings densely instead.
                ordered_ids = [sibling.id for sibling in siblings]
                position = ordered_ids.index(topic_id)
                ordered_ids[position], ordered_ids[position + offset] = (
                    ordered_ids[position + offset],
                    ordered_ids[position],
                )
                moved = topic
                for sibling_id, index in plan_dense_order(siblings, ordered_ids).items():
                    updated = await self.store.update_by_id(sibling_id, {"order_index": index})
                    if sibling_id == topic_id:
                        moved = updated
        logger.info("Moved topic %s %s among siblings", topic_id, "up" if offset < 0 else "down")
        return moved

    @asynccontextmanager
    async def _guarded_snapshot(self, keys: KeyDeriver) -> AsyncIterator[list[Topic]]:
        """Yield a snapshot read while holding the serializer keys it implies.

        The keys are first derived from an unguarded read. When the snapshot
        taken under the guard implies other keys (a concurrent move changed
        a root), the guard is released and taken again with the new keys.
        """
        wanted = keys(index_topics(await self.list_all()))
        while True:
            async with self.serializer.guard(*wanted):
                snapshot = await self.list_all()
                held = wanted
                wanted = keys(index_topics(snapshot))
                if set(wanted) == set(held):
                    yield snapshot
                    return

    def _reject(
        self,
        reason: PlacementResult,
        topic_id: UUID | None,
        parent_id: UUID | None,
    ) -> NoReturn:
        logger.warning(
            "Rejected placement of topic %s under %s: %s", topic_id, parent_id, reason.value
        )
        raise PlacementRejected(reason)
