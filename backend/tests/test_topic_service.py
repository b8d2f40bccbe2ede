import asyncio
from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.models.topic import Topic, TopicStatus, utc_now_naive
from app.services.topics import (
    InvalidTopicDataError,
    PlacementRejected,
    PlacementResult,
    SqlTopicStore,
    TopicHasChildrenError,
    TopicNotFoundError,
    TopicService,
    build_topic_tree,
    flatten_tree,
)
from app.services.topics.locks import (
    NullWriteSerializer,
    SubtreeWriteSerializer,
    build_write_serializer,
)
from app.services.topics.store import TopicFilter


class FlakyTopicStore(SqlTopicStore):
    """Fails every update after the first ``allowed_updates`` calls."""

    def __init__(self, session: AsyncSession, *, allowed_updates: int) -> None:
        super().__init__(session)
        self.allowed_updates = allowed_updates
        self.update_calls = 0

    async def update_by_id(self, topic_id: UUID, patch: Mapping[str, Any]) -> Topic:
        self.update_calls += 1
        if self.update_calls > self.allowed_updates:
            raise ConnectionError("record store unavailable")
        return await super().update_by_id(topic_id, patch)


class InMemoryTopicStore:
    """Dict-backed store that yields to the event loop on every call."""

    def __init__(self) -> None:
        self.rows: dict[UUID, dict[str, Any]] = {}

    async def fetch_all(self) -> list[Topic]:
        await asyncio.sleep(0)
        return [Topic(**row) for row in self.rows.values()]

    async def fetch_filtered(self, filters: TopicFilter, order_by=()) -> list[Topic]:
        topics = await self.fetch_all()
        if filters.ids is not None:
            topics = [topic for topic in topics if topic.id in filters.ids]
        return topics

    async def insert(self, fields: Mapping[str, Any]) -> Topic:
        await asyncio.sleep(0)
        now = utc_now_naive()
        row = {"id": uuid4(), "created_at": now, "updated_at": now, **fields}
        self.rows[row["id"]] = row
        return Topic(**row)

    async def update_by_id(self, topic_id: UUID, patch: Mapping[str, Any]) -> Topic:
        await asyncio.sleep(0)
        if topic_id not in self.rows:
            raise TopicNotFoundError(topic_id)
        self.rows[topic_id].update(patch, updated_at=utc_now_naive())
        return Topic(**self.rows[topic_id])

    async def delete_by_id(self, topic_id: UUID) -> None:
        await asyncio.sleep(0)
        if self.rows.pop(topic_id, None) is None:
            raise TopicNotFoundError(topic_id)


def _by_name(topics: list[Topic]) -> dict[str, Topic]:
    return {topic.name: topic for topic in topics}


def _assert_forest_is_consistent(topics: list[Topic]) -> None:
    by_id = {topic.id: topic for topic in topics}
    for topic in topics:
        assert topic.level in {0, 1, 2}
        assert (topic.level == 0) == (topic.parent_id is None)
        current = topic
        for _ in range(3):
            if current.parent_id is None:
                break
            parent = by_id[current.parent_id]
            assert current.level == parent.level + 1
            current = parent
        assert current.parent_id is None


@pytest.mark.asyncio
async def test_create_assigns_level_and_appends_order(topic_service: TopicService) -> None:
    root = await topic_service.create(name="  Marketing   Online ")
    first = await topic_service.create(name="Ads", parent_id=root.id)
    second = await topic_service.create(name="Email", parent_id=root.id, description="Drip")
    leaf = await topic_service.create(name="Cold Email", parent_id=second.id)

    assert root.name == "Marketing Online"
    assert root.slug == "marketing-online"
    assert root.level == 0
    assert root.status == TopicStatus.ACTIVE
    assert (first.level, first.order_index) == (1, 0)
    assert (second.level, second.order_index) == (1, 1)
    assert second.description == "Drip"
    assert leaf.level == 2


@pytest.mark.asyncio
async def test_create_rejects_fourth_level_and_missing_parent(topic_service: TopicService) -> None:
    root = await topic_service.create(name="Root")
    child = await topic_service.create(name="Child", parent_id=root.id)
    grandchild = await topic_service.create(name="Grandchild", parent_id=child.id)

    with pytest.raises(PlacementRejected) as depth_error:
        await topic_service.create(name="Too Deep", parent_id=grandchild.id)
    assert depth_error.value.reason is PlacementResult.DEPTH_EXCEEDED

    with pytest.raises(PlacementRejected) as missing_error:
        await topic_service.create(name="Lost", parent_id=uuid4())
    assert missing_error.value.reason is PlacementResult.MISSING_PARENT

    assert len(await topic_service.list_all()) == 3


@pytest.mark.asyncio
async def test_create_rejects_blank_name(topic_service: TopicService) -> None:
    with pytest.raises(InvalidTopicDataError):
        await topic_service.create(name="   ")


@pytest.mark.asyncio
async def test_update_patches_fields_and_regenerates_blank_slug(
    topic_service: TopicService,
) -> None:
    topic = await topic_service.create(name="Growth", slug="growth-hacks")

    updated = await topic_service.update(
        topic.id,
        {"name": "Growth Loops", "slug": "", "status": "hidden", "description": None},
    )

    assert updated.name == "Growth Loops"
    assert updated.slug == "growth-loops"
    assert updated.status == TopicStatus.HIDDEN
    assert updated.created_at == topic.created_at

    reactivated = await topic_service.update(topic.id, {"status": TopicStatus.ACTIVE})
    assert reactivated.status == TopicStatus.ACTIVE


@pytest.mark.asyncio
async def test_update_refuses_structural_fields(topic_service: TopicService) -> None:
    root = await topic_service.create(name="Root")
    other = await topic_service.create(name="Other")

    with pytest.raises(InvalidTopicDataError):
        await topic_service.update(other.id, {"parent_id": root.id})
    with pytest.raises(InvalidTopicDataError):
        await topic_service.update(other.id, {"status": "archived"})
    with pytest.raises(TopicNotFoundError):
        await topic_service.update(uuid4(), {"name": "Ghost"})


@pytest.mark.asyncio
async def test_delete_rejects_topics_with_children(topic_service: TopicService) -> None:
    root = await topic_service.create(name="Root")
    child = await topic_service.create(name="Child", parent_id=root.id)

    with pytest.raises(TopicHasChildrenError) as exc_info:
        await topic_service.delete(root.id)
    assert exc_info.value.child_count == 1

    await topic_service.delete(child.id)
    await topic_service.delete(root.id)
    assert await topic_service.list_all() == []

    with pytest.raises(TopicNotFoundError):
        await topic_service.delete(root.id)


@pytest.mark.asyncio
async def test_reparent_rewrites_levels_of_whole_subtree(topic_service: TopicService) -> None:
    source = await topic_service.create(name="Source")
    branch = await topic_service.create(name="Branch", parent_id=source.id)
    leaf = await topic_service.create(name="Leaf", parent_id=branch.id)
    target = await topic_service.create(name="Target")
    await topic_service.create(name="Existing", parent_id=target.id)

    await topic_service.reparent(branch.id, None)
    topics = _by_name(await topic_service.list_all())
    assert (topics["Branch"].parent_id, topics["Branch"].level) == (None, 0)
    assert topics["Leaf"].level == 1

    moved = await topic_service.reparent(branch.id, target.id)
    topics = _by_name(await topic_service.list_all())
    assert moved.parent_id == target.id
    assert topics["Branch"].level == 1
    assert topics["Branch"].order_index == 1
    assert topics["Leaf"].level == 2
    assert topics["Leaf"].parent_id == branch.id
    _assert_forest_is_consistent(list(topics.values()))
    assert leaf.id in {topic.id for topic in topics.values()}


@pytest.mark.asyncio
async def test_reparent_reports_specific_rejections(topic_service: TopicService) -> None:
    one = await topic_service.create(name="1")
    two = await topic_service.create(name="2", parent_id=one.id)
    three = await topic_service.create(name="3", parent_id=two.id)
    other = await topic_service.create(name="Other")

    with pytest.raises(PlacementRejected) as cycle:
        await topic_service.reparent(one.id, three.id)
    assert cycle.value.reason is PlacementResult.CYCLE
    assert "descendants" in str(cycle.value)

    with pytest.raises(PlacementRejected) as depth:
        await topic_service.reparent(one.id, other.id)
    assert depth.value.reason is PlacementResult.DEPTH_EXCEEDED

    with pytest.raises(PlacementRejected) as missing:
        await topic_service.reparent(three.id, uuid4())
    assert missing.value.reason is PlacementResult.MISSING_PARENT

    topics = _by_name(await topic_service.list_all())
    assert topics["1"].parent_id is None
    assert topics["3"].parent_id == two.id


@pytest.mark.asyncio
async def test_random_reparent_sequences_keep_forest_bounded(
    topic_service: TopicService,
) -> None:
    ids = []
    for index in range(6):
        topic = await topic_service.create(name=f"T{index}")
        ids.append(topic.id)

    # Deterministic mix of legal and illegal moves.
    moves = [(1, 0), (2, 1), (3, 2), (0, 2), (4, 3), (4, 1), (5, 4), (1, 5), (2, None), (0, 4)]
    for topic_index, parent_index in moves:
        parent_id = ids[parent_index] if parent_index is not None else None
        try:
            await topic_service.reparent(ids[topic_index], parent_id)
        except PlacementRejected:
            pass
        _assert_forest_is_consistent(await topic_service.list_all())


@pytest.mark.asyncio
async def test_move_up_swaps_with_previous_sibling(topic_service: TopicService) -> None:
    parent = await topic_service.create(name="P")
    x = await topic_service.create(name="x", parent_id=parent.id)
    y = await topic_service.create(name="y", parent_id=parent.id)
    z = await topic_service.create(name="z", parent_id=parent.id)

    await topic_service.move_up(y.id)

    siblings = await topic_service.get_siblings(parent.id)
    assert [topic.name for topic in siblings] == ["y", "x", "z"]
    ranks = {topic.name: topic.order_index for topic in siblings}
    assert ranks == {"x": 1, "y": 0, "z": 2}
    assert {x.id, y.id, z.id} == {topic.id for topic in siblings}


@pytest.mark.asyncio
async def test_move_at_edges_is_a_no_op(topic_service: TopicService) -> None:
    first = await topic_service.create(name="first")
    last = await topic_service.create(name="last")

    unchanged_first = await topic_service.move_up(first.id)
    unchanged_last = await topic_service.move_down(last.id)

    assert unchanged_first.order_index == 0
    assert unchanged_last.order_index == 1
    assert [topic.name for topic in await topic_service.get_siblings(None)] == ["first", "last"]


@pytest.mark.asyncio
async def test_failed_swap_leaves_partial_state(session: AsyncSession) -> None:
    setup = TopicService(SqlTopicStore(session))
    x = await setup.create(name="x")
    y = await setup.create(name="y")
    await setup.create(name="z")

    flaky = TopicService(FlakyTopicStore(session, allowed_updates=1))
    with pytest.raises(ConnectionError):
        await flaky.move_up(y.id)

    ranks = {topic.name: topic.order_index for topic in await setup.list_all()}
    assert ranks == {"x": 0, "y": 0, "z": 2}
    assert [topic.name for topic in await setup.get_siblings(None)] == ["x", "y", "z"]

    # With tied ranks a second move renumbers the siblings densely.
    await setup.move_up(y.id)
    siblings = await setup.get_siblings(None)
    assert [topic.name for topic in siblings] == ["y", "x", "z"]
    assert [topic.order_index for topic in siblings] == [0, 1, 2]
    assert x.id == siblings[1].id


@pytest.mark.asyncio
async def test_reorder_rewrites_dense_ranks(topic_service: TopicService) -> None:
    a = await topic_service.create(name="a", order_index=5)
    b = await topic_service.create(name="b", order_index=9)
    c = await topic_service.create(name="c", order_index=9)

    siblings = await topic_service.reorder(None, [c.id, a.id, b.id])

    assert [(topic.name, topic.order_index) for topic in siblings] == [
        ("c", 0),
        ("a", 1),
        ("b", 2),
    ]

    with pytest.raises(InvalidTopicDataError):
        await topic_service.reorder(None, [a.id, b.id])
    with pytest.raises(InvalidTopicDataError):
        await topic_service.reorder(None, [a.id, a.id, b.id])
    with pytest.raises(TopicNotFoundError):
        await topic_service.reorder(uuid4(), [a.id])


@pytest.mark.asyncio
async def test_list_active_visible_hides_descendants_of_hidden_topics(
    topic_service: TopicService,
) -> None:
    shown = await topic_service.create(name="Shown")
    await topic_service.create(name="Shown Child", parent_id=shown.id)
    hidden = await topic_service.create(name="Hidden", status=TopicStatus.HIDDEN)
    hidden_child = await topic_service.create(name="Hidden Child", parent_id=hidden.id)
    await topic_service.create(name="Hidden Grandchild", parent_id=hidden_child.id)

    visible = await topic_service.list_active_visible()

    assert {topic.name for topic in visible} == {"Shown", "Shown Child"}

    await topic_service.update(hidden.id, {"status": "active"})
    assert len(await topic_service.list_active_visible()) == 5


@pytest.mark.asyncio
async def test_get_visible_by_slug_prefers_shallowest_match(
    topic_service: TopicService,
) -> None:
    root = await topic_service.create(name="Tips")
    await topic_service.create(name="Tips", parent_id=root.id)
    hidden = await topic_service.create(name="Secret", status="hidden")

    found = await topic_service.get_visible_by_slug("tips")
    assert found.id == root.id

    with pytest.raises(TopicNotFoundError):
        await topic_service.get_visible_by_slug(hidden.slug)


@pytest.mark.asyncio
async def test_tree_round_trip_covers_every_topic(topic_service: TopicService) -> None:
    root = await topic_service.create(name="Root")
    child = await topic_service.create(name="Child", parent_id=root.id)
    await topic_service.create(name="Leaf", parent_id=child.id)
    await topic_service.create(name="Second Root")

    topics = await topic_service.list_all()
    flat = flatten_tree(topic_service.build_tree(topics))

    assert [topic.name for topic in flat] == ["Root", "Child", "Leaf", "Second Root"]
    assert sorted(str(topic.id) for topic in flat) == sorted(str(topic.id) for topic in topics)
    assert len(build_topic_tree(topics)) == 2


@pytest.mark.asyncio
async def test_check_placement_returns_tagged_result(topic_service: TopicService) -> None:
    root = await topic_service.create(name="Root")
    child = await topic_service.create(name="Child", parent_id=root.id)

    assert await topic_service.check_placement(root.id, child.id) is PlacementResult.CYCLE
    assert await topic_service.check_placement(child.id, None) is PlacementResult.OK
    with pytest.raises(TopicNotFoundError):
        await topic_service.check_placement(uuid4(), None)


@pytest.mark.asyncio
async def test_store_filters_and_sorts(session: AsyncSession) -> None:
    store = SqlTopicStore(session)
    service = TopicService(store)
    root = await service.create(name="Root")
    await service.create(name="B", parent_id=root.id, status="hidden")
    await service.create(name="A", parent_id=root.id)

    active_children = await store.fetch_filtered(
        TopicFilter(status=TopicStatus.ACTIVE, parent_id=root.id),
        order_by=("order_index",),
    )
    roots = await store.fetch_filtered(TopicFilter(parent_id=None))
    by_name = await store.fetch_filtered(TopicFilter(), order_by=("-name",))

    assert [topic.name for topic in active_children] == ["A"]
    assert [topic.name for topic in roots] == ["Root"]
    assert [topic.name for topic in by_name] == ["Root", "B", "A"]

    with pytest.raises(InvalidTopicDataError):
        await store.fetch_filtered(TopicFilter(), order_by=("popularity",))
    with pytest.raises(TopicNotFoundError):
        await store.update_by_id(uuid4(), {"name": "Ghost"})


@pytest.mark.asyncio
async def test_subtree_serializer_runs_guarded_blocks_one_at_a_time() -> None:
    serializer = SubtreeWriteSerializer()
    events: list[str] = []

    async def write(label: str, *keys: str) -> None:
        async with serializer.guard(*keys):
            events.append(f"{label}:start")
            await asyncio.sleep(0.01)
            events.append(f"{label}:end")

    await asyncio.gather(write("first", "root-a"), write("second", "root-b", "root-a"))

    assert events in (
        ["first:start", "first:end", "second:start", "second:end"],
        ["second:start", "second:end", "first:start", "first:end"],
    )


@pytest.mark.asyncio
async def test_service_accepts_subtree_serializer(session: AsyncSession) -> None:
    service = TopicService(SqlTopicStore(session), serializer=SubtreeWriteSerializer())
    root = await service.create(name="Root")
    child = await service.create(name="Child", parent_id=root.id)

    await service.reparent(child.id, None)

    assert [topic.name for topic in await service.get_siblings(None)] == ["Root", "Child"]


@pytest.mark.asyncio
async def test_concurrent_reparents_cannot_close_a_cycle() -> None:
    store = InMemoryTopicStore()
    service = TopicService(store, serializer=SubtreeWriteSerializer())
    a = await service.create(name="A")
    b = await service.create(name="B")

    results = await asyncio.gather(
        service.reparent(a.id, b.id),
        service.reparent(b.id, a.id),
        return_exceptions=True,
    )

    rejected = [result for result in results if isinstance(result, PlacementRejected)]
    assert len(rejected) == 1
    assert rejected[0].reason is PlacementResult.CYCLE
    topics = _by_name(await service.list_all())
    assert not (topics["A"].parent_id == b.id and topics["B"].parent_id == a.id)
    _assert_forest_is_consistent(list(topics.values()))


@pytest.mark.asyncio
async def test_concurrent_creates_under_a_moving_parent_keep_levels_consistent() -> None:
    service = TopicService(InMemoryTopicStore(), serializer=SubtreeWriteSerializer())
    top = await service.create(name="Top")
    middle = await service.create(name="Middle")

    results = await asyncio.gather(
        service.reparent(middle.id, top.id),
        service.create(name="Leaf", parent_id=middle.id),
        service.create(name="Second Leaf", parent_id=middle.id),
        return_exceptions=True,
    )

    assert not any(isinstance(result, Exception) for result in results)
    _assert_forest_is_consistent(await service.list_all())


@pytest.mark.asyncio
async def test_subtree_serializer_forgets_released_keys() -> None:
    serializer = SubtreeWriteSerializer()

    async def write(*keys: str) -> None:
        async with serializer.guard(*keys):
            await asyncio.sleep(0)

    await asyncio.gather(write("root-a"), write("root-a", "root-b"), write("root-c"))

    assert serializer._locks == {}


def test_subtree_serializer_is_reusable_across_event_loops() -> None:
    serializer = SubtreeWriteSerializer()

    async def contend() -> None:
        async def write() -> None:
            async with serializer.guard("root-a"):
                await asyncio.sleep(0)

        await asyncio.gather(write(), write())

    asyncio.run(contend())
    asyncio.run(contend())


def test_build_write_serializer_follows_settings() -> None:
    locking = build_write_serializer(Settings(topic_serialize_subtree_writes=True))
    default = build_write_serializer(Settings(topic_serialize_subtree_writes=False))

    assert isinstance(locking, SubtreeWriteSerializer)
    assert isinstance(default, NullWriteSerializer)
