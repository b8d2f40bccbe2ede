from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import UUID

from app.models.topic import Topic
from app.services.topics.ordering import sibling_sort_key


@dataclass
class TopicNode:
    topic: Topic
    children: list[TopicNode] = field(default_factory=list)


def _sort_nodes(nodes: list[TopicNode]) -> None:
    nodes.sort(key=lambda node: sibling_sort_key(node.topic))
    for node in nodes:
        _sort_nodes(node.children)


def build_topic_tree(topics: Iterable[Topic]) -> list[TopicNode]:
    """Arrange a flat topic list into a forest ordered by sibling rank.

    Topics whose parent is not part of ``topics`` are returned as roots.
    """
    topic_list = list(topics)
    nodes: dict[UUID, TopicNode] = {topic.id: TopicNode(topic=topic) for topic in topic_list}

    roots: list[TopicNode] = []
    for topic in topic_list:
        node = nodes[topic.id]
        parent = nodes.get(topic.parent_id) if topic.parent_id is not None else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)

    # A parent cycle in corrupted data leaves its members unreachable from any root.
    reached = {id(node) for node in _walk(roots)}
    for topic in topic_list:
        node = nodes[topic.id]
        if id(node) in reached:
            continue
        parent = nodes[topic.parent_id]
        parent.children.remove(node)
        roots.append(node)
        reached.update(id(member) for member in _walk([node]))

    _sort_nodes(roots)
    return roots


def _walk(nodes: Iterable[TopicNode]) -> Iterable[TopicNode]:
    stack = list(nodes)
    while stack:
        node = stack.pop()
        yield node
        stack.extend(node.children)


def flatten_tree(nodes: Iterable[TopicNode]) -> list[Topic]:
    flat: list[Topic] = []
    stack = list(reversed(list(nodes)))
    while stack:
        node = stack.pop()
        flat.append(node.topic)
        stack.extend(reversed(node.children))
    return flat
