"""Exception taxonomy for the topic taxonomy services."""

from __future__ import annotations

from enum import Enum
from uuid import UUID


class PlacementResult(str, Enum):
    OK = "ok"
    CYCLE = "cycle"
    MISSING_PARENT = "missing_parent"
    DEPTH_EXCEEDED = "depth_exceeded"


PLACEMENT_MESSAGES = {
    PlacementResult.CYCLE: "A topic cannot be moved under itself or one of its descendants.",
    PlacementResult.MISSING_PARENT: "Parent topic does not exist.",
    PlacementResult.DEPTH_EXCEEDED: (
        "Topic tree cannot be deeper than 3 levels; "
        "this move would push part of the subtree past the limit."
    ),
}


class TopicError(Exception):
    """Base exception for all topic service errors."""


class PlacementRejected(TopicError):
    """A proposed parent assignment failed placement validation."""

    def __init__(self, reason: PlacementResult) -> None:
        self.reason = reason
        super().__init__(PLACEMENT_MESSAGES.get(reason, f"Placement rejected: {reason.value}"))


class TopicHasChildrenError(TopicError):
    """Delete attempted on a topic that still has child topics."""

    def __init__(self, topic_id: UUID, child_count: int) -> None:
        self.topic_id = topic_id
        self.child_count = child_count
        super().__init__(
            f"Topic has {child_count} child topic(s); move or delete them first."
        )


class InvalidTopicDataError(TopicError):
    """Input for a topic operation is malformed."""


class StoreFailure(TopicError):
    """The record store could not complete a call."""


class TopicNotFoundError(StoreFailure):
    def __init__(self, topic_ref: UUID | str) -> None:
        self.topic_ref = topic_ref
        super().__init__(f"Topic not found: {topic_ref}")
