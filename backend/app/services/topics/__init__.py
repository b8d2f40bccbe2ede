from app.services.topics.errors import (
    InvalidTopicDataError,
    PlacementRejected,
    PlacementResult,
    StoreFailure,
    TopicError,
    TopicHasChildrenError,
    TopicNotFoundError,
)
from app.services.topics.placement import MAX_TOPIC_LEVELS, can_place, check_placement
from app.services.topics.service import TopicService
from app.services.topics.store import SqlTopicStore, TopicFilter, TopicStore
from app.services.topics.tree import TopicNode, build_topic_tree, flatten_tree
from app.services.topics.visibility import filter_effectively_visible, is_effectively_visible

__all__ = [
    "InvalidTopicDataError",
    "MAX_TOPIC_LEVELS",
    "PlacementRejected",
    "PlacementResult",
    "SqlTopicStore",
    "StoreFailure",
    "TopicError",
    "TopicFilter",
    "TopicHasChildrenError",
    "TopicNode",
    "TopicNotFoundError",
    "TopicService",
    "TopicStore",
    "build_topic_tree",
    "can_place",
    "check_placement",
    "filter_effectively_visible",
    "flatten_tree",
    "is_effectively_visible",
]
