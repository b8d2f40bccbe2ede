from app.models.topic import Topic, TopicStatus

__all__ = [
    "Topic",
    "TopicStatus",
]
