from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import Principal, get_current_admin, get_topic_service
from app.models.topic import Topic
from app.schemas.topic import (
    TopicCreateRequest,
    TopicDeleteResponse,
    TopicItem,
    TopicListResponse,
    TopicNodeItem,
    TopicPlacementResponse,
    TopicReorderRequest,
    TopicReparentRequest,
    TopicTreeResponse,
    TopicUpdateRequest,
)
from app.services.topics import (
    InvalidTopicDataError,
    PlacementRejected,
    PlacementResult,
    TopicError,
    TopicHasChildrenError,
    TopicNode,
    TopicNotFoundError,
    TopicService,
    flatten_tree,
)
from app.services.topics.errors import PLACEMENT_MESSAGES

router = APIRouter(prefix="/topics", tags=["topics"])


def _to_topic_item(topic: Topic) -> TopicItem:
    return TopicItem(
        id=str(topic.id),
        name=topic.name,
        slug=topic.slug,
        description=topic.description,
        status=topic.status,
        parent_id=str(topic.parent_id) if topic.parent_id else None,
        level=topic.level,
        order_index=topic.order_index,
        created_by=topic.created_by,
        created_at=topic.created_at.isoformat(),
        updated_at=topic.updated_at.isoformat(),
    )


def _to_node_item(node: TopicNode) -> TopicNodeItem:
    return TopicNodeItem(
        **_to_topic_item(node.topic).model_dump(),
        children=[_to_node_item(child) for child in node.children],
    )


def _to_tree_response(roots: list[TopicNode]) -> TopicTreeResponse:
    return TopicTreeResponse(roots=[_to_node_item(node) for node in roots])


def _parse_uuid(value: str, *, field_name: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid {field_name}",
        ) from exc


def _parse_optional_uuid(value: str | None, *, field_name: str) -> UUID | None:
    cleaned = str(value or "").strip()
    if not cleaned:
        return None
    return _parse_uuid(cleaned, field_name=field_name)


def _to_http_error(exc: TopicError) -> HTTPException:
    if isinstance(exc, TopicNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PlacementRejected):
        status_code = (
            status.HTTP_422_UNPROCESSABLE_ENTITY
            if exc.reason is PlacementResult.MISSING_PARENT
            else status.HTTP_409_CONFLICT
        )
        return HTTPException(
            status_code=status_code,
            detail={"reason": exc.reason.value, "message": str(exc)},
        )
    if isinstance(exc, TopicHasChildrenError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, InvalidTopicDataError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("", response_model=TopicListResponse)
async def list_visible_topics(
    service: TopicService = Depends(get_topic_service),
) -> TopicListResponse:
    topics = await service.list_active_visible()
    return TopicListResponse(
        items=[_to_topic_item(topic) for topic in flatten_tree(service.build_tree(topics))]
    )


@router.get("/tree", response_model=TopicTreeResponse)
async def get_visible_topic_tree(
    service: TopicService = Depends(get_topic_service),
) -> TopicTreeResponse:
    topics = await service.list_active_visible()
    return _to_tree_response(service.build_tree(topics))


@router.get("/by-slug/{slug}", response_model=TopicItem)
async def get_visible_topic_by_slug(
    slug: str,
    service: TopicService = Depends(get_topic_service),
) -> TopicItem:
    try:
        topic = await service.get_visible_by_slug(slug)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return _to_topic_item(topic)


@router.get("/admin", response_model=TopicListResponse)
async def list_all_topics(
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicListResponse:
    topics = await service.list_all()
    return TopicListResponse(
        items=[_to_topic_item(topic) for topic in flatten_tree(service.build_tree(topics))]
    )


@router.get("/admin/tree", response_model=TopicTreeResponse)
async def get_full_topic_tree(
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicTreeResponse:
    return _to_tree_response(service.build_tree(await service.list_all()))


@router.post("", response_model=TopicItem, status_code=status.HTTP_201_CREATED)
async def create_topic(
    payload: TopicCreateRequest,
    admin: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicItem:
    parent_id = _parse_optional_uuid(payload.parent_id, field_name="parent_id")
    try:
        topic = await service.create(
            name=payload.name,
            slug=payload.slug,
            description=payload.description,
            status=payload.status,
            parent_id=parent_id,
            order_index=payload.order_index,
            created_by=admin.subject,
        )
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return _to_topic_item(topic)


@router.put("/order", response_model=TopicListResponse)
async def reorder_topics(
    payload: TopicReorderRequest,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicListResponse:
    parent_id = _parse_optional_uuid(payload.parent_id, field_name="parent_id")
    ordered_ids = [_parse_uuid(value, field_name="ordered_ids") for value in payload.ordered_ids]
    try:
        siblings = await service.reorder(parent_id, ordered_ids)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return TopicListResponse(items=[_to_topic_item(topic) for topic in siblings])


@router.patch("/{topic_id}", response_model=TopicItem)
async def update_topic(
    topic_id: str,
    payload: TopicUpdateRequest,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicItem:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    patch = payload.model_dump(exclude_unset=True)
    if patch.get("name", "") is None:
        patch.pop("name")
    if patch.get("status", "") is None:
        patch.pop("status")
    try:
        topic = await service.update(topic_uuid, patch)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return _to_topic_item(topic)


@router.delete("/{topic_id}", response_model=TopicDeleteResponse)
async def delete_topic(
    topic_id: str,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicDeleteResponse:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    try:
        await service.delete(topic_uuid)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return TopicDeleteResponse(topic_id=str(topic_uuid), message="Topic deleted.")


@router.put("/{topic_id}/parent", response_model=TopicItem)
async def reparent_topic(
    topic_id: str,
    payload: TopicReparentRequest,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicItem:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    parent_id = _parse_optional_uuid(payload.parent_id, field_name="parent_id")
    try:
        topic = await service.reparent(topic_uuid, parent_id)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return _to_topic_item(topic)


@router.get("/{topic_id}/placement", response_model=TopicPlacementResponse)
async def check_topic_placement(
    topic_id: str,
    parent_id: str | None = Query(default=None),
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicPlacementResponse:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    parent_uuid = _parse_optional_uuid(parent_id, field_name="parent_id")
    try:
        result = await service.check_placement(topic_uuid, parent_uuid)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return TopicPlacementResponse(
        topic_id=str(topic_uuid),
        parent_id=str(parent_uuid) if parent_uuid else None,
        allowed=result is PlacementResult.OK,
        reason=result.value,
        message=PLACEMENT_MESSAGES.get(result),
    )


@router.get("/{topic_id}/siblings", response_model=TopicListResponse)
async def list_topic_siblings(
    topic_id: str,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicListResponse:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    try:
        topics = await service.list_all()
        topic = next((item for item in topics if item.id == topic_uuid), None)
        if topic is None:
            raise TopicNotFoundError(topic_uuid)
        siblings = await service.get_siblings(topic.parent_id, topics)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return TopicListResponse(items=[_to_topic_item(item) for item in siblings])


@router.post("/{topic_id}/move-up", response_model=TopicItem)
async def move_topic_up(
    topic_id: str,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicItem:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    try:
        topic = await service.move_up(topic_uuid)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return _to_topic_item(topic)


@router.post("/{topic_id}/move-down", response_model=TopicItem)
async def move_topic_down(
    topic_id: str,
    _: Principal = Depends(get_current_admin),
    service: TopicService = Depends(get_topic_service),
) -> TopicItem:
    topic_uuid = _parse_uuid(topic_id, field_name="topic_id")
    try:
        topic = await service.move_down(topic_uuid)
    except TopicError as exc:
        raise _to_http_error(exc) from exc
    return _to_topic_item(topic)
