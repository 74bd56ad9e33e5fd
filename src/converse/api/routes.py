"""
Route handlers.

Read endpoints return the cached-or-fresh backend payload as-is. Every
route except /health and the webhook requires a bearer token.
"""

from __future__ import annotations

import hmac
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from converse import __version__
from converse.api.deps import (
    CacheDep,
    CallerDep,
    CurrentUserDep,
    DispatcherDep,
    QueriesDep,
    SettingsDep,
    UserIdDep,
)
from converse.cache.invalidation import MessageRead
from converse.exceptions import AuthenticationError, InvalidRequestError, NotFoundError
from converse.logging import get_logger
from converse.queries import user_id_of
from converse.types import utc_now
from converse.warmer import refresh_user_cache, warm_user_cache

logger = get_logger(__name__)

router = APIRouter()


# ============== Types ==============


class CacheSetRequest(BaseModel):
    key: str = Field(..., min_length=1)
    value: Any
    ttl: int | None = Field(default=None, ge=0)


# ============== Health ==============


@router.get("/health")
async def health(cache: CacheDep) -> dict[str, Any]:
    healthy = await cache.health_check()
    return {
        "status": "ok" if healthy else "degraded",
        "timestamp": utc_now().isoformat(),
        "service": "converse",
        "version": __version__,
        "cache": {
            "backend": cache.store.name,
            "healthy": healthy,
            "stats": cache.stats.to_dict(),
        },
    }


# ============== Reads ==============


@router.get("/user/current")
async def current_user(user: CurrentUserDep) -> Any:
    return user


@router.get("/conversations")
async def conversations(caller: CallerDep, user_id: UserIdDep, queries: QueriesDep) -> Any:
    return await queries.conversations(user_id, caller)


@router.get("/conversations/{conversation_id}")
async def conversation_details(conversation_id: str, caller: CallerDep, queries: QueriesDep) -> Any:
    return await queries.conversation(conversation_id, caller)


@router.get("/messages/{conversation_id}")
async def messages(
    conversation_id: str,
    caller: CallerDep,
    queries: QueriesDep,
    page: Annotated[int, Query(ge=0)] = 0,
) -> Any:
    return await queries.messages(conversation_id, page, caller)


@router.get("/presence")
async def presence_batch(
    caller: CallerDep,
    queries: QueriesDep,
    user_ids: Annotated[str | None, Query(alias="userIds")] = None,
) -> dict[str, Any]:
    """Presence for a comma-separated list of user ids, keyed by id."""
    ids = list(dict.fromkeys(uid.strip() for uid in (user_ids or "").split(",") if uid.strip()))
    if not ids:
        raise InvalidRequestError("Query parameter 'userIds' is required")
    statuses = await queries.presence_many(ids, caller)
    return dict(zip(ids, statuses))


@router.get("/presence/{user_id}")
async def presence(user_id: str, caller: CallerDep, queries: QueriesDep) -> Any:
    return await queries.presence(user_id, caller)


@router.get("/rooms")
async def rooms(
    caller: CallerDep,
    queries: QueriesDep,
    room_type: Annotated[Literal["user", "public"], Query(alias="type")] = "user",
) -> Any:
    if room_type == "public":
        return await queries.public_rooms(caller)
    # user rooms need the internal user id
    user = await queries.current_user(caller)
    return await queries.user_rooms(user_id_of(user), caller)


@router.get("/rooms/{room_id}")
async def room_details(room_id: str, caller: CallerDep, queries: QueriesDep) -> Any:
    return await queries.room(room_id, caller)


@router.get("/search")
async def search(
    caller: CallerDep,
    user_id: UserIdDep,
    queries: QueriesDep,
    q: str | None = None,
    conversation_id: Annotated[str | None, Query(alias="conversationId")] = None,
) -> Any:
    if not q or not q.strip():
        raise InvalidRequestError("Query parameter 'q' is required")
    return await queries.search(user_id, q, conversation_id, caller)


@router.get("/stories")
async def stories(caller: CallerDep, user_id: UserIdDep, queries: QueriesDep) -> Any:
    return await queries.story_feed(user_id, caller)


@router.get("/stories/{story_id}/views")
async def story_views(story_id: str, caller: CallerDep, queries: QueriesDep) -> Any:
    return await queries.story_views(story_id, caller)


@router.get("/link-preview")
async def link_preview(caller: CallerDep, queries: QueriesDep, url: str | None = None) -> Any:
    if not url or not url.startswith(("http://", "https://")):
        raise InvalidRequestError("Query parameter 'url' must be an http(s) URL")
    return await queries.link_preview(url, caller)


@router.get("/support")
async def support(caller: CallerDep, user_id: UserIdDep, queries: QueriesDep) -> Any:
    return await queries.support_tickets(user_id, caller)


@router.get("/friends")
async def friends(caller: CallerDep, user_id: UserIdDep, queries: QueriesDep) -> Any:
    return await queries.friends(user_id, caller)


@router.get("/friends/requests")
async def friend_requests(caller: CallerDep, user_id: UserIdDep, queries: QueriesDep) -> Any:
    requests = await queries.friend_requests(user_id, caller)
    count = await queries.friend_request_count(user_id, caller)
    return {"requests": requests, "count": count}


@router.get("/reactions/{message_id}")
async def reactions(message_id: str, caller: CallerDep, queries: QueriesDep) -> Any:
    return await queries.reactions(message_id, caller)


@router.get("/unread/{conversation_id}")
async def unread_count(
    conversation_id: str, caller: CallerDep, user_id: UserIdDep, queries: QueriesDep
) -> dict[str, Any]:
    count = await queries.unread_count(user_id, conversation_id, caller)
    return {"conversationId": conversation_id, "unreadCount": count}


@router.post("/unread/{conversation_id}")
async def mark_read(
    conversation_id: str, user_id: UserIdDep, dispatcher: DispatcherDep
) -> dict[str, Any]:
    """Drop the caller's unread counters for a conversation after a read."""
    await dispatcher.dispatch(MessageRead(user_id=user_id, conversation_id=conversation_id))
    return {"success": True}


# ============== Cache maintenance ==============


@router.post("/cache/invalidate")
async def invalidate(
    request: Request,
    settings: SettingsDep,
    dispatcher: DispatcherDep,
    x_webhook_secret: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    """Invalidation webhook called by backend mutation hooks.

    Unknown event types are acknowledged and ignored.
    """
    # header values arrive latin-1 decoded; compare the raw bytes
    if settings.WEBHOOK_SECRET and not hmac.compare_digest(
        (x_webhook_secret or "").encode("latin-1"), settings.WEBHOOK_SECRET.encode("utf-8")
    ):
        raise AuthenticationError("Invalid webhook secret")

    try:
        body = await request.json()
    except ValueError as e:
        raise InvalidRequestError("Request body must be JSON") from e

    result = await dispatcher.dispatch_body(body)
    if result is None:
        return {"success": True}
    return {"success": True, **result.to_dict()}


@router.post("/cache/warm")
async def warm(caller: CallerDep, user_id: UserIdDep, queries: QueriesDep) -> dict[str, Any]:
    result = await warm_user_cache(queries, user_id, caller)
    return {"success": True, **result.to_dict()}


@router.post("/cache/refresh")
async def refresh(
    caller: CallerDep,
    user_id: UserIdDep,
    queries: QueriesDep,
    dispatcher: DispatcherDep,
) -> dict[str, Any]:
    result = await refresh_user_cache(queries, dispatcher, user_id, caller)
    return {"success": True, **result.to_dict()}


# ============== Debug ==============


def _require_debug(settings: SettingsDep) -> None:
    if not settings.ENABLE_DEBUG_ROUTES:
        raise NotFoundError("Not found")


@router.get("/cache/get", dependencies=[Depends(_require_debug)])
async def debug_get(key: str, cache: CacheDep, caller: CallerDep) -> dict[str, Any]:
    value = await cache.get(key)
    return {"key": key, "found": value is not None, "value": value}


@router.post("/cache/set", dependencies=[Depends(_require_debug)])
async def debug_set(
    payload: CacheSetRequest, cache: CacheDep, caller: CallerDep
) -> dict[str, Any]:
    stored = await cache.set(payload.key, payload.value, payload.ttl)
    logger.info("Debug cache write", key=payload.key, stored=stored)
    return {"success": stored}
