"""
Cached backend reads.

Each method builds the key for one domain concept, picks the namespace TTL
and calls CacheService.get_or_set with a loader that runs the matching
backend query as the caller. Routes and the cache warmer both go through
here so a concept is always cached under the same key.
"""

from __future__ import annotations

from typing import Any

from converse.backend.client import BackendClient
from converse.cache.keys import CacheKeys, Namespace, ttl_for
from converse.cache.service import CacheService
from converse.exceptions import NotFoundError
from converse.logging import get_logger
from converse.types import Caller

logger = get_logger(__name__)

# Backend function paths
USER_CURRENT = "user:getCurrent"
CONVERSATIONS_LIST = "conversations:get"
CONVERSATION_GET = "conversation:get"
MESSAGES_GET = "messages:get"
PRESENCE_STATUS = "presence:getUserStatus"
PRESENCE_STATUSES = "presence:getUsersStatuses"
ROOMS_USER = "rooms:getRooms"
ROOMS_PUBLIC = "rooms:getPublicRooms"
ROOM_DETAILS = "rooms:getRoomDetails"
SEARCH_MESSAGES = "search:searchMessages"
STORIES_FEED = "stories:getFriendsStories"
STORY_VIEWERS = "stories:getStoryViewers"
SUPPORT_TICKETS = "support:getUserTickets"
FRIENDS_LIST = "friends:get"
REQUESTS_LIST = "requests:get"
REQUESTS_COUNT = "requests:count"
REACTIONS_GET = "reactions:getMessageReactions"
LINK_PREVIEW_FETCH = "linkPreviews:fetchLinkPreview"

MESSAGE_PAGE_SIZE = 50
STORY_FEED_LIMIT = 20
PUBLIC_ROOMS_LIMIT = 20


def user_id_of(user: dict[str, Any]) -> str:
    """Internal id of a backend user document."""
    user_id = user.get("_id")
    if not isinstance(user_id, str) or not user_id:
        raise NotFoundError("User document has no id", context={"resource": "user"})
    return user_id


class CachedQueries:
    """Read-through accessors for every cached backend query."""

    def __init__(self, cache: CacheService, backend: BackendClient) -> None:
        self.cache = cache
        self.backend = backend

    async def _cached(
        self,
        key: str,
        namespace: Namespace,
        path: str,
        caller: Caller,
        args: dict[str, Any] | None = None,
    ) -> Any:
        async def load() -> Any:
            return await self.backend.query(path, args, token=caller.token)

        return await self.cache.get_or_set(key, load, ttl_for(namespace))

    async def current_user(self, caller: Caller) -> dict[str, Any]:
        """Resolve the caller's backend user, cached by external auth id.

        Raises:
            NotFoundError: If the backend has no user for the caller.
        """
        user = await self._cached(
            CacheKeys.user_by_auth(caller.auth_id),
            Namespace.USER_BY_AUTH,
            USER_CURRENT,
            caller,
        )
        if not user:
            raise NotFoundError("User not found", context={"resource": "user"})
        return user

    async def conversations(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.conversations(user_id), Namespace.CONVERSATIONS, CONVERSATIONS_LIST, caller
        )

    async def conversation(self, conversation_id: str, caller: Caller) -> Any:
        """Conversation details.

        Raises:
            NotFoundError: If the backend has no such conversation.
        """
        conversation = await self._cached(
            CacheKeys.conversation(conversation_id),
            Namespace.CONVERSATION,
            CONVERSATION_GET,
            caller,
            {"id": conversation_id},
        )
        if conversation is None:
            raise NotFoundError(
                "Conversation not found",
                context={"resource": "conversation", "id": conversation_id},
            )
        return conversation

    async def messages(self, conversation_id: str, page: int, caller: Caller) -> Any:
        namespace = Namespace.MESSAGES_RECENT if page == 0 else Namespace.MESSAGES
        return await self._cached(
            CacheKeys.messages(conversation_id, page),
            namespace,
            MESSAGES_GET,
            caller,
            {"id": conversation_id, "page": page, "limit": MESSAGE_PAGE_SIZE},
        )

    async def presence(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.presence(user_id),
            Namespace.PRESENCE,
            PRESENCE_STATUS,
            caller,
            {"userId": user_id},
        )

    async def presence_many(self, user_ids: list[str], caller: Caller) -> list[Any]:
        """Presence for several users, one backend call for the missing ones."""
        async def load(missing: list[int]) -> list[Any]:
            ids = [user_ids[i] for i in missing]
            statuses = await self.backend.query(
                PRESENCE_STATUSES, {"userIds": ids}, token=caller.token
            )
            if not isinstance(statuses, list):
                statuses = []
            if len(statuses) != len(ids):
                logger.warning(
                    "Batch presence reply has the wrong length",
                    path=PRESENCE_STATUSES,
                    expected=len(ids),
                    got=len(statuses),
                )
            # unanswered ids come back as None and are not cached
            return (statuses + [None] * len(ids))[: len(ids)]

        return await self.cache.get_or_set_many(
            CacheKeys.presence_batch(user_ids), load, ttl_for(Namespace.PRESENCE)
        )

    async def user_rooms(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.room_list(user_id), Namespace.ROOMS, ROOMS_USER, caller
        )

    async def public_rooms(self, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.public_rooms(),
            Namespace.PUBLIC_ROOMS,
            ROOMS_PUBLIC,
            caller,
            {"limit": PUBLIC_ROOMS_LIMIT},
        )

    async def room(self, room_id: str, caller: Caller) -> Any:
        """Room details.

        Raises:
            NotFoundError: If the backend has no such room.
        """
        room = await self._cached(
            CacheKeys.room_details(room_id),
            Namespace.ROOM,
            ROOM_DETAILS,
            caller,
            {"roomId": room_id},
        )
        if room is None:
            raise NotFoundError("Room not found", context={"resource": "room", "id": room_id})
        return room

    async def search(
        self,
        user_id: str,
        query: str,
        conversation_id: str | None,
        caller: Caller,
    ) -> Any:
        args: dict[str, Any] = {"query": query}
        if conversation_id:
            args["conversationId"] = conversation_id
        return await self._cached(
            CacheKeys.search_messages(user_id, query, conversation_id),
            Namespace.SEARCH,
            SEARCH_MESSAGES,
            caller,
            args,
        )

    async def story_feed(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.story_feed(user_id),
            Namespace.STORY_FEED,
            STORIES_FEED,
            caller,
            {"limit": STORY_FEED_LIMIT},
        )

    async def story_views(self, story_id: str, caller: Caller) -> Any:
        # the backend only answers for the story owner
        return await self._cached(
            CacheKeys.story_views(story_id),
            Namespace.STORY_VIEWS,
            STORY_VIEWERS,
            caller,
            {"storyId": story_id},
        )

    async def link_preview(self, url: str, caller: Caller) -> Any:
        """Preview metadata for a URL, fetched by a backend action.

        Keyed by URL only, so every user shares one cached preview.
        """
        async def load() -> Any:
            return await self.backend.action(LINK_PREVIEW_FETCH, {"url": url}, token=caller.token)

        return await self.cache.get_or_set(
            CacheKeys.link_preview(url), load, ttl_for(Namespace.LINK_PREVIEW)
        )

    async def support_tickets(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.support_tickets(user_id), Namespace.SUPPORT_TICKETS, SUPPORT_TICKETS, caller
        )

    async def friends(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.friends(user_id), Namespace.FRIENDS, FRIENDS_LIST, caller
        )

    async def friend_requests(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.friend_requests(user_id), Namespace.FRIEND_REQUESTS, REQUESTS_LIST, caller
        )

    async def friend_request_count(self, user_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.friend_request_count(user_id),
            Namespace.FRIEND_REQUEST_COUNT,
            REQUESTS_COUNT,
            caller,
        )

    async def reactions(self, message_id: str, caller: Caller) -> Any:
        return await self._cached(
            CacheKeys.message_reactions(message_id),
            Namespace.REACTIONS,
            REACTIONS_GET,
            caller,
            {"messageId": message_id},
        )

    async def unread_count(self, user_id: str, conversation_id: str, caller: Caller) -> int:
        """Unread messages for the caller in one conversation.

        Derived from the backend conversation list, which carries an
        unreadCount per entry.

        Raises:
            NotFoundError: If the caller is not a member of the conversation.
        """
        async def load() -> int:
            entries = await self.backend.query(CONVERSATIONS_LIST, token=caller.token) or []
            for entry in entries:
                conversation = entry.get("conversation") or {}
                if conversation.get("_id") == conversation_id:
                    return int(entry.get("unreadCount") or 0)
            raise NotFoundError(
                "Conversation not found",
                context={"resource": "conversation", "id": conversation_id},
            )

        return await self.cache.get_or_set(
            CacheKeys.unread_count(user_id, conversation_id), load, ttl_for(Namespace.UNREAD)
        )
