"""
Cache key registry and TTL policy.

Every key has the shape ``<namespace>:<segment>:...`` where the namespace is
a Namespace value and every identifier segment is percent-escaped, so an id
containing ``:`` or a glob character can never produce the shape of another
key. Keys are pure functions of their inputs.
"""

from __future__ import annotations

import hashlib
import re
from enum import Enum
from urllib.parse import quote

ONE_WEEK = 604800
ONE_DAY = 86400


class Namespace(str, Enum):
    """Key prefixes, one per cached domain concept."""

    USER = "user"
    USER_BY_AUTH = "user_by_auth"
    USER_PROFILE = "user_profile"

    CONVERSATIONS = "conversations"
    CONVERSATION = "conversation"
    CONVERSATION_MEMBERS = "conversation_members"
    TYPING = "typing"

    MESSAGES_RECENT = "messages_recent"
    MESSAGES = "messages"
    REACTIONS = "reactions"

    FRIENDS = "friends"
    FRIEND_REQUESTS = "friend_requests"
    FRIEND_REQUEST_COUNT = "friend_request_count"

    PRESENCE = "presence"
    ONLINE_USERS = "online_users"

    UNREAD = "unread"
    UNREAD_TOTAL = "unread_total"

    STORY_FEED = "story_feed"
    STORY_VIEWS = "story_views"

    ROOMS = "rooms"
    PUBLIC_ROOMS = "public_rooms"
    ROOM = "room"

    SEARCH = "search"
    LINK_PREVIEW = "link_preview"
    SUPPORT_TICKETS = "support_tickets"
    ACTIVE_CALL = "active_call"


# Seconds. Every namespace expires, so a missed invalidation is bounded.
TTL_POLICY: dict[Namespace, int] = {
    Namespace.USER: ONE_WEEK,
    Namespace.USER_BY_AUTH: ONE_WEEK,
    Namespace.USER_PROFILE: ONE_WEEK,
    Namespace.CONVERSATIONS: ONE_WEEK,
    Namespace.CONVERSATION: ONE_WEEK,
    Namespace.CONVERSATION_MEMBERS: ONE_WEEK,
    Namespace.TYPING: 5,
    Namespace.MESSAGES_RECENT: 180,
    Namespace.MESSAGES: 600,
    Namespace.REACTIONS: ONE_WEEK,
    Namespace.FRIENDS: ONE_WEEK,
    Namespace.FRIEND_REQUESTS: ONE_WEEK,
    Namespace.FRIEND_REQUEST_COUNT: ONE_WEEK,
    Namespace.PRESENCE: 45,
    Namespace.ONLINE_USERS: 60,
    Namespace.UNREAD: ONE_DAY,
    Namespace.UNREAD_TOTAL: ONE_DAY,
    Namespace.STORY_FEED: ONE_DAY,
    Namespace.STORY_VIEWS: ONE_DAY,
    Namespace.ROOMS: ONE_WEEK,
    Namespace.PUBLIC_ROOMS: ONE_WEEK,
    Namespace.ROOM: ONE_WEEK,
    Namespace.SEARCH: ONE_WEEK,
    Namespace.LINK_PREVIEW: ONE_WEEK,
    Namespace.SUPPORT_TICKETS: ONE_WEEK,
    Namespace.ACTIVE_CALL: 45,
}

_WHITESPACE = re.compile(r"\s+")


def ttl_for(namespace: Namespace) -> int:
    """Return the TTL policy for a namespace."""
    return TTL_POLICY[namespace]


def ttl_for_key(key: str) -> int:
    """Return the TTL policy for the namespace a key belongs to."""
    return TTL_POLICY[namespace_of(key)]


def namespace_of(key: str) -> Namespace:
    """Return the namespace of a key.

    Raises:
        ValueError: If the key does not start with a known namespace.
    """
    prefix, _, _ = key.partition(":")
    return Namespace(prefix)


def _seg(value: str | int) -> str:
    text = str(value)
    if not text:
        raise ValueError("Cache key segments must not be empty")
    # Escape ":" and glob metacharacters so segments stay opaque
    return quote(text, safe="-_.~")


def _key(namespace: Namespace, *segments: str | int) -> str:
    return ":".join([namespace.value, *(_seg(s) for s in segments)])


def normalize_query(text: str) -> str:
    """Normalize search text so equivalent queries share a key."""
    return _WHITESPACE.sub(" ", text.strip()).casefold()


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class CacheKeys:
    """Key builders for every cached domain concept."""

    # User keys
    @staticmethod
    def user(user_id: str) -> str:
        return _key(Namespace.USER, user_id)

    @staticmethod
    def user_by_auth(auth_id: str) -> str:
        return _key(Namespace.USER_BY_AUTH, auth_id)

    @staticmethod
    def user_profile(user_id: str) -> str:
        return _key(Namespace.USER_PROFILE, user_id)

    # Conversation keys
    @staticmethod
    def conversations(user_id: str) -> str:
        return _key(Namespace.CONVERSATIONS, user_id)

    @staticmethod
    def conversation(conversation_id: str) -> str:
        return _key(Namespace.CONVERSATION, conversation_id)

    @staticmethod
    def conversation_members(conversation_id: str) -> str:
        return _key(Namespace.CONVERSATION_MEMBERS, conversation_id)

    @staticmethod
    def typing_users(conversation_id: str) -> str:
        return _key(Namespace.TYPING, conversation_id)

    # Message keys
    @staticmethod
    def messages(conversation_id: str, page: int = 0) -> str:
        """Key for one page of a conversation's messages.

        Page 0 (most recent) lives in its own namespace with a shorter TTL.
        """
        if page < 0:
            raise ValueError(f"Message page must be >= 0, got {page}")
        if page == 0:
            return _key(Namespace.MESSAGES_RECENT, conversation_id)
        return _key(Namespace.MESSAGES, conversation_id, page)

    @staticmethod
    def message_pages_pattern(conversation_id: str) -> str:
        """Glob matching every older page of a conversation (page >= 1)."""
        return f"{_key(Namespace.MESSAGES, conversation_id)}:*"

    @staticmethod
    def message_reactions(message_id: str) -> str:
        return _key(Namespace.REACTIONS, message_id)

    # Friend keys
    @staticmethod
    def friends(user_id: str) -> str:
        return _key(Namespace.FRIENDS, user_id)

    @staticmethod
    def friend_requests(user_id: str) -> str:
        return _key(Namespace.FRIEND_REQUESTS, user_id)

    @staticmethod
    def friend_request_count(user_id: str) -> str:
        return _key(Namespace.FRIEND_REQUEST_COUNT, user_id)

    # Presence keys
    @staticmethod
    def presence(user_id: str) -> str:
        return _key(Namespace.PRESENCE, user_id)

    @staticmethod
    def presence_batch(user_ids: list[str]) -> list[str]:
        return [CacheKeys.presence(user_id) for user_id in user_ids]

    @staticmethod
    def online_users() -> str:
        return _key(Namespace.ONLINE_USERS, "all")

    # Unread keys
    @staticmethod
    def unread_count(user_id: str, conversation_id: str) -> str:
        return _key(Namespace.UNREAD, user_id, conversation_id)

    @staticmethod
    def unread_pattern(user_id: str) -> str:
        return f"{_key(Namespace.UNREAD, user_id)}:*"

    @staticmethod
    def unread_total(user_id: str) -> str:
        return _key(Namespace.UNREAD_TOTAL, user_id)

    # Story keys
    @staticmethod
    def story_feed(user_id: str) -> str:
        return _key(Namespace.STORY_FEED, user_id)

    @staticmethod
    def story_views(story_id: str) -> str:
        return _key(Namespace.STORY_VIEWS, story_id)

    # Room keys
    @staticmethod
    def room_list(user_id: str) -> str:
        return _key(Namespace.ROOMS, user_id)

    @staticmethod
    def public_rooms() -> str:
        return _key(Namespace.PUBLIC_ROOMS, "list")

    @staticmethod
    def room_details(room_id: str) -> str:
        return _key(Namespace.ROOM, room_id)

    # Search keys
    @staticmethod
    def search_messages(user_id: str, query: str, conversation_id: str | None = None) -> str:
        """Key for a message search.

        The normalized query is hashed so arbitrary text stays a fixed-size
        segment; the scope is either every conversation or one of them.
        """
        normalized = normalize_query(query)
        if not normalized:
            raise ValueError("Search query must not be empty")
        scope = f"conv.{_seg(conversation_id)}" if conversation_id else "all"
        return f"{_key(Namespace.SEARCH, user_id)}:{scope}:{_digest(normalized)}"

    @staticmethod
    def search_pattern(user_id: str) -> str:
        return f"{_key(Namespace.SEARCH, user_id)}:*"

    # Misc keys
    @staticmethod
    def link_preview(url: str) -> str:
        return _key(Namespace.LINK_PREVIEW, _digest(url))

    @staticmethod
    def support_tickets(user_id: str) -> str:
        return _key(Namespace.SUPPORT_TICKETS, user_id)

    @staticmethod
    def active_call(conversation_id: str) -> str:
        return _key(Namespace.ACTIVE_CALL, conversation_id)
