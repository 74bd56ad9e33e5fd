"""
Event-driven cache invalidation.

Domain events arrive as webhook bodies ``{"type": "...", ...fields}``.
parse_event() turns a body into one of the frozen event dataclasses below,
keys_for() maps an event to the exact keys and glob patterns it invalidates
(pure, no I/O) and InvalidationDispatcher executes that plan against the
cache.

Invalidation only deletes. Deleting an absent key is a no-op, so every
handler is idempotent. Store failures are logged and counted, never raised:
a failed invalidation leaves a stale entry that expires with its namespace
TTL.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar

from converse.cache.keys import CacheKeys
from converse.cache.service import CacheService
from converse.exceptions import CacheError, InvalidEventError
from converse.logging import get_logger, log_context

logger = get_logger(__name__)


class EventType(str, Enum):
    """Every domain event the dispatcher understands."""

    MESSAGE_SENT = "message.sent"
    MESSAGE_READ = "message.read"
    MESSAGE_EDIT = "message.edit"
    MESSAGE_DELETE = "message.delete"
    REACTION_CHANGE = "reaction.change"

    FRIEND_REQUEST_SENT = "friend.request.sent"
    FRIEND_REQUEST_ACCEPTED = "friend.request.accepted"
    FRIEND_REQUEST_REJECTED = "friend.request.rejected"
    FRIEND_REMOVED = "friend.removed"

    USER_UPDATE = "user.update"
    USER_STATUS_CHANGE = "user.status.change"

    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_UPDATED = "conversation.updated"
    CONVERSATION_MEMBER_CHANGE = "conversation.member.change"
    CONVERSATION_DELETED = "conversation.deleted"

    PRESENCE_HEARTBEAT = "presence.heartbeat"
    PRESENCE_OFFLINE = "presence.offline"
    TYPING_CHANGE = "typing.change"

    STORY_CREATED = "story.created"
    STORY_VIEWED = "story.viewed"
    STORY_DELETED = "story.deleted"

    ROOM_CREATED = "room.created"
    ROOM_UPDATED = "room.updated"
    ROOM_USER_JOIN = "room.user.join"
    ROOM_USER_LEAVE = "room.user.leave"
    ROOM_DELETED = "room.deleted"

    SUPPORT_TICKET_CHANGE = "support.ticket.change"

    CALL_STARTED = "call.started"
    CALL_ENDED = "call.ended"
    CALL_STATUS_CHANGE = "call.status.change"

    SEARCH_INVALIDATE = "search.invalidate"


def _id(wire: str) -> Any:
    return field(metadata={"wire": wire, "kind": "id"})


def _ids(wire: str) -> Any:
    return field(metadata={"wire": wire, "kind": "ids"})


def _flag(wire: str) -> Any:
    return field(metadata={"wire": wire, "kind": "flag"})


def _optional_id(wire: str) -> Any:
    return field(default=None, metadata={"wire": wire, "kind": "optional_id"})


@dataclass(frozen=True)
class InvalidationEvent:
    """Base class of all invalidation events."""

    event_type: ClassVar[EventType]


# Message events


@dataclass(frozen=True)
class MessageSent(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.MESSAGE_SENT
    conversation_id: str = _id("conversationId")
    member_ids: tuple[str, ...] = _ids("memberIds")
    sender_id: str = _id("senderId")


@dataclass(frozen=True)
class MessageRead(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.MESSAGE_READ
    user_id: str = _id("userId")
    conversation_id: str = _id("conversationId")


@dataclass(frozen=True)
class MessageEdited(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.MESSAGE_EDIT
    message_id: str = _id("messageId")
    conversation_id: str = _id("conversationId")


@dataclass(frozen=True)
class MessageDeleted(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.MESSAGE_DELETE
    message_id: str = _id("messageId")
    conversation_id: str = _id("conversationId")
    member_ids: tuple[str, ...] = _ids("memberIds")


@dataclass(frozen=True)
class ReactionChanged(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.REACTION_CHANGE
    message_id: str = _id("messageId")


# Friend events


@dataclass(frozen=True)
class FriendRequestSent(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.FRIEND_REQUEST_SENT
    sender_id: str = _id("senderId")
    receiver_id: str = _id("receiverId")


@dataclass(frozen=True)
class _FriendshipEvent(InvalidationEvent):
    user_id1: str = _id("userId1")
    user_id2: str = _id("userId2")


@dataclass(frozen=True)
class FriendRequestAccepted(_FriendshipEvent):
    event_type: ClassVar[EventType] = EventType.FRIEND_REQUEST_ACCEPTED


@dataclass(frozen=True)
class FriendRequestRejected(_FriendshipEvent):
    event_type: ClassVar[EventType] = EventType.FRIEND_REQUEST_REJECTED


@dataclass(frozen=True)
class FriendRemoved(_FriendshipEvent):
    event_type: ClassVar[EventType] = EventType.FRIEND_REMOVED


# User events


@dataclass(frozen=True)
class UserUpdated(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.USER_UPDATE
    user_id: str = _id("userId")
    auth_id: str | None = _optional_id("authId")


@dataclass(frozen=True)
class UserStatusChanged(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.USER_STATUS_CHANGE
    user_id: str = _id("userId")


# Conversation events


@dataclass(frozen=True)
class _ConversationEvent(InvalidationEvent):
    conversation_id: str = _id("conversationId")
    member_ids: tuple[str, ...] = _ids("memberIds")


@dataclass(frozen=True)
class ConversationCreated(_ConversationEvent):
    event_type: ClassVar[EventType] = EventType.CONVERSATION_CREATED


@dataclass(frozen=True)
class ConversationUpdated(_ConversationEvent):
    event_type: ClassVar[EventType] = EventType.CONVERSATION_UPDATED


@dataclass(frozen=True)
class ConversationMemberChanged(_ConversationEvent):
    event_type: ClassVar[EventType] = EventType.CONVERSATION_MEMBER_CHANGE


@dataclass(frozen=True)
class ConversationDeleted(_ConversationEvent):
    event_type: ClassVar[EventType] = EventType.CONVERSATION_DELETED


# Presence events


@dataclass(frozen=True)
class PresenceHeartbeat(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.PRESENCE_HEARTBEAT
    user_id: str = _id("userId")


@dataclass(frozen=True)
class PresenceOffline(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.PRESENCE_OFFLINE
    user_id: str = _id("userId")


@dataclass(frozen=True)
class TypingChanged(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.TYPING_CHANGE
    conversation_id: str = _id("conversationId")


# Story events


@dataclass(frozen=True)
class _StoryFeedEvent(InvalidationEvent):
    user_id: str = _id("userId")
    friend_ids: tuple[str, ...] = _ids("friendIds")


@dataclass(frozen=True)
class StoryCreated(_StoryFeedEvent):
    event_type: ClassVar[EventType] = EventType.STORY_CREATED


@dataclass(frozen=True)
class StoryDeleted(_StoryFeedEvent):
    event_type: ClassVar[EventType] = EventType.STORY_DELETED


@dataclass(frozen=True)
class StoryViewed(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.STORY_VIEWED
    story_id: str = _id("storyId")


# Room events


@dataclass(frozen=True)
class RoomCreated(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.ROOM_CREATED
    room_id: str = _id("roomId")
    owner_id: str = _id("ownerId")
    is_public: bool = _flag("isPublic")


@dataclass(frozen=True)
class RoomUpdated(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.ROOM_UPDATED
    room_id: str = _id("roomId")
    is_public: bool = _flag("isPublic")


@dataclass(frozen=True)
class _RoomMembershipEvent(InvalidationEvent):
    room_id: str = _id("roomId")
    user_id: str = _id("userId")
    is_public: bool = _flag("isPublic")


@dataclass(frozen=True)
class RoomUserJoined(_RoomMembershipEvent):
    event_type: ClassVar[EventType] = EventType.ROOM_USER_JOIN


@dataclass(frozen=True)
class RoomUserLeft(_RoomMembershipEvent):
    event_type: ClassVar[EventType] = EventType.ROOM_USER_LEAVE


@dataclass(frozen=True)
class RoomDeleted(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.ROOM_DELETED
    room_id: str = _id("roomId")
    member_ids: tuple[str, ...] = _ids("memberIds")
    is_public: bool = _flag("isPublic")


# Support, call and search events


@dataclass(frozen=True)
class SupportTicketChanged(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.SUPPORT_TICKET_CHANGE
    user_id: str = _id("userId")


@dataclass(frozen=True)
class _CallEvent(InvalidationEvent):
    conversation_id: str = _id("conversationId")


@dataclass(frozen=True)
class CallStarted(_CallEvent):
    event_type: ClassVar[EventType] = EventType.CALL_STARTED


@dataclass(frozen=True)
class CallEnded(_CallEvent):
    event_type: ClassVar[EventType] = EventType.CALL_ENDED


@dataclass(frozen=True)
class CallStatusChanged(_CallEvent):
    event_type: ClassVar[EventType] = EventType.CALL_STATUS_CHANGE


@dataclass(frozen=True)
class SearchInvalidated(InvalidationEvent):
    event_type: ClassVar[EventType] = EventType.SEARCH_INVALIDATE
    conversation_id: str = _id("conversationId")
    member_ids: tuple[str, ...] = _ids("memberIds")


EVENT_CLASSES: dict[EventType, type[InvalidationEvent]] = {
    cls.event_type: cls
    for cls in (
        MessageSent,
        MessageRead,
        MessageEdited,
        MessageDeleted,
        ReactionChanged,
        FriendRequestSent,
        FriendRequestAccepted,
        FriendRequestRejected,
        FriendRemoved,
        UserUpdated,
        UserStatusChanged,
        ConversationCreated,
        ConversationUpdated,
        ConversationMemberChanged,
        ConversationDeleted,
        PresenceHeartbeat,
        PresenceOffline,
        TypingChanged,
        StoryCreated,
        StoryViewed,
        StoryDeleted,
        RoomCreated,
        RoomUpdated,
        RoomUserJoined,
        RoomUserLeft,
        RoomDeleted,
        SupportTicketChanged,
        CallStarted,
        CallEnded,
        CallStatusChanged,
        SearchInvalidated,
    )
}


def _parse_field(event_type: str, wire: str, kind: str, value: Any) -> Any:
    def invalid(expected: str) -> InvalidEventError:
        return InvalidEventError(
            f"Field '{wire}' must be {expected}",
            context={"type": event_type, "field": wire},
        )

    if kind == "id":
        if not isinstance(value, str) or not value:
            raise invalid("a non-empty string")
        return value
    if kind == "optional_id":
        if value is None:
            return None
        if not isinstance(value, str) or not value:
            raise invalid("a non-empty string or null")
        return value
    if kind == "ids":
        if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
            raise invalid("a list of non-empty strings")
        return tuple(value)
    if kind == "flag":
        if not isinstance(value, bool):
            raise invalid("a boolean")
        return value
    raise ValueError(f"Unknown field kind: {kind}")


def parse_event(body: Any) -> InvalidationEvent | None:
    """Build an event from a webhook body.

    Args:
        body: Decoded JSON body, ``{"type": str, ...fields}``.

    Returns:
        The event, or None when the type is not one this service knows.

    Raises:
        InvalidEventError: If the body is structurally invalid.
    """
    if not isinstance(body, dict):
        raise InvalidEventError("Event body must be a JSON object")

    raw_type = body.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise InvalidEventError("Event 'type' is required", context={"type": raw_type})

    try:
        event_type = EventType(raw_type)
    except ValueError:
        logger.warning("Unknown cache invalidation type", type=raw_type)
        return None

    cls = EVENT_CLASSES[event_type]
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        wire = f.metadata["wire"]
        kind = f.metadata["kind"]
        if wire not in body and kind != "optional_id":
            raise InvalidEventError(
                f"Field '{wire}' is required",
                context={"type": raw_type, "field": wire},
            )
        kwargs[f.name] = _parse_field(raw_type, wire, kind, body.get(wire))

    return cls(**kwargs)


def event_to_body(event: InvalidationEvent) -> dict[str, Any]:
    """Serialize an event back to its webhook body."""
    body: dict[str, Any] = {"type": event.event_type.value}
    for f in fields(event):
        value = getattr(event, f.name)
        if value is None:
            continue
        body[f.metadata["wire"]] = list(value) if isinstance(value, tuple) else value
    return body


@dataclass(frozen=True)
class InvalidationPlan:
    """Exact keys and glob patterns to delete, in order."""

    keys: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()

    @classmethod
    def build(cls, keys: list[str], patterns: list[str] | None = None) -> InvalidationPlan:
        # dict.fromkeys keeps first-seen order while dropping repeats
        return cls(
            keys=tuple(dict.fromkeys(keys)),
            patterns=tuple(dict.fromkeys(patterns or [])),
        )

    def __len__(self) -> int:
        return len(self.keys) + len(self.patterns)


def _friend_keys(user_id: str) -> list[str]:
    return [
        CacheKeys.friends(user_id),
        CacheKeys.friend_requests(user_id),
        CacheKeys.friend_request_count(user_id),
    ]


def _all_message_pages(conversation_id: str) -> tuple[list[str], list[str]]:
    return [CacheKeys.messages(conversation_id, 0)], [CacheKeys.message_pages_pattern(conversation_id)]


def keys_for(event: InvalidationEvent) -> InvalidationPlan:
    """Map an event to the cache entries it invalidates."""
    match event:
        case MessageSent(conversation_id=cid, member_ids=members, sender_id=sender):
            keys = [CacheKeys.messages(cid, 0)]
            keys += [CacheKeys.unread_count(m, cid) for m in members]
            keys += [CacheKeys.unread_total(m) for m in members]
            keys += [CacheKeys.conversations(u) for u in (sender, *members)]
            return InvalidationPlan.build(keys)

        case MessageRead(user_id=uid, conversation_id=cid):
            return InvalidationPlan.build([
                CacheKeys.unread_count(uid, cid),
                CacheKeys.unread_total(uid),
                CacheKeys.conversations(uid),
            ])

        case MessageEdited(conversation_id=cid):
            keys, patterns = _all_message_pages(cid)
            return InvalidationPlan.build(keys, patterns)

        case MessageDeleted(message_id=mid, conversation_id=cid, member_ids=members):
            keys, patterns = _all_message_pages(cid)
            keys.append(CacheKeys.message_reactions(mid))
            keys += [CacheKeys.conversations(m) for m in members]
            return InvalidationPlan.build(keys, patterns)

        case ReactionChanged(message_id=mid):
            return InvalidationPlan.build([CacheKeys.message_reactions(mid)])

        case FriendRequestSent(sender_id=a, receiver_id=b) | FriendRequestRejected(
            user_id1=a, user_id2=b
        ):
            return InvalidationPlan.build(_friend_keys(a) + _friend_keys(b))

        case FriendRequestAccepted(user_id1=a, user_id2=b) | FriendRemoved(user_id1=a, user_id2=b):
            return InvalidationPlan.build(
                _friend_keys(a)
                + _friend_keys(b)
                + [CacheKeys.story_feed(a), CacheKeys.story_feed(b)]
            )

        case UserUpdated(user_id=uid, auth_id=auth_id):
            keys = [CacheKeys.user(uid), CacheKeys.user_profile(uid), CacheKeys.presence(uid)]
            if auth_id:
                keys.append(CacheKeys.user_by_auth(auth_id))
            return InvalidationPlan.build(keys)

        case UserStatusChanged(user_id=uid) | PresenceHeartbeat(user_id=uid):
            return InvalidationPlan.build([CacheKeys.presence(uid)])

        case PresenceOffline(user_id=uid):
            return InvalidationPlan.build([CacheKeys.presence(uid), CacheKeys.online_users()])

        case ConversationCreated(member_ids=members):
            return InvalidationPlan.build([CacheKeys.conversations(m) for m in members])

        case ConversationUpdated(conversation_id=cid, member_ids=members):
            keys = [
                CacheKeys.conversation(cid),
                CacheKeys.conversation_members(cid),
                CacheKeys.typing_users(cid),
            ]
            keys += [CacheKeys.conversations(m) for m in members]
            return InvalidationPlan.build(keys)

        case ConversationMemberChanged(conversation_id=cid, member_ids=members):
            keys = [CacheKeys.conversation(cid), CacheKeys.conversation_members(cid)]
            keys += [CacheKeys.conversations(m) for m in members]
            return InvalidationPlan.build(keys)

        case ConversationDeleted(conversation_id=cid, member_ids=members):
            keys, patterns = _all_message_pages(cid)
            keys += [
                CacheKeys.conversation(cid),
                CacheKeys.conversation_members(cid),
                CacheKeys.typing_users(cid),
                CacheKeys.active_call(cid),
            ]
            keys += [CacheKeys.conversations(m) for m in members]
            return InvalidationPlan.build(keys, patterns)

        case TypingChanged(conversation_id=cid):
            return InvalidationPlan.build([CacheKeys.typing_users(cid)])

        case StoryCreated(user_id=uid, friend_ids=friends) | StoryDeleted(
            user_id=uid, friend_ids=friends
        ):
            return InvalidationPlan.build([CacheKeys.story_feed(u) for u in (uid, *friends)])

        case StoryViewed(story_id=sid):
            return InvalidationPlan.build([CacheKeys.story_views(sid)])

        case RoomCreated(owner_id=owner, is_public=is_public):
            keys = [CacheKeys.room_list(owner)]
            if is_public:
                keys.append(CacheKeys.public_rooms())
            return InvalidationPlan.build(keys)

        case RoomUpdated(room_id=rid, is_public=is_public):
            keys = [CacheKeys.room_details(rid)]
            if is_public:
                keys.append(CacheKeys.public_rooms())
            return InvalidationPlan.build(keys)

        case RoomUserJoined(room_id=rid, user_id=uid, is_public=is_public) | RoomUserLeft(
            room_id=rid, user_id=uid, is_public=is_public
        ):
            keys = [CacheKeys.room_details(rid), CacheKeys.room_list(uid)]
            if is_public:
                keys.append(CacheKeys.public_rooms())
            return InvalidationPlan.build(keys)

        case RoomDeleted(room_id=rid, member_ids=members, is_public=is_public):
            keys = [CacheKeys.room_details(rid)]
            keys += [CacheKeys.room_list(m) for m in members]
            if is_public:
                keys.append(CacheKeys.public_rooms())
            return InvalidationPlan.build(keys)

        case SupportTicketChanged(user_id=uid):
            return InvalidationPlan.build([CacheKeys.support_tickets(uid)])

        case _CallEvent(conversation_id=cid):
            return InvalidationPlan.build([CacheKeys.active_call(cid)])

        case SearchInvalidated(member_ids=members):
            return InvalidationPlan.build([], [CacheKeys.search_pattern(m) for m in members])

    raise TypeError(f"No invalidation route for {type(event).__name__}")


def plan_for_user(user_id: str, auth_id: str | None = None) -> InvalidationPlan:
    """Every per-user cache entry, for account-wide changes."""
    keys = [
        CacheKeys.user(user_id),
        CacheKeys.user_profile(user_id),
        CacheKeys.conversations(user_id),
        *_friend_keys(user_id),
        CacheKeys.presence(user_id),
        CacheKeys.story_feed(user_id),
        CacheKeys.room_list(user_id),
        CacheKeys.support_tickets(user_id),
        CacheKeys.unread_total(user_id),
    ]
    if auth_id:
        keys.append(CacheKeys.user_by_auth(auth_id))
    return InvalidationPlan.build(
        keys,
        [CacheKeys.unread_pattern(user_id), CacheKeys.search_pattern(user_id)],
    )


def plan_for_conversation(conversation_id: str, member_ids: list[str]) -> InvalidationPlan:
    """Every cache entry tied to a conversation and its members."""
    keys, patterns = _all_message_pages(conversation_id)
    keys += [
        CacheKeys.conversation(conversation_id),
        CacheKeys.conversation_members(conversation_id),
        CacheKeys.typing_users(conversation_id),
        CacheKeys.active_call(conversation_id),
    ]
    keys += [CacheKeys.conversations(m) for m in member_ids]
    patterns += [CacheKeys.search_pattern(m) for m in member_ids]
    return InvalidationPlan.build(keys, patterns)


@dataclass
class DispatchResult:
    """Outcome of executing an invalidation plan."""

    label: str
    deleted: int = 0
    failed: int = 0
    attempted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "deleted": self.deleted,
            "failed": self.failed,
            "attempted": len(self.attempted),
        }


class InvalidationDispatcher:
    """Executes invalidation plans against the cache.

    Store failures are swallowed here so the triggering action never fails
    because cache cleanup did.
    """

    def __init__(self, cache: CacheService) -> None:
        self.cache = cache

    async def dispatch(self, event: InvalidationEvent) -> DispatchResult:
        """Invalidate everything an event touches."""
        label = event.event_type.value
        with log_context(event=label):
            result = await self.execute(keys_for(event), label)
        return result

    async def dispatch_body(self, body: Any) -> DispatchResult | None:
        """Parse and dispatch a webhook body.

        Returns:
            The result, or None for unknown event types.

        Raises:
            InvalidEventError: If the body is structurally invalid.
        """
        event = parse_event(body)
        if event is None:
            return None
        return await self.dispatch(event)

    async def execute(self, plan: InvalidationPlan, label: str) -> DispatchResult:
        """Delete every key and pattern in a plan, counting failures."""
        result = DispatchResult(label=label)

        for key in plan.keys:
            result.attempted.append(key)
            try:
                if await self.cache.delete(key):
                    result.deleted += 1
            except CacheError as e:
                result.failed += 1
                logger.warning("Cache invalidation failed", key=key, error=str(e))

        for pattern in plan.patterns:
            result.attempted.append(pattern)
            try:
                result.deleted += await self.cache.delete_pattern(pattern)
            except CacheError as e:
                result.failed += 1
                logger.warning("Cache pattern invalidation failed", pattern=pattern, error=str(e))

        if result.failed:
            logger.error(
                "Invalidation incomplete, stale entries will expire by TTL",
                label=label,
                failed=result.failed,
                attempted=len(result.attempted),
            )
        else:
            logger.info(
                "Invalidated cache",
                label=label,
                deleted=result.deleted,
                attempted=len(result.attempted),
            )
        return result

    async def invalidate_user(self, user_id: str, auth_id: str | None = None) -> DispatchResult:
        """Drop every per-user entry."""
        return await self.execute(plan_for_user(user_id, auth_id), "user.all")

    async def invalidate_conversation(
        self, conversation_id: str, member_ids: list[str]
    ) -> DispatchResult:
        """Drop every entry tied to a conversation."""
        return await self.execute(
            plan_for_conversation(conversation_id, member_ids), "conversation.all"
        )
