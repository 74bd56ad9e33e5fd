"""
Tests for invalidation event parsing, routing and dispatch.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest

from converse.cache.invalidation import (
    EVENT_CLASSES,
    EventType,
    InvalidationDispatcher,
    MessageSent,
    PresenceHeartbeat,
    RoomUserJoined,
    SearchInvalidated,
    UserUpdated,
    event_to_body,
    keys_for,
    parse_event,
    plan_for_conversation,
    plan_for_user,
)
from converse.cache.keys import CacheKeys, ttl_for_key
from converse.cache.kv_cache import InMemoryKVCache
from converse.cache.service import CacheService
from converse.exceptions import CacheError, InvalidEventError

if TYPE_CHECKING:
    from tests.conftest import FakeClock


class FlakyStore(InMemoryKVCache):
    """Fails deletes for the given keys."""

    def __init__(self, failing: set[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failing = failing

    async def delete(self, key: str) -> bool:
        if key in self.failing:
            raise CacheError("store down", context={"key": key})
        return await super().delete(key)


class TestParseEvent:
    def test_known_event(self) -> None:
        event = parse_event(
            {
                "type": "message.sent",
                "conversationId": "c1",
                "memberIds": ["u1", "u2"],
                "senderId": "u1",
            }
        )

        assert event == MessageSent(conversation_id="c1", member_ids=("u1", "u2"), sender_id="u1")

    def test_unknown_type_is_ignored(self) -> None:
        assert parse_event({"type": "unknown.event"}) is None

    @pytest.mark.parametrize("body", [None, [], "message.sent", {}, {"type": ""}, {"type": 3}])
    def test_malformed_body(self, body: Any) -> None:
        with pytest.raises(InvalidEventError):
            parse_event(body)

    def test_missing_field(self) -> None:
        with pytest.raises(InvalidEventError) as exc_info:
            parse_event({"type": "presence.heartbeat"})

        assert exc_info.value.context["field"] == "userId"

    def test_ill_typed_fields(self) -> None:
        with pytest.raises(InvalidEventError):
            parse_event({"type": "room.created", "roomId": "r1", "ownerId": "u1", "isPublic": "yes"})
        with pytest.raises(InvalidEventError):
            parse_event({"type": "story.created", "userId": "u1", "friendIds": "u2"})
        with pytest.raises(InvalidEventError):
            parse_event({"type": "reaction.change", "messageId": ""})

    def test_optional_field(self) -> None:
        assert parse_event({"type": "user.update", "userId": "u1"}) == UserUpdated(user_id="u1")
        assert parse_event({"type": "user.update", "userId": "u1", "authId": "a1"}) == UserUpdated(
            user_id="u1", auth_id="a1"
        )

    def test_every_event_type_has_a_class(self) -> None:
        assert set(EVENT_CLASSES) == set(EventType)

    def test_body_round_trip(self) -> None:
        event = RoomUserJoined(room_id="r1", user_id="u1", is_public=True)

        body = event_to_body(event)

        assert body == {"type": "room.user.join", "roomId": "r1", "userId": "u1", "isPublic": True}
        assert parse_event(body) == event


class TestRouting:
    def test_message_sent(self) -> None:
        plan = keys_for(MessageSent(conversation_id="c1", member_ids=("u1", "u2"), sender_id="u1"))

        assert set(plan.keys) == {
            "messages_recent:c1",
            "unread:u1:c1",
            "unread:u2:c1",
            "unread_total:u1",
            "unread_total:u2",
            "conversations:u1",
            "conversations:u2",
        }
        assert len(plan.keys) == 7
        assert plan.patterns == ()

    def test_message_edit_covers_every_page(self) -> None:
        plan = keys_for(parse_event({"type": "message.edit", "messageId": "m1", "conversationId": "c1"}))

        assert plan.keys == (CacheKeys.messages("c1"),)
        assert plan.patterns == (CacheKeys.message_pages_pattern("c1"),)

    def test_presence_heartbeat_touches_only_presence(self) -> None:
        plan = keys_for(PresenceHeartbeat(user_id="u1"))

        assert plan.keys == ("presence:u1",)
        assert plan.patterns == ()

    def test_presence_offline(self) -> None:
        plan = keys_for(parse_event({"type": "presence.offline", "userId": "u1"}))

        assert plan.keys == (CacheKeys.presence("u1"), CacheKeys.online_users())

    @pytest.mark.parametrize("is_public", [True, False])
    def test_room_join_public_rooms_only_when_public(self, is_public: bool) -> None:
        plan = keys_for(RoomUserJoined(room_id="r1", user_id="u1", is_public=is_public))

        assert CacheKeys.room_details("r1") in plan.keys
        assert CacheKeys.room_list("u1") in plan.keys
        assert (CacheKeys.public_rooms() in plan.keys) is is_public

    def test_room_deleted(self) -> None:
        plan = keys_for(
            parse_event(
                {"type": "room.deleted", "roomId": "r1", "memberIds": ["u1", "u2"], "isPublic": False}
            )
        )

        assert plan.keys == ("room:r1", "rooms:u1", "rooms:u2")

    def test_friend_accepted_includes_story_feeds(self) -> None:
        plan = keys_for(
            parse_event({"type": "friend.request.accepted", "userId1": "a", "userId2": "b"})
        )

        assert CacheKeys.story_feed("a") in plan.keys
        assert CacheKeys.story_feed("b") in plan.keys
        assert CacheKeys.friend_request_count("b") in plan.keys

    def test_friend_rejected_leaves_story_feeds(self) -> None:
        plan = keys_for(
            parse_event({"type": "friend.request.rejected", "userId1": "a", "userId2": "b"})
        )

        assert CacheKeys.friends("a") in plan.keys
        assert CacheKeys.story_feed("a") not in plan.keys

    def test_user_update_with_auth_id(self) -> None:
        plan = keys_for(UserUpdated(user_id="u1", auth_id="auth|a"))

        assert CacheKeys.user_by_auth("auth|a") in plan.keys
        assert CacheKeys.presence("u1") in plan.keys

    def test_story_created_covers_friends(self) -> None:
        plan = keys_for(
            parse_event({"type": "story.created", "userId": "u1", "friendIds": ["u2", "u3"]})
        )

        assert plan.keys == ("story_feed:u1", "story_feed:u2", "story_feed:u3")

    @pytest.mark.parametrize("event_type", ["call.started", "call.ended", "call.status.change"])
    def test_call_events(self, event_type: str) -> None:
        plan = keys_for(parse_event({"type": event_type, "conversationId": "c1"}))

        assert plan.keys == (CacheKeys.active_call("c1"),)

    def test_search_invalidation_uses_patterns(self) -> None:
        plan = keys_for(SearchInvalidated(conversation_id="c1", member_ids=("u1", "u2")))

        assert plan.keys == ()
        assert plan.patterns == ("search:u1:*", "search:u2:*")

    def test_conversation_deleted(self) -> None:
        plan = keys_for(
            parse_event({"type": "conversation.deleted", "conversationId": "c1", "memberIds": ["u1"]})
        )

        assert CacheKeys.active_call("c1") in plan.keys
        assert CacheKeys.conversations("u1") in plan.keys
        assert plan.patterns == (CacheKeys.message_pages_pattern("c1"),)

    def test_plans_deduplicate(self) -> None:
        plan = keys_for(MessageSent(conversation_id="c1", member_ids=("u1", "u1"), sender_id="u1"))

        assert len(plan.keys) == len(set(plan.keys))

    def test_bulk_plans(self) -> None:
        user_plan = plan_for_user("u1", "auth|a")
        assert CacheKeys.user_by_auth("auth|a") in user_plan.keys
        assert CacheKeys.unread_pattern("u1") in user_plan.patterns

        conversation_plan = plan_for_conversation("c1", ["u1", "u2"])
        assert CacheKeys.search_pattern("u2") in conversation_plan.patterns
        assert CacheKeys.conversation("c1") in conversation_plan.keys


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_message_sent_scenario(self, cache_service: CacheService) -> None:
        await cache_service.set_many(
            {
                "messages_recent:c1": [{"_id": "m0"}],
                "unread:u2:c1": 4,
                "unread_total:u2": 9,
                "conversations:u1": [],
                "conversations:u2": [],
                "conversations:u3": ["untouched"],
            }
        )
        dispatcher = InvalidationDispatcher(cache_service)

        result = await dispatcher.dispatch(
            MessageSent(conversation_id="c1", member_ids=("u1", "u2"), sender_id="u1")
        )

        assert result.ok
        assert result.deleted == 5
        for key in ("messages_recent:c1", "unread:u2:c1", "conversations:u1", "conversations:u2"):
            assert await cache_service.get(key) is None
        assert await cache_service.get("conversations:u3") == ["untouched"]

    @pytest.mark.asyncio
    async def test_dispatch_is_idempotent(self, cache_service: CacheService) -> None:
        dispatcher = InvalidationDispatcher(cache_service)
        await cache_service.set("presence:u1", "online", 45)
        event = PresenceHeartbeat(user_id="u1")

        first = await dispatcher.dispatch(event)
        second = await dispatcher.dispatch(event)

        assert first.deleted == 1
        assert second.deleted == 0
        assert second.ok

    @pytest.mark.asyncio
    async def test_patterns_are_executed(self, cache_service: CacheService) -> None:
        await cache_service.set_many({"messages_recent:c1": [], "messages:c1:1": [], "messages:c1:2": []})
        dispatcher = InvalidationDispatcher(cache_service)

        result = await dispatcher.dispatch_body(
            {"type": "message.edit", "messageId": "m1", "conversationId": "c1"}
        )

        assert result is not None
        assert result.deleted == 3
        assert await cache_service.scan("messages*") == []

    @pytest.mark.asyncio
    async def test_unknown_body_returns_none(self, cache_service: CacheService) -> None:
        await cache_service.set("presence:u1", "online", 45)

        result = await InvalidationDispatcher(cache_service).dispatch_body({"type": "unknown.event"})

        assert result is None
        assert await cache_service.get("presence:u1") == "online"

    @pytest.mark.asyncio
    async def test_store_failures_are_counted_not_raised(self) -> None:
        store = FlakyStore(failing={"unread:u2:c1"})
        cache = CacheService(store)
        await cache.set("conversations:u2", [])

        result = await InvalidationDispatcher(cache).dispatch(
            MessageSent(conversation_id="c1", member_ids=("u1", "u2"), sender_id="u1")
        )

        assert not result.ok
        assert result.failed == 1
        assert result.deleted == 1
        assert len(result.attempted) == 7
        assert await cache.get("conversations:u2") is None

    @pytest.mark.asyncio
    async def test_failed_unread_deletion_expires_with_ttl(self, clock: FakeClock) -> None:
        store = FlakyStore(failing={"unread:u2:c1"}, clock=clock)
        cache = CacheService(store)
        key = CacheKeys.unread_count("u2", "c1")
        await cache.set(key, 0, ttl_for_key(key))

        result = await InvalidationDispatcher(cache).dispatch(
            MessageSent(conversation_id="c1", member_ids=("u1", "u2"), sender_id="u1")
        )
        assert result.failed == 1

        loader = AsyncMock(return_value=7)
        assert await cache.get_or_set(key, loader, ttl_for_key(key)) == 0

        clock.advance(ttl_for_key(key) + 1)
        assert await cache.get_or_set(key, loader, ttl_for_key(key)) == 7
        loader.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_user(self, cache_service: CacheService) -> None:
        await cache_service.set_many({"user:u1": {}, "unread:u1:c1": 2, "search:u1:all:x": []})

        result = await InvalidationDispatcher(cache_service).invalidate_user("u1")

        assert result.label == "user.all"
        assert await cache_service.scan("*") == []
