"""
Cache warming.

Preloads the keys a client needs right after login so its first screens are
served from cache, and refreshes the volatile ones on demand.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable

from converse.cache.invalidation import InvalidationDispatcher, InvalidationPlan
from converse.cache.keys import CacheKeys
from converse.logging import get_logger
from converse.queries import CachedQueries
from converse.types import Caller

logger = get_logger(__name__)

WARM_CONVERSATION_LIMIT = 5


@dataclass
class WarmResult:
    """Outcome of a warm or refresh run."""

    warmed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"warmed": self.warmed, "failed": self.failed}


async def _run(result: WarmResult, jobs: dict[str, Awaitable[Any]]) -> list[Any]:
    """Run named loads concurrently, recording which ones failed."""
    names = list(jobs)
    outcomes = await asyncio.gather(*jobs.values(), return_exceptions=True)
    values: list[Any] = []
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, BaseException):
            result.failed.append(name)
            logger.warning("Cache warm step failed", step=name, error=str(outcome))
            values.append(None)
        else:
            result.warmed.append(name)
            values.append(outcome)
    return values


def _conversation_ids(entries: Any) -> list[str]:
    ids: list[str] = []
    for entry in entries or []:
        conversation = entry.get("conversation") if isinstance(entry, dict) else None
        conversation_id = (conversation or {}).get("_id")
        if isinstance(conversation_id, str):
            ids.append(conversation_id)
    return ids


async def warm_user_cache(queries: CachedQueries, user_id: str, caller: Caller) -> WarmResult:
    """Load the caller's critical keys into the cache.

    Covers the profile, conversation list, friends, requests, presence,
    stories, rooms and support tickets, then page 0 of the most recent
    conversations. A failing step does not stop the others.
    """
    result = WarmResult()
    values = await _run(
        result,
        {
            "user": queries.current_user(caller),
            "conversations": queries.conversations(user_id, caller),
            "friends": queries.friends(user_id, caller),
            "friend_requests": queries.friend_requests(user_id, caller),
            "friend_request_count": queries.friend_request_count(user_id, caller),
            "presence": queries.presence(user_id, caller),
            "stories": queries.story_feed(user_id, caller),
            "rooms": queries.user_rooms(user_id, caller),
            "support": queries.support_tickets(user_id, caller),
        },
    )

    recent = _conversation_ids(values[1])[:WARM_CONVERSATION_LIMIT]
    if recent:
        await _run(
            result,
            {f"messages:{cid}": queries.messages(cid, 0, caller) for cid in recent},
        )

    logger.info("Cache warmed", warmed=len(result.warmed), failed=len(result.failed))
    return result


async def refresh_user_cache(
    queries: CachedQueries,
    dispatcher: InvalidationDispatcher,
    user_id: str,
    caller: Caller,
) -> WarmResult:
    """Drop and reload the caller's most volatile entries."""
    plan = InvalidationPlan.build(
        [
            CacheKeys.conversations(user_id),
            CacheKeys.friend_requests(user_id),
            CacheKeys.friend_request_count(user_id),
            CacheKeys.presence(user_id),
        ]
    )
    await dispatcher.execute(plan, "user.refresh")

    result = WarmResult()
    await _run(
        result,
        {
            "conversations": queries.conversations(user_id, caller),
            "friend_requests": queries.friend_requests(user_id, caller),
            "friend_request_count": queries.friend_request_count(user_id, caller),
            "presence": queries.presence(user_id, caller),
        },
    )
    logger.info("Cache refreshed", warmed=len(result.warmed), failed=len(result.failed))
    return result
