"""Request dependencies.

Collaborators live on app.state (created in the lifespan handler or injected
by tests) and reach route handlers through these Depends providers.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, Header, Request

from converse.auth import Authenticator
from converse.backend.client import BackendClient
from converse.cache.invalidation import InvalidationDispatcher
from converse.cache.service import CacheService
from converse.config import Settings
from converse.logging import set_user_id
from converse.queries import CachedQueries, user_id_of
from converse.types import Caller


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> CacheService:
    return request.app.state.cache


def get_backend(request: Request) -> BackendClient:
    return request.app.state.backend


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def get_dispatcher(cache: Annotated[CacheService, Depends(get_cache)]) -> InvalidationDispatcher:
    return InvalidationDispatcher(cache)


def get_queries(
    cache: Annotated[CacheService, Depends(get_cache)],
    backend: Annotated[BackendClient, Depends(get_backend)],
) -> CachedQueries:
    return CachedQueries(cache, backend)


async def get_caller(
    authenticator: Annotated[Authenticator, Depends(get_authenticator)],
    authorization: Annotated[str | None, Header()] = None,
) -> Caller:
    """Authenticate the request. Raises AuthenticationError (401)."""
    return await authenticator.authenticate(authorization)


async def get_current_user(
    caller: Annotated[Caller, Depends(get_caller)],
    queries: Annotated[CachedQueries, Depends(get_queries)],
) -> dict[str, Any]:
    """Resolve the caller's backend user. Raises NotFoundError (404)."""
    user = await queries.current_user(caller)
    set_user_id(user_id_of(user))
    return user


async def get_current_user_id(
    user: Annotated[dict[str, Any], Depends(get_current_user)],
) -> str:
    return user_id_of(user)


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
CacheDep = Annotated[CacheService, Depends(get_cache)]
QueriesDep = Annotated[CachedQueries, Depends(get_queries)]
DispatcherDep = Annotated[InvalidationDispatcher, Depends(get_dispatcher)]
CallerDep = Annotated[Caller, Depends(get_caller)]
CurrentUserDep = Annotated[dict[str, Any], Depends(get_current_user)]
UserIdDep = Annotated[str, Depends(get_current_user_id)]
