"""
HTTP surface.

create_app() builds the FastAPI application: cached read endpoints, the
invalidation webhook and cache maintenance routes.
"""

from converse.api.app import create_app

__all__ = ["create_app"]
