"""
Data backend access.

This package talks to the external services this one sits between:
- BackendClient: query RPCs against the managed data backend
- InvalidationNotifier: webhook client used by backend-side mutation hooks
"""

from converse.backend.client import BackendClient
from converse.backend.notifier import InvalidationNotifier

__all__ = ["BackendClient", "InvalidationNotifier"]
