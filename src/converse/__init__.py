"""
Converse: a read-through caching layer for a realtime chat backend.

Reads are served from a shared cache store in front of the data backend;
domain events drop the cache entries they make stale.
"""

__version__ = "0.1.0"
