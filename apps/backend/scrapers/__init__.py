"""
Source adapters for external job boards.

Each adapter fetches search results from one source and normalizes them into
JobPosting records. The registry is the only place sources are enumerated.
"""

from .base import RawPosting, SearchQuery, SourceAdapter
from .registry import AdapterRegistry, get_adapter_registry

__all__ = [
    'RawPosting',
    'SearchQuery',
    'SourceAdapter',
    'AdapterRegistry',
    'get_adapter_registry',
]
