"""
Adapter registry: the set of job sources the scraper can run.
"""
import logging
from typing import Dict, List, Optional

from .base import SourceAdapter

logger = logging.getLogger(__name__)

# Global registry instance
_registry: Optional['AdapterRegistry'] = None


class AdapterRegistry:
    """Registry of source adapters keyed by source name"""

    def __init__(self):
        self._adapters: Dict[str, SourceAdapter] = {}

    def register(self, adapter: SourceAdapter):
        if adapter.name in self._adapters:
            logger.warning(f"Adapter {adapter.name} already registered, replacing")
        self._adapters[adapter.name] = adapter
        logger.info(f"Registered source adapter: {adapter.name}")

    def get(self, name: str) -> Optional[SourceAdapter]:
        return self._adapters.get(name)

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, name: str) -> bool:
        return name in self._adapters

    def list_adapters(self) -> List[Dict]:
        return [
            {
                'name': adapter.name,
                'base_url': adapter.base_url,
                'class': adapter.__class__.__name__,
            }
            for adapter in sorted(self._adapters.values(), key=lambda a: a.name)
        ]


def get_adapter_registry() -> AdapterRegistry:
    """Get or create the global adapter registry"""
    global _registry
    if _registry is None:
        _registry = AdapterRegistry()
        _register_builtin_adapters(_registry)
    return _registry


def _register_builtin_adapters(registry: AdapterRegistry):
    from app.config import settings
    from .indeed import IndeedAdapter
    from .linkedin import LinkedInAdapter

    for adapter_cls in (IndeedAdapter, LinkedInAdapter):
        registry.register(
            adapter_cls(
                posting_ttl_days=settings.posting_ttl_days,
                deadline_days=settings.application_deadline_days,
            )
        )
