"""
Provider Pool — the candidate pool collaborator.

Production deployments back this with the provider directory and its live
availability feed. Ranking needs `candidates()` and `get()`; the provider
routes of the API also list, upsert and remove.
"""

import threading
from typing import Dict, List, Optional, Protocol

from order_kernel.models.order import ServiceOrder
from order_kernel.models.scoring import ProviderCandidate


class ProviderPool(Protocol):
    def candidates(self, order: ServiceOrder) -> List[ProviderCandidate]: ...

    def get(self, provider_id: str) -> Optional[ProviderCandidate]: ...

    def all(self) -> List[ProviderCandidate]: ...

    def upsert(self, provider: ProviderCandidate) -> None: ...

    def remove(self, provider_id: str) -> bool: ...


class InMemoryProviderPool:
    def __init__(self, providers: Optional[List[ProviderCandidate]] = None):
        self._providers: Dict[str, ProviderCandidate] = {}
        self._lock = threading.Lock()
        for provider in providers or []:
            self.upsert(provider)

    def upsert(self, provider: ProviderCandidate) -> None:
        with self._lock:
            self._providers[provider.provider_id] = provider

    def remove(self, provider_id: str) -> bool:
        with self._lock:
            return self._providers.pop(provider_id, None) is not None

    def set_availability(self, provider_id: str, available: bool) -> None:
        with self._lock:
            provider = self._providers[provider_id]
            self._providers[provider_id] = provider.model_copy(update={"available": available})

    def get(self, provider_id: str) -> Optional[ProviderCandidate]:
        with self._lock:
            return self._providers.get(provider_id)

    def candidates(self, order: ServiceOrder) -> List[ProviderCandidate]:
        """Snapshot of the whole pool; eligibility is the scoring engine's call."""
        with self._lock:
            return [p.model_copy() for p in self._providers.values()]

    def all(self) -> List[ProviderCandidate]:
        with self._lock:
            return sorted(self._providers.values(), key=lambda p: p.provider_id)
