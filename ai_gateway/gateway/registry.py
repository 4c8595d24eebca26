"""Provider Registry — provider id → constructor, model name → owning provider.

The table is filled once at startup (``register``) and only read after
that, so concurrent lookups need no locking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from ai_gateway.gateway.errors import UnknownProviderError
from ai_gateway.gateway.types import Capability, ProviderDescriptor

if TYPE_CHECKING:
    from ai_gateway.providers.base import BaseProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderDescriptor], "BaseProvider"]


def _normalize_id(provider_id: str) -> str:
    return provider_id.strip().lower()


class ProviderRegistry:
    """Directory of provider constructors.

    Usage:
        registry = ProviderRegistry()
        registry.register("openai", OpenAIProvider, model_prefixes=["gpt-", "dall-e"])
        provider = registry.build("openai", OPENAI_DESCRIPTOR)
        registry.resolve_owner("gpt-4.1-mini")  # → "openai"
    """

    def __init__(self):
        # dicts keep registration order, which is the tie-break everywhere
        self._constructors: dict[str, ProviderFactory] = {}
        self._static_prefixes: dict[str, tuple[str, ...]] = {}
        self._descriptors: dict[str, ProviderDescriptor] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        provider_id: str,
        constructor: ProviderFactory,
        model_prefixes: Iterable[str] | None = None,
    ) -> None:
        """Register (or replace) the constructor for a provider id."""
        pid = _normalize_id(provider_id)
        if pid in self._constructors:
            logger.info("Replacing constructor for provider %s", pid)
        self._constructors[pid] = constructor
        self._static_prefixes[pid] = tuple(p.strip().lower() for p in (model_prefixes or ()) if p.strip())

    def unregister(self, provider_id: str) -> bool:
        pid = _normalize_id(provider_id)
        existed = self._constructors.pop(pid, None) is not None
        self._static_prefixes.pop(pid, None)
        self._descriptors.pop(pid, None)
        return existed

    def is_registered(self, provider_id: str) -> bool:
        return _normalize_id(provider_id) in self._constructors

    @property
    def registered_ids(self) -> list[str]:
        return list(self._constructors)

    def clear(self) -> None:
        self._constructors.clear()
        self._static_prefixes.clear()
        self._descriptors.clear()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build(self, provider_id: str, descriptor: ProviderDescriptor) -> BaseProvider:
        """Instantiate a provider from its descriptor."""
        pid = _normalize_id(provider_id)
        constructor = self._constructors.get(pid)
        if constructor is None:
            raise UnknownProviderError(pid)
        provider = constructor(descriptor)
        self._descriptors[pid] = descriptor
        logger.debug("Built provider %s", pid, extra={"provider": pid})
        return provider

    def build_all(self, descriptors: Iterable[ProviderDescriptor]) -> dict[str, BaseProvider]:
        """Build every enabled, registered provider. Order follows ``descriptors``."""
        providers: dict[str, BaseProvider] = {}
        for descriptor in descriptors:
            pid = _normalize_id(descriptor.provider_id)
            if not descriptor.enabled:
                logger.info("Skipping disabled provider %s", pid)
                continue
            if pid not in self._constructors:
                logger.warning("No constructor registered for provider %s, skipping", pid)
                continue
            providers[pid] = self.build(pid, descriptor)
        logger.info("Built %d provider(s): %s", len(providers), ", ".join(providers) or "-")
        return providers

    # ------------------------------------------------------------------
    # Model ownership
    # ------------------------------------------------------------------

    def _prefixes_for(self, pid: str) -> tuple[str, ...]:
        descriptor = self._descriptors.get(pid)
        configured = tuple(p.lower() for p in descriptor.model_prefixes) if descriptor else ()
        # configured prefixes first, then the ones given at registration
        return configured + tuple(p for p in self._static_prefixes.get(pid, ()) if p not in configured)

    def resolve_owner(self, model_name: str) -> str | None:
        """Provider id claiming ``model_name``, or None.

        Exact membership in a descriptor's model lists wins; otherwise the
        longest matching prefix, ties going to the earliest registration.
        """
        model = model_name.strip().lower()
        if not model:
            return None

        for pid in self._constructors:
            descriptor = self._descriptors.get(pid)
            if descriptor is None:
                continue
            for models in descriptor.available_models.values():
                if model in (m.lower() for m in models):
                    return pid

        best: str | None = None
        best_len = 0
        for pid in self._constructors:
            for prefix in self._prefixes_for(pid):
                if model.startswith(prefix) and len(prefix) > best_len:
                    best, best_len = pid, len(prefix)
        return best

    def descriptor(self, provider_id: str) -> ProviderDescriptor | None:
        return self._descriptors.get(_normalize_id(provider_id))

    def providers_for_capability(self, capability: Capability) -> list[str]:
        """Built provider ids declaring ``capability``, in registration order."""
        return [
            pid
            for pid in self._constructors
            if pid in self._descriptors and self._descriptors[pid].supports(capability)
        ]

    def stats(self) -> dict:
        return {
            "registered_providers": len(self._constructors),
            "built_providers": len(self._descriptors),
            "provider_ids": list(self._constructors),
            "model_prefixes": {pid: list(self._prefixes_for(pid)) for pid in self._constructors},
        }
