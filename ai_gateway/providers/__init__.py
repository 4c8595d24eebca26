"""Provider backends and the default provider table."""

from __future__ import annotations

from ai_gateway.gateway.registry import ProviderRegistry
from ai_gateway.gateway.types import ProviderDescriptor
from ai_gateway.providers.base import BaseProvider
from ai_gateway.providers.google import GOOGLE_DESCRIPTOR, GoogleProvider
from ai_gateway.providers.on_device import ON_DEVICE_DESCRIPTOR, OnDeviceProvider, SpeechEngine
from ai_gateway.providers.openai import OPENAI_DESCRIPTOR, OpenAIProvider
from ai_gateway.providers.xai import XAI_DESCRIPTOR, XAIProvider

# Registration order is the failover order when nothing else decides
DEFAULT_DESCRIPTORS: tuple[ProviderDescriptor, ...] = (
    OPENAI_DESCRIPTOR,
    GOOGLE_DESCRIPTOR,
    XAI_DESCRIPTOR,
    ON_DEVICE_DESCRIPTOR,
)


def build_default_registry(timeout: float = 60.0, speech_engine: SpeechEngine | None = None) -> ProviderRegistry:
    """Registry with the four bundled backends registered (not yet built)."""
    registry = ProviderRegistry()
    registry.register("openai", lambda d: OpenAIProvider(d, timeout), OPENAI_DESCRIPTOR.model_prefixes)
    registry.register("google", lambda d: GoogleProvider(d, timeout), GOOGLE_DESCRIPTOR.model_prefixes)
    registry.register("xai", lambda d: XAIProvider(d, timeout), XAI_DESCRIPTOR.model_prefixes)
    registry.register(
        "on_device",
        lambda d: OnDeviceProvider(d, timeout, engine=speech_engine),
        ON_DEVICE_DESCRIPTOR.model_prefixes,
    )
    return registry


__all__ = [
    "BaseProvider",
    "DEFAULT_DESCRIPTORS",
    "GoogleProvider",
    "OnDeviceProvider",
    "OpenAIProvider",
    "SpeechEngine",
    "XAIProvider",
    "build_default_registry",
]
