from __future__ import annotations

import pytest

from ai_gateway.gateway.cache import CacheConfig, ContentCache
from ai_gateway.gateway.circuit_breaker import RetryConfig
from ai_gateway.gateway.credentials import KeyManager
from ai_gateway.gateway.dispatcher import RetryableDispatcher
from ai_gateway.gateway.registry import ProviderRegistry
from ai_gateway.gateway.types import (
    Capability,
    ProviderDescriptor,
    ProviderResponse,
    RequestEnvelope,
    VoiceInfo,
)
from ai_gateway.providers.base import BaseProvider


class FakeProvider(BaseProvider):
    """In-process provider that replays scripted outcomes.

    Each call pops the next outcome: an exception is raised, a
    ProviderResponse is returned. With nothing scripted it answers "ok".
    """

    def __init__(self, descriptor: ProviderDescriptor, outcomes=None):
        super().__init__(descriptor)
        self.outcomes = list(outcomes or [])
        self.calls: list[dict] = []

    def compare_models(self, a: str, b: str) -> int:
        return (a > b) - (a < b)

    def get_available_voices(self) -> list[VoiceInfo]:
        return [VoiceInfo(id=v, name=v) for v in self.descriptor.voices]

    async def send_message(
        self, envelope, capability, model=None, attachment=None, voice=None, params=None, api_key=None
    ) -> ProviderResponse:
        self.calls.append(
            {
                "envelope": envelope,
                "capability": capability,
                "model": model,
                "attachment": attachment,
                "voice": voice,
                "params": params,
                "api_key": api_key,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else ProviderResponse(text=f"ok from {self.provider_id}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def fake_descriptor(
    provider_id: str,
    capabilities=(Capability.TEXT_GENERATION,),
    credentials: bool = True,
    voices: tuple[str, ...] = (),
    default_voice: str | None = None,
) -> ProviderDescriptor:
    caps = frozenset(capabilities)
    model = f"{provider_id}-model"
    return ProviderDescriptor(
        provider_id=provider_id,
        capabilities=caps,
        default_models={c: model for c in caps},
        available_models={c: (model,) for c in caps},
        model_prefixes=(f"{provider_id}-",),
        voices=voices,
        default_voice=default_voice,
        required_credential_keys=(f"{provider_id.upper()}_API_KEYS",) if credentials else (),
    )


@pytest.fixture
def make_provider():
    def _make(provider_id: str, outcomes=None, **descriptor_kwargs) -> FakeProvider:
        return FakeProvider(fake_descriptor(provider_id, **descriptor_kwargs), outcomes)

    return _make


@pytest.fixture
def make_dispatcher():
    def _make(providers, keys=None, cache=None, preferences=None) -> RetryableDispatcher:
        registry = ProviderRegistry()
        for provider in providers:
            registry.register(provider.provider_id, lambda d, p=provider: p)
        built = registry.build_all([p.descriptor for p in providers])
        return RetryableDispatcher(
            registry,
            built,
            key_manager=KeyManager(keys or {}),
            cache=cache,
            retry_config=RetryConfig(initial_delay=0.0),
            capability_preferences=preferences,
        )

    return _make


@pytest.fixture
def cache(tmp_path):
    content_cache = ContentCache(CacheConfig(cache_dir=str(tmp_path / "cache")))
    yield content_cache
    content_cache.dispose()


@pytest.fixture
def envelope():
    return RequestEnvelope(
        context={"task": "greeting"},
        instructions={"tone": "friendly"},
        date_time="2024-01-01T00:00:00+00:00",
    ).with_user_message("Hello")
