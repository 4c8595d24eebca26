"""AIClient — the thin entry point applications call.

Every capability method builds a request and hands it to the dispatcher;
nothing here depends on a concrete provider. Model and voice listings,
cache maintenance and health checks sit next to them for convenience.
"""

from __future__ import annotations

import logging

from ai_gateway.core.config import Settings
from ai_gateway.gateway.cache import CacheConfig, ContentCache
from ai_gateway.gateway.circuit_breaker import RetryConfig
from ai_gateway.gateway.credentials import KeyManager
from ai_gateway.gateway.dispatcher import RetryableDispatcher
from ai_gateway.gateway.errors import CacheIOError
from ai_gateway.gateway.registry import ProviderRegistry
from ai_gateway.gateway.types import (
    AIResponse,
    Attachment,
    AudioParams,
    Capability,
    CapabilityParams,
    ImageParams,
    RequestEnvelope,
    TextParams,
    VoiceInfo,
)
from ai_gateway.providers import DEFAULT_DESCRIPTORS, SpeechEngine, build_default_registry

logger = logging.getLogger(__name__)


class AIClient:
    """Capability calls over a configured dispatcher.

    Usage:
        client = AIClient.from_settings()
        reply = await client.text("Hello", RequestEnvelope(context={"task": "greeting"}))
        audio = await client.speak("Hello", voice="nova")
        await client.aclose()
    """

    def __init__(self, dispatcher: RetryableDispatcher):
        self.dispatcher = dispatcher

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        registry: ProviderRegistry | None = None,
        speech_engine: SpeechEngine | None = None,
        capability_preferences: dict[Capability, list[str]] | None = None,
    ) -> AIClient:
        """Wire registry, key manager, cache and dispatcher from settings."""
        if settings is None:
            from ai_gateway.core.config import settings as global_settings

            settings = global_settings

        registry = registry or build_default_registry(settings.http_timeout_seconds, speech_engine)
        providers = registry.build_all(DEFAULT_DESCRIPTORS)
        dispatcher = RetryableDispatcher(
            registry,
            providers,
            key_manager=KeyManager.from_settings(settings, providers),
            cache=ContentCache(CacheConfig.from_settings(settings)),
            retry_config=RetryConfig.from_settings(settings),
            capability_preferences=capability_preferences,
            default_language=settings.default_language,
            default_audio_format=settings.default_audio_format,
        )
        return cls(dispatcher)

    @property
    def cache(self) -> ContentCache | None:
        return self.dispatcher.cache

    # ------------------------------------------------------------------
    # Capability calls
    # ------------------------------------------------------------------

    async def generate(
        self,
        capability: Capability,
        message: str | None,
        envelope: RequestEnvelope | None = None,
        *,
        model: str | None = None,
        provider_id: str | None = None,
        attachment: Attachment | None = None,
        voice: str | None = None,
        params: CapabilityParams | None = None,
    ) -> AIResponse:
        envelope = envelope or RequestEnvelope()
        if message:
            envelope = envelope.with_user_message(message)
        return await self.dispatcher.invoke(
            capability,
            envelope,
            model=model,
            attachment=attachment,
            voice=voice,
            params=params,
            provider_id=provider_id,
        )

    async def text(
        self,
        message: str,
        envelope: RequestEnvelope | None = None,
        *,
        model: str | None = None,
        provider_id: str | None = None,
        params: TextParams | None = None,
    ) -> AIResponse:
        return await self.generate(
            Capability.TEXT_GENERATION, message, envelope, model=model, provider_id=provider_id, params=params
        )

    async def image(
        self,
        prompt: str,
        envelope: RequestEnvelope | None = None,
        params: ImageParams | None = None,
        *,
        model: str | None = None,
        provider_id: str | None = None,
    ) -> AIResponse:
        return await self.generate(
            Capability.IMAGE_GENERATION, prompt, envelope, model=model, provider_id=provider_id, params=params
        )

    async def vision(
        self,
        image_bytes: bytes,
        prompt: str,
        envelope: RequestEnvelope | None = None,
        mime_type: str = "image/jpeg",
        *,
        model: str | None = None,
        provider_id: str | None = None,
    ) -> AIResponse:
        return await self.generate(
            Capability.IMAGE_ANALYSIS,
            prompt,
            envelope,
            model=model,
            provider_id=provider_id,
            attachment=Attachment.from_bytes(image_bytes, mime_type),
        )

    async def speak(
        self,
        text: str,
        voice: str | None = None,
        params: AudioParams | None = None,
        *,
        model: str | None = None,
        provider_id: str | None = None,
    ) -> AIResponse:
        return await self.generate(
            Capability.AUDIO_GENERATION, text, model=model, provider_id=provider_id, voice=voice, params=params
        )

    async def listen(
        self,
        audio_bytes: bytes | None = None,
        mime_type: str = "audio/mpeg",
        language: str | None = None,
        *,
        model: str | None = None,
        provider_id: str | None = None,
    ) -> AIResponse:
        """Transcribe a recording, or the microphone when no bytes are given."""
        attachment = Attachment.from_bytes(audio_bytes, mime_type) if audio_bytes else None
        params = AudioParams(language=language) if language else None
        return await self.generate(
            Capability.AUDIO_TRANSCRIPTION,
            None,
            model=model,
            provider_id=provider_id,
            attachment=attachment,
            params=params,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def providers_for(self, capability: Capability) -> list[str]:
        return self.dispatcher.providers_for(capability)

    async def get_available_models(self, provider_id: str, capability: Capability | None = None) -> list[str]:
        """Models cache → provider API → static configuration."""
        provider = self.dispatcher.provider(provider_id)
        pid = provider.provider_id

        if capability is None and self.cache is not None and self.cache.enabled:
            cached = self.cache.get_cached_models(pid)
            if cached:
                return cached

        if capability is None:
            api_key = self.dispatcher.key_manager.pool(pid).acquire() if provider.descriptor.requires_credentials else None
            if api_key is not None or not provider.descriptor.requires_credentials:
                fetched = await provider.fetch_models_from_api(api_key)
                if fetched:
                    if self.cache is not None and self.cache.enabled:
                        try:
                            self.cache.save_models(pid, fetched)
                        except CacheIOError as e:
                            logger.warning("Could not cache model list for %s: %s", pid, e.message)
                    return fetched

        return provider.filter_models(provider.get_available_models(capability))

    def get_available_voices(self, provider_id: str) -> list[VoiceInfo]:
        return self.dispatcher.provider(provider_id).get_available_voices()

    async def health_check(self) -> dict[str, bool]:
        """Liveness per provider. Providers without a usable key report False."""
        results: dict[str, bool] = {}
        for pid, provider in self.dispatcher.providers.items():
            api_key = None
            if provider.descriptor.requires_credentials:
                api_key = self.dispatcher.key_manager.pool(pid).acquire()
                if api_key is None:
                    results[pid] = False
                    continue
            results[pid] = await provider.health_check(api_key)
        return results

    def system_stats(self) -> dict:
        return self.dispatcher.status()

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    async def _clear(self, capability: Capability) -> int:
        if self.cache is None:
            return 0
        return await self.cache.clear(capability)

    async def clear_audio_cache(self) -> int:
        return await self._clear(Capability.AUDIO_GENERATION)

    async def clear_image_cache(self) -> int:
        return await self._clear(Capability.IMAGE_GENERATION)

    async def clear_text_cache(self) -> int:
        return await self._clear(Capability.TEXT_GENERATION)

    def clear_models_cache(self) -> int:
        return self.cache.clear_models_cache() if self.cache is not None else 0

    async def aclose(self) -> None:
        if self.cache is not None:
            self.cache.dispose()
