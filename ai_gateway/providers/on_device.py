"""On-device speech provider.

Wraps a local speech engine (system TTS, microphone recognizer) behind the
provider contract. The engine is injected; without one the provider still
answers, with error responses the dispatcher fails over from.

  - audio generation: ``engine.synthesize`` → audio bytes
  - audio transcription: ``engine.listen`` (live microphone only); an
    attached recording raises UnsupportedInputShapeError

Engine failures surface as TransientBackendError, so the dispatcher retries
and then fails over like any other backend outage.
"""

from __future__ import annotations

import base64
import logging
from typing import Protocol

from ai_gateway.gateway.errors import TransientBackendError, UnsupportedInputShapeError
from ai_gateway.gateway.types import (
    Attachment,
    AudioParams,
    Capability,
    CapabilityParams,
    ProviderDescriptor,
    ProviderResponse,
    RateLimit,
    RequestEnvelope,
    VoiceGender,
    VoiceInfo,
)
from ai_gateway.providers.base import BaseProvider

logger = logging.getLogger(__name__)


class SpeechEngine(Protocol):
    """What the on-device provider needs from the platform speech stack."""

    async def synthesize(self, text: str, voice: str | None, language: str | None, speed: float) -> bytes: ...

    async def listen(self, language: str | None) -> str: ...

    def voices(self) -> list[dict[str, str]]:
        """Installed voices as ``{"name": ..., "locale": ...}`` mappings."""
        ...


ON_DEVICE_DESCRIPTOR = ProviderDescriptor(
    provider_id="on_device",
    display_name="On-device speech",
    capabilities=frozenset({Capability.AUDIO_GENERATION, Capability.AUDIO_TRANSCRIPTION}),
    default_models={
        Capability.AUDIO_GENERATION: "on_device_tts",
        Capability.AUDIO_TRANSCRIPTION: "on_device_stt",
    },
    available_models={
        Capability.AUDIO_GENERATION: ("on_device_tts",),
        Capability.AUDIO_TRANSCRIPTION: ("on_device_stt",),
    },
    model_prefixes=("on_device",),
    rate_limits={
        Capability.AUDIO_GENERATION: RateLimit(requests_per_minute=1000),
        Capability.AUDIO_TRANSCRIPTION: RateLimit(requests_per_minute=1000),
    },
    defaults={"audio_format": "wav"},
)


def _guess_gender(name: str | None) -> VoiceGender:
    if not name:
        return VoiceGender.NEUTRAL
    lowered = name.lower()
    # "female" contains "male", so it goes first
    if "female" in lowered or "woman" in lowered:
        return VoiceGender.FEMALE
    if "male" in lowered or "man" in lowered:
        return VoiceGender.MALE
    return VoiceGender.NEUTRAL


class OnDeviceProvider(BaseProvider):
    """Local TTS/STT through an injected SpeechEngine.

    Usage:
        provider = OnDeviceProvider(ON_DEVICE_DESCRIPTOR, engine=my_engine)
        registry.register("on_device", lambda d: OnDeviceProvider(d, engine=my_engine))
    """

    def __init__(self, descriptor: ProviderDescriptor, timeout: float = 60.0, engine: SpeechEngine | None = None):
        super().__init__(descriptor, timeout)
        self.engine = engine

    def compare_models(self, a: str, b: str) -> int:
        return (a > b) - (a < b)

    # ------------------------------------------------------------------
    # Voices
    # ------------------------------------------------------------------

    def get_available_voices(self) -> list[VoiceInfo]:
        if self.engine is None:
            return []
        return [
            VoiceInfo(
                id=v.get("name", "unknown"),
                name=v.get("name", "unknown"),
                language=v.get("locale", ""),
                gender=_guess_gender(v.get("name")),
            )
            for v in self.engine.voices()
        ]

    def is_valid_voice(self, name: str | None) -> bool:
        # the platform resolves unknown names to its own default
        return bool(name) and self.engine is not None

    def get_voice_gender(self, name: str | None) -> VoiceGender:
        return _guess_gender(name)

    def output_audio_format(self, requested: str | None = None) -> str:
        # the platform engine renders one container whatever the caller asks for
        return self.descriptor.defaults.get("audio_format", "wav")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def send_message(
        self,
        envelope: RequestEnvelope,
        capability: Capability,
        model: str | None = None,
        attachment: Attachment | None = None,
        voice: str | None = None,
        params: CapabilityParams | None = None,
        api_key: str | None = None,
    ) -> ProviderResponse:
        if capability == Capability.AUDIO_GENERATION:
            return await self._synthesize(envelope, voice, params)
        if capability == Capability.AUDIO_TRANSCRIPTION:
            return await self._transcribe(attachment, params)
        return self.unsupported(capability)

    async def _synthesize(
        self, envelope: RequestEnvelope, voice: str | None, params: CapabilityParams | None
    ) -> ProviderResponse:
        if self.engine is None:
            return self.unsupported(Capability.AUDIO_GENERATION, "no speech engine available")
        text = envelope.last_user_message
        if not text:
            return ProviderResponse(text="No text provided for TTS", error="No text provided for TTS")

        audio = params if isinstance(params, AudioParams) else AudioParams()
        try:
            data = await self.engine.synthesize(text, voice, audio.language, audio.speed)
        except Exception as e:
            raise TransientBackendError(f"Speech engine failed to synthesize: {e}", self.provider_id) from e
        if not data:
            return ProviderResponse(text="", error="Speech engine produced no audio")
        logger.debug("On-device engine produced %d audio bytes", len(data))
        return ProviderResponse(
            text="Audio generated successfully",
            audio_base64=base64.b64encode(data).decode("ascii"),
        )

    async def _transcribe(self, attachment: Attachment | None, params: CapabilityParams | None) -> ProviderResponse:
        if attachment is not None:
            raise UnsupportedInputShapeError(
                "On-device recognition listens to the microphone and cannot transcribe a recording",
                self.provider_id,
            )
        if self.engine is None:
            return self.unsupported(Capability.AUDIO_TRANSCRIPTION, "no speech engine available")

        language = params.language if isinstance(params, AudioParams) else None
        try:
            text = await self.engine.listen(language)
        except Exception as e:
            raise TransientBackendError(f"Speech engine failed to listen: {e}", self.provider_id) from e
        return ProviderResponse(text=text or "")
