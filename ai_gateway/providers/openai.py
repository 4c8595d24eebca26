"""OpenAI provider — Responses API, audio speech and transcription endpoints.

Capabilities:
  - text / image analysis: ``input`` array with a system message, the
    history turns, and an ``input_image`` part on the last user turn
  - image generation: same input plus the ``image_generation`` tool
  - audio generation: ``/audio/speech`` (binary body)
  - audio transcription: multipart upload to ``/audio/transcriptions``
  - realtime: returns a configured-session message
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from ai_gateway.gateway.types import (
    AudioParams,
    Attachment,
    Capability,
    CapabilityParams,
    ImageParams,
    ProviderDescriptor,
    ProviderResponse,
    RateLimit,
    RequestEnvelope,
    TextParams,
    VoiceGender,
    VoiceInfo,
)
from ai_gateway.providers.base import BaseProvider

logger = logging.getLogger(__name__)


OPENAI_DESCRIPTOR = ProviderDescriptor(
    provider_id="openai",
    display_name="OpenAI",
    capabilities=frozenset(
        {
            Capability.TEXT_GENERATION,
            Capability.IMAGE_GENERATION,
            Capability.IMAGE_ANALYSIS,
            Capability.AUDIO_GENERATION,
            Capability.AUDIO_TRANSCRIPTION,
            Capability.REALTIME_CONVERSATION,
        }
    ),
    default_models={
        Capability.TEXT_GENERATION: "gpt-4.1-mini",
        Capability.IMAGE_GENERATION: "gpt-4.1-mini",
        Capability.IMAGE_ANALYSIS: "gpt-4.1-mini",
        Capability.AUDIO_GENERATION: "gpt-4o-mini-tts",
        Capability.AUDIO_TRANSCRIPTION: "gpt-4o-mini-transcribe",
        Capability.REALTIME_CONVERSATION: "gpt-realtime",
    },
    available_models={
        Capability.TEXT_GENERATION: ("gpt-5", "gpt-5-mini", "gpt-4.1", "gpt-4.1-mini", "gpt-4o", "gpt-4o-mini"),
        Capability.IMAGE_GENERATION: ("gpt-4.1", "gpt-4.1-mini", "gpt-5"),
        Capability.IMAGE_ANALYSIS: ("gpt-4.1", "gpt-4.1-mini", "gpt-4o"),
        Capability.AUDIO_GENERATION: ("gpt-4o-mini-tts", "tts-1", "tts-1-hd"),
        Capability.AUDIO_TRANSCRIPTION: ("gpt-4o-mini-transcribe", "gpt-4o-transcribe", "whisper-1"),
        Capability.REALTIME_CONVERSATION: ("gpt-realtime", "gpt-4o-realtime-preview"),
    },
    model_prefixes=("gpt-", "o1", "o3", "o4", "tts-", "whisper", "dall-e"),
    voices=("alloy", "ash", "ballad", "cedar", "coral", "echo", "fable", "marin", "nova", "onyx", "sage", "shimmer", "verse"),
    default_voice="marin",
    rate_limits={
        Capability.TEXT_GENERATION: RateLimit(requests_per_minute=500),
        Capability.IMAGE_GENERATION: RateLimit(requests_per_minute=50, max_concurrent=5),
        Capability.AUDIO_GENERATION: RateLimit(requests_per_minute=100),
    },
    required_credential_keys=("OPENAI_API_KEYS",),
    base_url="https://api.openai.com/v1",
    endpoints={
        "chat": "/responses",
        "models": "/models",
        "audio_speech": "/audio/speech",
        "audio_transcriptions": "/audio/transcriptions",
    },
    max_output_tokens=4096,
)

_MALE_VOICES = frozenset({"ash", "echo", "onyx", "verse", "cedar"})


def _model_priority(model: str) -> int:
    m = model.lower()
    if m == "gpt-5":
        return 1
    if m.startswith("gpt-5"):
        return 2
    if m == "gpt-4.1":
        return 3
    if m.startswith("gpt-4.1"):
        return 4
    if m.startswith("gpt-4o"):
        return 5
    if m.startswith("gpt-4"):
        return 6
    if m.startswith("gpt-3.5"):
        return 7
    if "realtime" in m:
        return 8
    return 99


class OpenAIProvider(BaseProvider):
    """OpenAI Responses API provider."""

    def compare_models(self, a: str, b: str) -> int:
        pa, pb = _model_priority(a), _model_priority(b)
        if pa != pb:
            return pa - pb
        # newer snapshots sort later alphabetically, so reverse order puts them first
        return (a < b) - (a > b)

    # ------------------------------------------------------------------
    # Voices
    # ------------------------------------------------------------------

    def get_available_voices(self) -> list[VoiceInfo]:
        return [
            VoiceInfo(
                id=name,
                name=name,
                language="en",
                gender=VoiceGender.MALE if name in _MALE_VOICES else VoiceGender.FEMALE,
            )
            for name in self.descriptor.voices
        ]

    def get_voice_gender(self, name: str | None) -> VoiceGender:
        for voice in self.get_available_voices():
            if name and voice.id == name.lower():
                return voice.gender
        return VoiceGender.NEUTRAL

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
        selected = model or self.get_default_model(capability)

        if capability in (Capability.TEXT_GENERATION, Capability.IMAGE_ANALYSIS):
            return await self._send_text(envelope, selected, attachment, params, api_key)
        if capability == Capability.IMAGE_GENERATION:
            return await self._send_image_generation(envelope, selected, attachment, params, api_key)
        if capability == Capability.AUDIO_GENERATION:
            return await self._send_speech(envelope, selected, voice, params, api_key)
        if capability == Capability.AUDIO_TRANSCRIPTION:
            return await self._send_transcription(envelope, selected, attachment, params, api_key)
        if capability == Capability.REALTIME_CONVERSATION:
            history, _ = self.process_history(envelope)
            return ProviderResponse(
                text=(
                    f"Realtime conversation session configured. Provider: {self.provider_id}, "
                    f"Model: {selected}, History: {len(history)} messages"
                )
            )
        return self.unsupported(capability)

    def _build_input(
        self,
        envelope: RequestEnvelope,
        attachment: Attachment | None,
    ) -> list[dict[str, Any]]:
        history, system_envelope = self.process_history(envelope)
        items: list[dict[str, Any]] = [
            {
                "role": "system",
                "content": [{"type": "input_text", "text": json.dumps(system_envelope.to_dict(), ensure_ascii=False)}],
            }
        ]
        for turn in history:
            role = "assistant" if turn.get("role") == "assistant" else "user"
            text_type = "output_text" if role == "assistant" else "input_text"
            items.append({"role": role, "content": [{"type": text_type, "text": turn.get("content", "")}]})

        if attachment is not None and attachment.is_image:
            image_part = {
                "type": "input_image",
                "image_url": f"data:{attachment.mime_type};base64,{attachment.base64_data}",
            }
            if len(items) > 1 and items[-1]["role"] == "user":
                items[-1]["content"].append(image_part)
            else:
                items.append({"role": "user", "content": [image_part]})
        return items

    async def _send_text(
        self,
        envelope: RequestEnvelope,
        model: str,
        attachment: Attachment | None,
        params: CapabilityParams | None,
        api_key: str | None,
    ) -> ProviderResponse:
        text_params = params if isinstance(params, TextParams) else TextParams()
        payload: dict[str, Any] = {
            "model": model,
            "input": self._build_input(envelope, attachment),
            "max_output_tokens": text_params.max_output_tokens or self.descriptor.max_output_tokens,
        }
        # reasoning models reject sampling parameters
        if not model.startswith("gpt-5"):
            payload["temperature"] = text_params.temperature

        data = await self._post_json(self.endpoint_url("chat"), payload, api_key)
        return self._parse_response(data)

    async def _send_image_generation(
        self,
        envelope: RequestEnvelope,
        model: str,
        attachment: Attachment | None,
        params: CapabilityParams | None,
        api_key: str | None,
    ) -> ProviderResponse:
        if not envelope.last_user_message:
            return ProviderResponse(
                text="No prompt provided for image generation", error="No prompt provided for image generation"
            )

        image_params = params if isinstance(params, ImageParams) else ImageParams()
        items = self._build_input(envelope, attachment)
        if image_params.seed:
            # continue from a previous generation instead of starting over
            items.append({"type": "image_generation_call", "id": image_params.seed})

        payload = {
            "model": model,
            "input": items,
            "tools": [
                {
                    "type": "image_generation",
                    "moderation": "low",
                    "input_fidelity": image_params.fidelity,
                    "background": image_params.background,
                    "quality": image_params.quality,
                    "output_format": image_params.output_format,
                    "size": image_params.size,
                }
            ],
        }
        data = await self._post_json(self.endpoint_url("chat"), payload, api_key)
        return self._parse_response(data)

    @staticmethod
    def _parse_response(data: dict[str, Any]) -> ProviderResponse:
        if isinstance(data.get("output_text"), str):
            return ProviderResponse(text=data["output_text"])

        text = ""
        image_b64 = ""
        image_id = ""
        revised_prompt = ""
        output = data.get("output") or data.get("data") or []
        for item in output if isinstance(output, list) else []:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "image_generation_call":
                image_b64 = image_b64 or item.get("result") or ""
                image_id = image_id or item.get("id") or ""
                revised_prompt = revised_prompt or item.get("revised_prompt") or ""
            elif item.get("type") == "message":
                for part in item.get("content") or []:
                    if not text.strip() and isinstance(part, dict) and part.get("type") == "output_text":
                        text = part.get("text") or ""

        return ProviderResponse(
            text=text if text.strip() else "",
            seed=image_id,
            prompt=revised_prompt.strip(),
            image_base64=image_b64 or None,
        )

    async def _send_speech(
        self,
        envelope: RequestEnvelope,
        model: str,
        voice: str | None,
        params: CapabilityParams | None,
        api_key: str | None,
    ) -> ProviderResponse:
        text = envelope.last_user_message
        if not text:
            return ProviderResponse(text="No text provided for TTS", error="No text provided for TTS")

        audio = params if isinstance(params, AudioParams) else AudioParams()
        audio_format = self.output_audio_format(audio.audio_format)
        payload: dict[str, Any] = {
            "model": model,
            "input": text,
            "voice": voice or self.get_default_voice(),
            "speed": audio.speed,
            # the speech endpoint has no m4a output; aac is the same codec
            "response_format": "aac" if audio_format == "m4a" else audio_format,
        }
        if audio.instructions:
            payload["instructions"] = audio.instructions
        if audio.language:
            payload["language"] = audio.language

        resp = await self._request("POST", self.endpoint_url("audio_speech"), api_key, json_body=payload)
        logger.debug("Received %d audio bytes from %s", len(resp.content), self.provider_id)
        return ProviderResponse(
            text="Audio generated successfully",
            audio_base64=base64.b64encode(resp.content).decode("ascii"),
        )

    async def _send_transcription(
        self,
        envelope: RequestEnvelope,
        model: str,
        attachment: Attachment | None,
        params: CapabilityParams | None,
        api_key: str | None,
    ) -> ProviderResponse:
        if attachment is None or not attachment.is_audio:
            return ProviderResponse(
                text="No audio provided for transcription", error="No audio provided for transcription"
            )

        _, system_envelope = self.process_history(envelope)
        fields: dict[str, Any] = {"model": model}
        if system_envelope.context:
            fields["prompt"] = json.dumps(system_envelope.context, ensure_ascii=False)
        if isinstance(params, AudioParams) and params.language:
            fields["language"] = params.language

        files = {"file": (f"audio.{attachment.extension}", attachment.data, attachment.mime_type)}
        data = await self._post_multipart(self.endpoint_url("audio_transcriptions"), files, fields, api_key)
        return ProviderResponse(text=data.get("text", "") or "")
