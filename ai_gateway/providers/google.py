"""Google Gemini provider (generateContent).

Text and image analysis only. Gemini has no system role in ``contents``,
so the envelope goes in as a user turn followed by a short model
acknowledgement, then the history with ``assistant`` mapped to ``model``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ai_gateway.gateway.types import (
    Attachment,
    Capability,
    CapabilityParams,
    ProviderDescriptor,
    ProviderResponse,
    RateLimit,
    RequestEnvelope,
    TextParams,
)
from ai_gateway.providers.base import BaseProvider

logger = logging.getLogger(__name__)


GOOGLE_DESCRIPTOR = ProviderDescriptor(
    provider_id="google",
    display_name="Google Gemini",
    capabilities=frozenset({Capability.TEXT_GENERATION, Capability.IMAGE_ANALYSIS}),
    default_models={
        Capability.TEXT_GENERATION: "gemini-2.5-flash",
        Capability.IMAGE_ANALYSIS: "gemini-2.5-flash",
    },
    available_models={
        Capability.TEXT_GENERATION: ("gemini-2.5-flash", "gemini-2.5-pro", "gemini-2.0-flash"),
        Capability.IMAGE_ANALYSIS: ("gemini-2.5-flash", "gemini-2.5-pro"),
    },
    model_prefixes=("gemini-", "gemma-"),
    rate_limits={Capability.TEXT_GENERATION: RateLimit(requests_per_minute=60)},
    required_credential_keys=("GOOGLE_API_KEYS",),
    auth_header="x-goog-api-key",
    auth_scheme="",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    endpoints={
        "chat": "/models/{model}:generateContent",
        "models": "/models",
    },
    max_output_tokens=8192,
)

_ACKNOWLEDGEMENT = "I understand the system instructions and will follow them accordingly."


def _model_priority(model: str) -> int:
    m = model.lower()
    if "experimental" in m:
        return 1
    if "flash" in m:
        return 2
    if "pro" in m:
        return 3
    if "nano" in m:
        return 4
    return 99


class GoogleProvider(BaseProvider):
    """Google Gemini provider."""

    def compare_models(self, a: str, b: str) -> int:
        pa, pb = _model_priority(a), _model_priority(b)
        if pa != pb:
            return pa - pb
        return (a < b) - (a > b)

    def _parse_model_list(self, data: dict[str, Any]) -> list[str]:
        return [
            item["name"].removeprefix("models/")
            for item in data.get("models", [])
            if isinstance(item, dict) and item.get("name")
        ]

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
        if capability not in (Capability.TEXT_GENERATION, Capability.IMAGE_ANALYSIS):
            return self.unsupported(capability)

        selected = model or self.get_default_model(capability)
        text_params = params if isinstance(params, TextParams) else TextParams()
        payload = {
            "contents": self._build_contents(envelope, attachment),
            "generationConfig": {
                "maxOutputTokens": text_params.max_output_tokens or self.descriptor.max_output_tokens,
                "temperature": text_params.temperature,
            },
        }
        data = await self._post_json(self.endpoint_url("chat", model=selected), payload, api_key)
        return self._parse_response(data)

    def _build_contents(self, envelope: RequestEnvelope, attachment: Attachment | None) -> list[dict[str, Any]]:
        history, system_envelope = self.process_history(envelope)
        contents: list[dict[str, Any]] = [
            {"role": "user", "parts": [{"text": json.dumps(system_envelope.to_dict(), ensure_ascii=False)}]},
            {"role": "model", "parts": [{"text": _ACKNOWLEDGEMENT}]},
        ]
        for turn in history:
            role = "model" if turn.get("role") == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": turn.get("content", "")}]})

        if attachment is not None and attachment.is_image:
            inline = {"inline_data": {"mime_type": attachment.mime_type, "data": attachment.base64_data}}
            if history:
                contents[-1]["parts"].append(inline)
            else:
                contents.append({"role": "user", "parts": [inline]})
        return contents

    @staticmethod
    def _parse_response(data: dict[str, Any]) -> ProviderResponse:
        candidates = data.get("candidates") or []
        if candidates and isinstance(candidates[0], dict):
            candidate = candidates[0]
            if candidate.get("finishReason") == "SAFETY":
                return ProviderResponse(text="", error="Response blocked by Gemini safety filter")
            content = candidate.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            for part in parts or []:
                if isinstance(part, dict) and "text" in part:
                    return ProviderResponse(text=part["text"])

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            return ProviderResponse(text="", error=f"Prompt blocked by Gemini: {block_reason}")
        return ProviderResponse(text="", error="No response content found")
