"""xAI Grok provider — OpenAI-compatible chat completions."""

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


XAI_DESCRIPTOR = ProviderDescriptor(
    provider_id="xai",
    display_name="xAI Grok",
    capabilities=frozenset({Capability.TEXT_GENERATION, Capability.IMAGE_ANALYSIS}),
    default_models={
        Capability.TEXT_GENERATION: "grok-4",
        Capability.IMAGE_ANALYSIS: "grok-4",
    },
    available_models={
        Capability.TEXT_GENERATION: ("grok-4", "grok-3", "grok-3-mini"),
        Capability.IMAGE_ANALYSIS: ("grok-4", "grok-2-vision"),
    },
    model_prefixes=("grok-",),
    rate_limits={Capability.TEXT_GENERATION: RateLimit(requests_per_minute=60)},
    required_credential_keys=("XAI_API_KEYS",),
    base_url="https://api.x.ai/v1",
    endpoints={
        "chat": "/chat/completions",
        "models": "/models",
    },
    max_output_tokens=4096,
)


def _model_priority(model: str) -> int:
    m = model.lower()
    if "beta" in m:
        return 1
    if "latest" in m:
        return 2
    if "preview" in m:
        return 3
    return 99


class XAIProvider(BaseProvider):
    """xAI chat completions provider. Text and image analysis only."""

    def compare_models(self, a: str, b: str) -> int:
        pa, pb = _model_priority(a), _model_priority(b)
        if pa != pb:
            return pa - pb
        return (a < b) - (a > b)

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

        text_params = params if isinstance(params, TextParams) else TextParams()
        payload = {
            "model": model or self.get_default_model(capability),
            "messages": self._build_messages(envelope, attachment),
            "max_tokens": text_params.max_output_tokens or self.descriptor.max_output_tokens,
            "temperature": text_params.temperature,
        }
        data = await self._post_json(self.endpoint_url("chat"), payload, api_key)

        choices = data.get("choices") or []
        first = choices[0] if choices and isinstance(choices[0], dict) else {}
        message = first.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return ProviderResponse(text=content)
        return ProviderResponse(text="", error="No response content found")

    def _build_messages(self, envelope: RequestEnvelope, attachment: Attachment | None) -> list[dict[str, Any]]:
        history, system_envelope = self.process_history(envelope)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": json.dumps(system_envelope.to_dict(), ensure_ascii=False)}
        ]
        for turn in history:
            messages.append({"role": turn.get("role") or "user", "content": turn.get("content", "")})

        if attachment is not None and attachment.is_image:
            image_part = {
                "type": "image_url",
                "image_url": {"url": f"data:{attachment.mime_type};base64,{attachment.base64_data}"},
            }
            last = messages[-1]
            if len(messages) > 1 and last["role"] == "user":
                last["content"] = [{"type": "text", "text": last["content"]}, image_part]
            else:
                messages.append({"role": "user", "content": [image_part]})
        return messages
