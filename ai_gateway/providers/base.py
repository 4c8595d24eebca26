"""Provider contract shared by every backend.

Each provider translates a RequestEnvelope into its vendor's HTTP protocol
for one capability, sends it, and returns a ProviderResponse. The
capability switch lives inside ``send_message`` of each provider so the
dispatcher stays backend-agnostic.

HTTP failures are classified here, once, for all providers:
  - 429 / 5xx / timeouts / connection errors → TransientBackendError
  - 401 / 402 / 403 → CredentialRejectedError
  - any other 4xx → BackendRequestError
  - a 2xx body that is not JSON → MalformedResponseError
"""

from __future__ import annotations

import functools
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from ai_gateway.gateway.circuit_breaker import RETRYABLE_STATUS_CODES
from ai_gateway.gateway.errors import (
    BackendRequestError,
    CredentialRejectedError,
    GatewayError,
    MalformedResponseError,
    TransientBackendError,
)
from ai_gateway.gateway.types import (
    Attachment,
    Capability,
    CapabilityParams,
    ProviderDescriptor,
    ProviderResponse,
    RequestEnvelope,
    VoiceGender,
    VoiceInfo,
)

logger = logging.getLogger(__name__)

_CREDENTIAL_STATUS_CODES = frozenset({401, 402, 403})


class BaseProvider(ABC):
    """Base class for all providers."""

    def __init__(self, descriptor: ProviderDescriptor, timeout: float = 60.0):
        self.descriptor = descriptor
        self.timeout = timeout

    @property
    def provider_id(self) -> str:
        return self.descriptor.provider_id

    # ------------------------------------------------------------------
    # Static queries
    # ------------------------------------------------------------------

    def supports_capability(self, capability: Capability) -> bool:
        return self.descriptor.supports(capability)

    def get_default_model(self, capability: Capability) -> str | None:
        return self.descriptor.default_models.get(capability)

    def get_available_models(self, capability: Capability | None = None) -> list[str]:
        """Configured models, for one capability or all of them (deduplicated)."""
        if capability is not None:
            return list(self.descriptor.available_models.get(capability, ()))
        seen: dict[str, None] = {}
        for models in self.descriptor.available_models.values():
            seen.update(dict.fromkeys(models))
        for model in self.descriptor.default_models.values():
            seen.setdefault(model, None)
        return list(seen)

    def is_valid_model(self, model: str | None) -> bool:
        """Membership in the configured lists, or a matching model prefix."""
        if not model:
            return False
        name = model.strip().lower()
        if name in (m.lower() for m in self.get_available_models()):
            return True
        return any(name.startswith(p.lower()) for p in self.descriptor.model_prefixes)

    @abstractmethod
    def compare_models(self, a: str, b: str) -> int:
        """Provider-specific ranking; negative means ``a`` is preferred."""
        ...

    def filter_models(self, models: list[str]) -> list[str]:
        """Keep models this provider can serve, best first."""
        valid = [m for m in models if self.is_valid_model(m)]
        return sorted(valid, key=functools.cmp_to_key(self.compare_models))

    # ------------------------------------------------------------------
    # Envelope handling
    # ------------------------------------------------------------------

    def process_history(self, envelope: RequestEnvelope) -> tuple[list[dict[str, str]], RequestEnvelope]:
        """Split the envelope into its turns and a copy that no longer holds them.

        The copy is what gets serialized as the system message, so history
        only reaches the wire through the provider's own turn format.
        """
        history = [dict(turn) for turn in (envelope.history or [])]
        return history, envelope.without_history()

    @abstractmethod
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
        """Serve one capability call."""
        ...

    def unsupported(self, capability: Capability, detail: str = "") -> ProviderResponse:
        message = f"Capability {capability.value} not supported by {self.provider_id} provider"
        if detail:
            message = f"{message}: {detail}"
        return ProviderResponse(text=message, error=message)

    # ------------------------------------------------------------------
    # Voices (providers without audio keep these defaults)
    # ------------------------------------------------------------------

    def get_available_voices(self) -> list[VoiceInfo]:
        return []

    def is_valid_voice(self, name: str | None) -> bool:
        if not name:
            return False
        return name.lower() in (v.id.lower() for v in self.get_available_voices())

    def get_voice_gender(self, name: str | None) -> VoiceGender:
        return VoiceGender.NEUTRAL

    def get_default_voice(self) -> str | None:
        return self.descriptor.default_voice

    def output_audio_format(self, requested: str | None = None) -> str:
        """Container the synthesized audio will actually come back in."""
        return requested or self.descriptor.defaults.get("audio_format", "mp3")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def endpoint_url(self, key: str, **fmt: str) -> str:
        endpoint = self.descriptor.endpoints.get(key)
        if not endpoint:
            raise BackendRequestError(f"Endpoint {key!r} not configured for {self.provider_id}", self.provider_id)
        if fmt:
            endpoint = endpoint.format(**fmt)
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.descriptor.base_url.rstrip('/')}{endpoint}"

    def build_auth_headers(self, api_key: str | None) -> dict[str, str]:
        return self.descriptor.build_auth_headers(api_key)

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if 200 <= status < 300:
            return
        body = resp.text[:300]
        message = f"{self.provider_id} returned HTTP {status}: {body}"
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            raise TransientBackendError(message, self.provider_id, status_code=status)
        if status in _CREDENTIAL_STATUS_CODES:
            raise CredentialRejectedError(message, self.provider_id, status_code=status)
        raise BackendRequestError(message, self.provider_id, status_code=status)

    async def _request(
        self,
        method: str,
        url: str,
        api_key: str | None,
        *,
        json_body: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = self.build_auth_headers(api_key)
        if files is not None:
            # httpx sets the multipart boundary itself
            headers.pop("Content-Type", None)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if method == "GET":
                    resp = await client.get(url, headers=headers)
                else:
                    resp = await client.post(url, headers=headers, json=json_body, files=files, data=data)
        except httpx.TimeoutException as e:
            raise TransientBackendError(
                f"{self.provider_id} timeout after {self.timeout}s", self.provider_id, status_code=408
            ) from e
        except httpx.TransportError as e:
            raise TransientBackendError(f"{self.provider_id} transport error: {e}", self.provider_id) from e

        self._raise_for_status(resp)
        return resp

    def _decode(self, resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.provider_id} returned a non-JSON body", raw_text=resp.text, provider_id=self.provider_id
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"{self.provider_id} returned JSON that is not an object",
                raw_text=resp.text,
                provider_id=self.provider_id,
            )
        return data

    async def _post_json(self, url: str, payload: dict[str, Any], api_key: str | None) -> dict[str, Any]:
        resp = await self._request("POST", url, api_key, json_body=payload)
        return self._decode(resp)

    async def _post_multipart(
        self, url: str, files: dict[str, Any], data: dict[str, Any], api_key: str | None
    ) -> dict[str, Any]:
        resp = await self._request("POST", url, api_key, files=files, data=data)
        return self._decode(resp)

    async def _get_json(self, url: str, api_key: str | None) -> dict[str, Any]:
        resp = await self._request("GET", url, api_key)
        return self._decode(resp)

    # ------------------------------------------------------------------
    # Remote model list
    # ------------------------------------------------------------------

    def _parse_model_list(self, data: dict[str, Any]) -> list[str]:
        """OpenAI-style ``{"data": [{"id": ...}]}``; override for other shapes."""
        return [item["id"] for item in data.get("data", []) if isinstance(item, dict) and item.get("id")]

    async def fetch_models_from_api(self, api_key: str | None = None) -> list[str] | None:
        """Remote model list, filtered and ranked. None on any failure."""
        if "models" not in self.descriptor.endpoints:
            return None
        try:
            data = await self._get_json(self.endpoint_url("models"), api_key)
        except GatewayError as e:
            logger.warning("Could not fetch models for %s: %s", self.provider_id, e.message)
            return None
        models = self.filter_models(self._parse_model_list(data))
        logger.info("Fetched %d model(s) from %s", len(models), self.provider_id)
        return models

    async def health_check(self, api_key: str | None = None) -> bool:
        """Cheap liveness probe through the models endpoint."""
        if "models" not in self.descriptor.endpoints:
            return True
        try:
            await self._request("GET", self.endpoint_url("models"), api_key)
        except GatewayError:
            return False
        return True
