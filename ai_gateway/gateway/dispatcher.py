"""Retryable Dispatcher — capability router over the built providers.

Per request:
  1. Select: ordered candidates (explicit provider, owner of an explicit
     model, configured preferences, then every other provider supporting
     the capability) and a model for each; a bad explicit model aborts
     with InvalidModelError
  2. Cache: for cacheable capabilities, look the candidate's key up
     before touching the network
  3. Invoke: one attempt per API key of the provider; 429/5xx and
     rejected keys rotate to the next key, with backoff in between
  4. Fail over: exhausted keys, unsupported input, 4xx and error responses
     move on to the next candidate; open circuits are skipped
  5. Normalize: extract embedded JSON, wrap payloads, write the cache

Selection is deterministic: the same configuration always yields the same
candidate order. Backoff jitter never affects which provider is chosen.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace

from ai_gateway.core.metrics import DISPATCH_DURATION, DISPATCH_REQUESTS, DISPATCH_RETRIES
from ai_gateway.gateway.cache import ContentCache, build_cache_key
from ai_gateway.gateway.circuit_breaker import CircuitBreaker, RetryConfig, calculate_backoff
from ai_gateway.gateway.credentials import ApiKeyPool, KeyManager
from ai_gateway.gateway.errors import (
    BackendRequestError,
    CacheIOError,
    CredentialRejectedError,
    CredentialsExhaustedError,
    GatewayError,
    InvalidModelError,
    MalformedResponseError,
    NoProviderAvailableError,
    TransientBackendError,
    UnknownProviderError,
    UnsupportedInputShapeError,
)
from ai_gateway.gateway.normalizer import extract_json
from ai_gateway.gateway.rate_limiter import RateLimiter
from ai_gateway.gateway.registry import ProviderRegistry
from ai_gateway.gateway.types import (
    CACHEABLE_CAPABILITIES,
    AIAudio,
    AIImage,
    AIResponse,
    Attachment,
    AudioParams,
    CacheKey,
    Capability,
    CapabilityParams,
    ProviderResponse,
    RequestEnvelope,
)
from ai_gateway.providers.base import BaseProvider

logger = logging.getLogger(__name__)

# Capabilities whose text may carry an embedded JSON payload
_STRUCTURED_CAPABILITIES = frozenset(
    {Capability.TEXT_GENERATION, Capability.IMAGE_GENERATION, Capability.IMAGE_ANALYSIS}
)

# Errors that end the current provider but not the request
_FAILOVER_ERRORS = (
    CredentialsExhaustedError,
    TransientBackendError,
    BackendRequestError,
    UnsupportedInputShapeError,
)


class RetryableDispatcher:
    """Routes one capability call to a provider, with retry and failover.

    Usage:
        registry = build_default_registry()
        providers = registry.build_all(DEFAULT_DESCRIPTORS)
        dispatcher = RetryableDispatcher(registry, providers, KeyManager({"openai": ["sk-1", "sk-2"]}))
        response = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        providers: dict[str, BaseProvider],
        key_manager: KeyManager | None = None,
        cache: ContentCache | None = None,
        retry_config: RetryConfig | None = None,
        capability_preferences: dict[Capability, list[str]] | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        default_language: str = "en",
        default_audio_format: str | None = None,
        rate_limit_timeout: float = 120.0,
    ):
        """
        Args:
            registry: Registry the providers were built from (model ownership)
            providers: Built providers by id; iteration order is the fallback order
            key_manager: API key pools per provider
            cache: Content cache; None disables caching
            retry_config: Backoff and circuit parameters
            capability_preferences: Per capability, provider ids to try first
            default_language: Language used in audio cache keys when none is given
            default_audio_format: Audio container asked for when the caller names none
        """
        self.registry = registry
        self.providers = providers
        self.key_manager = key_manager or KeyManager()
        self.cache = cache
        self.retry_config = retry_config or RetryConfig()
        self.capability_preferences = capability_preferences or {}
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.retry_config)
        self.default_language = default_language
        self.default_audio_format = default_audio_format
        self.rate_limit_timeout = rate_limit_timeout

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def provider(self, provider_id: str) -> BaseProvider:
        pid = provider_id.strip().lower()
        if pid not in self.providers:
            raise UnknownProviderError(pid)
        return self.providers[pid]

    def providers_for(self, capability: Capability) -> list[str]:
        return [pid for pid, p in self.providers.items() if p.supports_capability(capability)]

    def _candidate_order(self, capability: Capability, model: str | None, provider_id: str | None) -> list[str]:
        order: list[str] = []

        def add(pid: str | None) -> None:
            if pid and pid in self.providers and pid not in order:
                order.append(pid)

        if provider_id:
            add(self.provider(provider_id).provider_id)
        elif model:
            add(self.registry.resolve_owner(model))
        for pid in self.capability_preferences.get(capability, []):
            add(pid.strip().lower())
        for pid in self.providers:
            add(pid)

        supported = []
        for pid in order:
            if self.providers[pid].supports_capability(capability):
                supported.append(pid)
            elif pid == order[0] and provider_id:
                logger.warning(
                    "Provider %s does not support %s, falling back",
                    pid,
                    capability.value,
                    extra={"provider": pid, "capability": capability.value},
                )
        return supported

    def select(
        self, capability: Capability, model: str | None = None, provider_id: str | None = None
    ) -> list[tuple[BaseProvider, str]]:
        """Ordered (provider, model) pairs to try.

        Raises InvalidModelError when the first candidate does not recognize
        the requested model, or has no default for the capability.
        """
        candidates: list[tuple[BaseProvider, str]] = []
        for index, pid in enumerate(self._candidate_order(capability, model, provider_id)):
            provider = self.providers[pid]
            if model and provider.is_valid_model(model):
                candidates.append((provider, model))
                continue
            if index == 0 and model:
                raise InvalidModelError(model, pid)
            default = provider.get_default_model(capability)
            if default:
                candidates.append((provider, default))
            elif index == 0:
                raise InvalidModelError(None, pid)
        return candidates

    def _resolve_voice(self, provider: BaseProvider, voice: str | None) -> str | None:
        if voice and provider.is_valid_voice(voice):
            return voice
        default = provider.get_default_voice()
        if voice:
            logger.warning(
                "Voice %s not available on %s, using %s", voice, provider.provider_id, default or "engine default"
            )
        return default

    def _resolve_audio_params(self, provider: BaseProvider, params: CapabilityParams | None) -> AudioParams:
        """Pin the audio format to what this provider will really produce."""
        audio = params if isinstance(params, AudioParams) else AudioParams()
        audio_format = provider.output_audio_format(audio.audio_format or self.default_audio_format)
        if audio_format == audio.audio_format:
            return audio
        return replace(audio, audio_format=audio_format)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def invoke(
        self,
        capability: Capability,
        envelope: RequestEnvelope,
        model: str | None = None,
        attachment: Attachment | None = None,
        voice: str | None = None,
        params: CapabilityParams | None = None,
        provider_id: str | None = None,
    ) -> AIResponse:
        """Serve one capability call.

        Raises InvalidModelError, CredentialsExhaustedError (when the last
        provider tried ran out of keys; the first provider that spent keys is
        reported) or NoProviderAvailableError.
        """
        request_id = uuid.uuid4().hex[:8]
        candidates = self.select(capability, model, provider_id)
        if not candidates:
            raise NoProviderAvailableError(f"No provider supports {capability.value}")

        last_error: GatewayError | None = None
        exhausted: CredentialsExhaustedError | None = None
        for provider, selected_model in candidates:
            pid = provider.provider_id
            log_extra = {"provider": pid, "capability": capability.value, "model": selected_model, "request_id": request_id}

            if not self.circuit_breaker.allow_request(pid):
                logger.warning("Circuit open for %s, skipping", pid, extra=log_extra)
                last_error = TransientBackendError(f"Circuit breaker open for {pid}", pid)
                continue

            try:
                selected_voice = voice
                call_params = params
                if capability == Capability.AUDIO_GENERATION:
                    selected_voice = self._resolve_voice(provider, voice)
                    call_params = self._resolve_audio_params(provider, params)

                key: CacheKey | None = None
                if self.cache is not None and self.cache.enabled and capability in CACHEABLE_CAPABILITIES:
                    key = build_cache_key(
                        capability,
                        envelope,
                        pid,
                        selected_model,
                        voice=selected_voice,
                        params=call_params,
                        attachment=attachment,
                        default_language=self.default_language,
                    )
                    cached = await self._cache_get(key)
                    if cached is not None:
                        DISPATCH_REQUESTS.labels(provider=pid, capability=capability.value, status="cache_hit").inc()
                        logger.info("Served %s from cache", capability.value, extra=log_extra)
                        return cached

                logger.info("Dispatching %s to %s (%s)", capability.value, pid, selected_model, extra=log_extra)
                try:
                    response = await self._call_with_keys(
                        provider, capability, envelope, selected_model, attachment, selected_voice, call_params, request_id
                    )
                except MalformedResponseError as e:
                    DISPATCH_REQUESTS.labels(provider=pid, capability=capability.value, status=e.code).inc()
                    logger.warning("Unparseable body from %s, returning raw text", pid, extra=log_extra)
                    return AIResponse(text=e.raw_text, provider=pid, model=selected_model, capability=capability)
                except _FAILOVER_ERRORS as e:
                    DISPATCH_REQUESTS.labels(provider=pid, capability=capability.value, status=e.code).inc()
                    DISPATCH_RETRIES.labels(provider=pid, reason="failover").inc()
                    logger.warning("Provider %s failed (%s): %s", pid, e.code, e.message, extra=log_extra)
                    if isinstance(e, CredentialsExhaustedError) and e.attempts > 0 and exhausted is None:
                        exhausted = e
                    last_error = e
                    continue

                if not response.ok:
                    DISPATCH_REQUESTS.labels(provider=pid, capability=capability.value, status="error_response").inc()
                    logger.warning("Provider %s answered with an error: %s", pid, response.error, extra=log_extra)
                    last_error = BackendRequestError(response.error, pid)
                    continue

                result = self._to_ai_response(response, pid, selected_model, capability)
                if key is not None:
                    result = await self._cache_put(key, result)
                DISPATCH_REQUESTS.labels(provider=pid, capability=capability.value, status="success").inc()
                return result
            finally:
                self.circuit_breaker.release_probe(pid)

        if isinstance(last_error, CredentialsExhaustedError):
            # prefer the first provider that actually spent keys over one with none configured
            error = exhausted or last_error
            logger.error("All keys exhausted for %s", error.provider_id, extra={"request_id": request_id})
            raise error
        logger.error(
            "No provider could serve %s", capability.value, extra={"capability": capability.value, "request_id": request_id}
        )
        raise NoProviderAvailableError(
            f"No provider could serve {capability.value}: {last_error.message if last_error else 'no candidates'}"
        ) from last_error

    async def _call_with_keys(
        self,
        provider: BaseProvider,
        capability: Capability,
        envelope: RequestEnvelope,
        model: str,
        attachment: Attachment | None,
        voice: str | None,
        params: CapabilityParams | None,
        request_id: str,
    ) -> ProviderResponse:
        """Call one provider, rotating keys on transient failures.

        With credentials the attempt budget is the key pool size, one
        distinct key per attempt; running out raises CredentialsExhaustedError.
        Providers without credentials get ``retry_config.max_attempts``.
        """
        pid = provider.provider_id
        pool: ApiKeyPool | None = self.key_manager.pool(pid) if provider.descriptor.requires_credentials else None
        budget = pool.size if pool is not None else max(self.retry_config.max_attempts, 1)
        limit = provider.descriptor.rate_limit_for(capability)
        log_extra = {"provider": pid, "capability": capability.value, "request_id": request_id}

        tried: set[str] = set()
        last_error: GatewayError | None = None

        for attempt in range(1, budget + 1):
            api_key: str | None = None
            if pool is not None:
                api_key = pool.acquire(exclude=tried)
                if api_key is None:
                    break
                tried.add(api_key)

            if attempt > 1:
                delay = calculate_backoff(attempt - 1, self.retry_config)
                if delay > 0:
                    logger.info("Retrying %s (attempt %d/%d) in %.1fs", pid, attempt, budget, delay, extra=log_extra)
                    await asyncio.sleep(delay)

            if not await self.rate_limiter.acquire_blocking(pid, capability, limit, timeout=self.rate_limit_timeout):
                last_error = TransientBackendError(f"Rate limit wait for {pid} timed out", pid, status_code=429)
                DISPATCH_RETRIES.labels(provider=pid, reason="rate_limit_wait").inc()
                continue

            start = time.monotonic()
            try:
                response = await provider.send_message(
                    envelope, capability, model=model, attachment=attachment, voice=voice, params=params, api_key=api_key
                )
                if capability == Capability.IMAGE_GENERATION and response.ok and not response.image_base64:
                    raise TransientBackendError(f"{pid} returned no image data", pid, status_code=520)
            except TransientBackendError as e:
                last_error = e
                reason = "rate_limited" if e.is_rate_limit else "transient"
                DISPATCH_RETRIES.labels(provider=pid, reason=reason).inc()
                self.circuit_breaker.record_failure(pid)
                if pool is not None and api_key is not None:
                    if e.is_rate_limit:
                        pool.report_rate_limited(api_key)
                    else:
                        pool.report_transient(api_key, e.message)
                logger.warning("Attempt %d/%d on %s failed: %s", attempt, budget, pid, e.message, extra=log_extra)
                continue
            except CredentialRejectedError as e:
                last_error = e
                DISPATCH_RETRIES.labels(provider=pid, reason="rejected").inc()
                if pool is not None and api_key is not None:
                    pool.report_rejected(api_key, e.message)
                logger.warning("Key rejected by %s: %s", pid, e.message, extra=log_extra)
                continue
            except GatewayError:
                raise
            except Exception as e:
                # callers only ever see GatewayError kinds
                self.circuit_breaker.record_failure(pid)
                logger.exception("Unexpected error from %s", pid, extra=log_extra)
                raise BackendRequestError(f"{pid} failed unexpectedly: {e!r}", pid) from e
            finally:
                self.rate_limiter.release(pid, capability)
                DISPATCH_DURATION.labels(provider=pid, capability=capability.value).observe(time.monotonic() - start)

            self.circuit_breaker.record_success(pid)
            if pool is not None and api_key is not None:
                pool.report_success(api_key)
            return response

        if pool is not None:
            raise CredentialsExhaustedError(pid, attempts=len(tried)) from last_error
        raise last_error or TransientBackendError(f"{pid} made no attempt", pid)

    # ------------------------------------------------------------------
    # Normalization and cache
    # ------------------------------------------------------------------

    @staticmethod
    def _to_ai_response(response: ProviderResponse, provider_id: str, model: str, capability: Capability) -> AIResponse:
        result = AIResponse(
            text=response.text,
            provider=provider_id,
            model=model,
            capability=capability,
            seed=response.seed,
        )
        if capability in _STRUCTURED_CAPABILITIES and response.text:
            result.structured = extract_json(response.text).data
        if response.image_base64:
            prompt = response.prompt or None
            if prompt is None and result.structured:
                prompt = result.structured.get("description")
            result.image = AIImage(prompt=prompt, base64=response.image_base64)
        if response.audio_base64:
            result.audio = AIAudio(base64=response.audio_base64)
        return result

    async def _cache_get(self, key: CacheKey) -> AIResponse | None:
        try:
            return await self.cache.get(key)
        except CacheIOError as e:
            logger.warning("Cache read failed, going to the network: %s", e.message)
            return None

    async def _cache_put(self, key: CacheKey, response: AIResponse) -> AIResponse:
        try:
            return await self.cache.put(key, response)
        except CacheIOError as e:
            logger.warning("Cache write failed, returning uncached response: %s", e.message)
            return response

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        """Snapshot of providers, circuits, key pools, rate limits and cache."""
        return {
            "providers": {
                pid: {
                    "display_name": p.descriptor.display_name,
                    "capabilities": sorted(c.value for c in p.descriptor.capabilities),
                    "requires_credentials": p.descriptor.requires_credentials,
                }
                for pid, p in self.providers.items()
            },
            "registry": self.registry.stats(),
            "circuits": self.circuit_breaker.get_all_states(),
            "keys": self.key_manager.stats(),
            "rate_limits": self.rate_limiter.get_all_stats(),
            "cache": self.cache.stats() if self.cache is not None else None,
        }
