"""Tests for RetryableDispatcher: key rotation, failover, caching, selection."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock, patch

import pytest

from ai_gateway.gateway.circuit_breaker import CircuitBreaker, RetryConfig
from ai_gateway.gateway.credentials import KeyStatus
from ai_gateway.gateway.errors import (
    BackendRequestError,
    CacheIOError,
    CredentialRejectedError,
    CredentialsExhaustedError,
    InvalidModelError,
    MalformedResponseError,
    NoProviderAvailableError,
    TransientBackendError,
    UnknownProviderError,
    UnsupportedInputShapeError,
)
from ai_gateway.gateway.types import (
    Attachment,
    AudioParams,
    Capability,
    ProviderResponse,
    RequestEnvelope,
)
from ai_gateway.providers.on_device import ON_DEVICE_DESCRIPTOR, OnDeviceProvider

AUDIO = (Capability.AUDIO_GENERATION,)
_AUDIO_B64 = base64.b64encode(b"ID3audio").decode("ascii")
_IMAGE_B64 = base64.b64encode(b"\x89PNGimage").decode("ascii")


class StubSpeechEngine:
    """Platform engine double: returns WAV bytes or raises the given error."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    async def synthesize(self, text, voice, language, speed):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return b"RIFFwav"

    async def listen(self, language):
        return "heard"

    def voices(self):
        return []


# ==========================================================================
# Test: Key rotation within one provider
# ==========================================================================


class TestKeyRotation:
    @pytest.mark.asyncio
    async def test_success_uses_first_key(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1")
        dispatcher = make_dispatcher([p1], keys={"p1": ["k1", "k2"]})

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "ok from p1"
        assert result.provider == "p1"
        assert result.model == "p1-model"
        assert p1.calls[0]["api_key"] == "k1"

    @pytest.mark.asyncio
    async def test_every_key_tried_once_then_exhausted(self, make_provider, make_dispatcher, envelope):
        outcomes = [TransientBackendError("busy", "p1", status_code=503) for _ in range(3)]
        p1 = make_provider("p1", outcomes)
        dispatcher = make_dispatcher([p1], keys={"p1": ["k1", "k2", "k3"]})

        with pytest.raises(CredentialsExhaustedError) as exc_info:
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert exc_info.value.attempts == 3
        assert len(p1.calls) == 3
        assert {c["api_key"] for c in p1.calls} == {"k1", "k2", "k3"}

    @pytest.mark.asyncio
    async def test_rate_limited_key_rotates(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [TransientBackendError("slow down", "p1", status_code=429)])
        dispatcher = make_dispatcher([p1], keys={"p1": ["k1", "k2"]})

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "ok from p1"
        assert [c["api_key"] for c in p1.calls] == ["k1", "k2"]
        assert dispatcher.key_manager.pool("p1").stats()["exhausted_keys"] == 1

    @pytest.mark.asyncio
    async def test_rejected_key_marked_failed(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [CredentialRejectedError("invalid key", "p1", status_code=401)])
        dispatcher = make_dispatcher([p1], keys={"p1": ["k1", "k2"]})

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "ok from p1"
        assert dispatcher.key_manager.pool("p1")._keys[0].status == KeyStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_keys_means_no_attempt(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1")
        dispatcher = make_dispatcher([p1])

        with pytest.raises(CredentialsExhaustedError) as exc_info:
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert exc_info.value.attempts == 0
        assert p1.calls == []

    @pytest.mark.asyncio
    async def test_keyless_provider_uses_retry_budget(self, make_provider, make_dispatcher, envelope):
        outcomes = [TransientBackendError("down", "p1", status_code=502) for _ in range(2)]
        p1 = make_provider("p1", outcomes, credentials=False)
        dispatcher = make_dispatcher([p1])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "ok from p1"
        assert len(p1.calls) == 3
        assert all(c["api_key"] is None for c in p1.calls)


# ==========================================================================
# Test: Failover across providers
# ==========================================================================


class TestFailover:
    @pytest.mark.asyncio
    async def test_exhausted_provider_falls_back(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1")
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"
        assert result.model == "p2-model"

    @pytest.mark.asyncio
    async def test_unsupported_input_moves_on_without_retry(self, make_provider, make_dispatcher):
        caps = (Capability.AUDIO_TRANSCRIPTION,)
        p1 = make_provider("p1", [UnsupportedInputShapeError("microphone only", "p1")], capabilities=caps, credentials=False)
        p2 = make_provider("p2", [ProviderResponse(text="transcribed")], capabilities=caps, credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(
            Capability.AUDIO_TRANSCRIPTION,
            RequestEnvelope(),
            attachment=Attachment.from_bytes(b"mp3", "audio/mpeg"),
        )

        assert result.text == "transcribed"
        assert result.provider == "p2"
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_error_response_moves_on(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [ProviderResponse(error="not today")], credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_client_error_moves_on(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [BackendRequestError("bad request", "p1", status_code=400)], credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_all_providers_failing(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [BackendRequestError("bad", "p1", status_code=400)], credentials=False)
        p2 = make_provider("p2", [BackendRequestError("worse", "p2", status_code=404)], credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        with pytest.raises(NoProviderAvailableError) as exc_info:
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert isinstance(exc_info.value.__cause__, BackendRequestError)
        assert exc_info.value.__cause__.provider_id == "p2"

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])
        for _ in range(dispatcher.retry_config.failure_threshold):
            dispatcher.circuit_breaker.record_failure("p1")

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"
        assert p1.calls == []

    @pytest.mark.asyncio
    async def test_malformed_body_returns_raw_text(self, make_provider, make_dispatcher, envelope):
        error = MalformedResponseError("not json", raw_text="plain words", provider_id="p1")
        p1 = make_provider("p1", [error], credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "plain words"
        assert result.provider == "p1"
        assert p2.calls == []

    @pytest.mark.asyncio
    async def test_image_without_payload_is_retried_then_fails(self, make_provider, make_dispatcher, envelope):
        caps = (Capability.IMAGE_GENERATION,)
        outcomes = [ProviderResponse(text="I drew nothing") for _ in range(3)]
        p1 = make_provider("p1", outcomes, capabilities=caps, credentials=False)
        dispatcher = make_dispatcher([p1])

        with pytest.raises(NoProviderAvailableError) as exc_info:
            await dispatcher.invoke(Capability.IMAGE_GENERATION, envelope)

        assert exc_info.value.__cause__.status_code == 520
        assert len(p1.calls) == 3

    @pytest.mark.asyncio
    async def test_unexpected_exception_moves_on(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [AttributeError("'str' object has no attribute 'get'")], credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [KeyError("choices")], credentials=False)
        dispatcher = make_dispatcher([p1])

        with pytest.raises(NoProviderAvailableError) as exc_info:
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        cause = exc_info.value.__cause__
        assert isinstance(cause, BackendRequestError)
        assert cause.provider_id == "p1"
        assert isinstance(cause.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_speech_engine_crash_falls_back(self, make_provider, make_dispatcher, envelope):
        engine = StubSpeechEngine(RuntimeError("platform TTS engine crashed"))
        on_device = OnDeviceProvider(ON_DEVICE_DESCRIPTOR, engine=engine)
        p2 = make_provider("p2", [ProviderResponse(audio_base64=_AUDIO_B64)], capabilities=AUDIO, credentials=False)
        dispatcher = make_dispatcher([on_device, p2])

        result = await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope)

        assert result.provider == "p2"
        assert engine.calls == dispatcher.retry_config.max_attempts

    @pytest.mark.asyncio
    async def test_speech_engine_crash_never_leaks(self, make_dispatcher, envelope):
        engine = StubSpeechEngine(RuntimeError("platform TTS engine crashed"))
        dispatcher = make_dispatcher([OnDeviceProvider(ON_DEVICE_DESCRIPTOR, engine=engine)])

        with pytest.raises(NoProviderAvailableError) as exc_info:
            await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, provider_id="on_device")

        cause = exc_info.value.__cause__
        assert isinstance(cause, TransientBackendError)
        assert isinstance(cause.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_first_provider_that_spent_keys_is_reported(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [TransientBackendError("overloaded", "p1", status_code=503)])
        p2 = make_provider("p2")
        dispatcher = make_dispatcher([p1, p2], keys={"p1": ["k1"]})

        with pytest.raises(CredentialsExhaustedError) as exc_info:
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert exc_info.value.provider_id == "p1"
        assert exc_info.value.attempts == 1
        assert p2.calls == []

    @pytest.mark.asyncio
    async def test_half_open_slot_released_without_verdict(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", [BackendRequestError("bad request", "p1", status_code=400)], credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])
        dispatcher.circuit_breaker = CircuitBreaker(RetryConfig(failure_threshold=1, recovery_timeout=0.0))
        dispatcher.circuit_breaker.record_failure("p1")

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"
        assert len(p1.calls) == 1
        assert dispatcher.circuit_breaker.allow_request("p1") is True


# ==========================================================================
# Test: Selection
# ==========================================================================


class TestSelection:
    @pytest.mark.asyncio
    async def test_explicit_model_routes_to_owner(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope, model="p2-model")

        assert result.provider == "p2"
        assert p2.calls[0]["model"] == "p2-model"
        assert p1.calls == []

    @pytest.mark.asyncio
    async def test_unknown_model_rejected_before_any_call(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", credentials=False)
        dispatcher = make_dispatcher([p1])

        with pytest.raises(InvalidModelError) as exc_info:
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope, model="mystery-9")

        assert exc_info.value.model == "mystery-9"
        assert p1.calls == []

    @pytest.mark.asyncio
    async def test_model_not_served_by_explicit_provider(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        with pytest.raises(InvalidModelError):
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope, model="p2-model", provider_id="p1")

    @pytest.mark.asyncio
    async def test_unknown_provider_id(self, make_provider, make_dispatcher, envelope):
        dispatcher = make_dispatcher([make_provider("p1")])
        with pytest.raises(UnknownProviderError):
            await dispatcher.invoke(Capability.TEXT_GENERATION, envelope, provider_id="nobody")

    @pytest.mark.asyncio
    async def test_no_provider_supports_capability(self, make_provider, make_dispatcher, envelope):
        dispatcher = make_dispatcher([make_provider("p1")])
        with pytest.raises(NoProviderAvailableError):
            await dispatcher.invoke(Capability.IMAGE_GENERATION, envelope)

    @pytest.mark.asyncio
    async def test_explicit_provider_without_capability_falls_back(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", credentials=False)
        p2 = make_provider("p2", capabilities=AUDIO, credentials=False)
        dispatcher = make_dispatcher([p1, p2])

        result = await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, provider_id="p1")

        assert result.provider == "p2"

    @pytest.mark.asyncio
    async def test_preferences_reorder_candidates(self, make_provider, make_dispatcher, envelope):
        p1 = make_provider("p1", credentials=False)
        p2 = make_provider("p2", credentials=False)
        dispatcher = make_dispatcher([p1, p2], preferences={Capability.TEXT_GENERATION: ["p2"]})

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.provider == "p2"

    def test_selection_is_deterministic(self, make_provider, make_dispatcher):
        dispatcher = make_dispatcher([make_provider("p1"), make_provider("p2")])
        orders = {
            tuple((p.provider_id, m) for p, m in dispatcher.select(Capability.TEXT_GENERATION)) for _ in range(10)
        }
        assert orders == {(("p1", "p1-model"), ("p2", "p2-model"))}

    @pytest.mark.asyncio
    async def test_unknown_voice_falls_back_to_default(self, make_provider, make_dispatcher, envelope):
        outcome = ProviderResponse(text="spoken", audio_base64=_AUDIO_B64)
        p1 = make_provider(
            "p1", [outcome], capabilities=AUDIO, credentials=False, voices=("nova", "onyx"), default_voice="nova"
        )
        dispatcher = make_dispatcher([p1])

        await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, voice="robot")

        assert p1.calls[0]["voice"] == "nova"

    @pytest.mark.asyncio
    async def test_known_voice_passes_through(self, make_provider, make_dispatcher, envelope):
        outcome = ProviderResponse(text="spoken", audio_base64=_AUDIO_B64)
        p1 = make_provider(
            "p1", [outcome], capabilities=AUDIO, credentials=False, voices=("nova", "onyx"), default_voice="nova"
        )
        dispatcher = make_dispatcher([p1])

        await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, voice="onyx")

        assert p1.calls[0]["voice"] == "onyx"


# ==========================================================================
# Test: Normalization and caching
# ==========================================================================


class TestNormalization:
    @pytest.mark.asyncio
    async def test_embedded_json_extracted(self, make_provider, make_dispatcher, envelope):
        reply = ProviderResponse(text='Here it is:\n```json\n{"answer": 42}\n```')
        p1 = make_provider("p1", [reply], credentials=False)
        dispatcher = make_dispatcher([p1])

        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.structured == {"answer": 42}
        assert result.is_structured is True

    @pytest.mark.asyncio
    async def test_plain_text_has_no_structure(self, make_provider, make_dispatcher, envelope):
        dispatcher = make_dispatcher([make_provider("p1", credentials=False)])
        result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)
        assert result.structured is None

    @pytest.mark.asyncio
    async def test_image_prompt_from_description(self, make_provider, make_dispatcher, envelope, cache):
        reply = ProviderResponse(text='{"description": "a red fox"}', seed="ig_1", image_base64=_IMAGE_B64)
        p1 = make_provider("p1", [reply], capabilities=(Capability.IMAGE_GENERATION,), credentials=False)
        dispatcher = make_dispatcher([p1], cache=cache)

        result = await dispatcher.invoke(Capability.IMAGE_GENERATION, envelope)

        assert result.image.prompt == "a red fox"
        assert result.seed == "ig_1"
        assert result.image.path is not None


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_text_call_served_from_cache(self, make_provider, make_dispatcher, envelope, cache):
        p1 = make_provider("p1", credentials=False)
        dispatcher = make_dispatcher([p1], cache=cache)

        first = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)
        second = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.text == first.text
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_audio_cached_on_disk(self, make_provider, make_dispatcher, envelope, cache):
        outcome = ProviderResponse(text="spoken", audio_base64=_AUDIO_B64)
        p1 = make_provider("p1", [outcome], capabilities=AUDIO, credentials=False, voices=("nova",))
        dispatcher = make_dispatcher([p1], cache=cache)
        params = AudioParams(language="en")

        first = await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, voice="nova", params=params)
        second = await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, voice="nova", params=params)

        assert first.audio.path is not None
        with open(first.audio.path, "rb") as f:
            assert f.read() == b"ID3audio"
        assert second.from_cache is True
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_different_voice_is_a_different_entry(self, make_provider, make_dispatcher, envelope, cache):
        outcomes = [ProviderResponse(text="spoken", audio_base64=_AUDIO_B64) for _ in range(2)]
        p1 = make_provider("p1", outcomes, capabilities=AUDIO, credentials=False, voices=("nova", "onyx"))
        dispatcher = make_dispatcher([p1], cache=cache)

        await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, voice="nova")
        await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope, voice="onyx")

        assert len(p1.calls) == 2

    @pytest.mark.asyncio
    async def test_transcription_is_never_cached(self, make_provider, make_dispatcher, cache):
        caps = (Capability.AUDIO_TRANSCRIPTION,)
        p1 = make_provider("p1", capabilities=caps, credentials=False)
        dispatcher = make_dispatcher([p1], cache=cache)

        await dispatcher.invoke(Capability.AUDIO_TRANSCRIPTION, RequestEnvelope())
        await dispatcher.invoke(Capability.AUDIO_TRANSCRIPTION, RequestEnvelope())

        assert len(p1.calls) == 2

    @pytest.mark.asyncio
    async def test_on_device_audio_stored_as_wav(self, make_dispatcher, envelope, cache):
        dispatcher = make_dispatcher([OnDeviceProvider(ON_DEVICE_DESCRIPTOR, engine=StubSpeechEngine())], cache=cache)

        plain = await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope)
        asked_mp3 = await dispatcher.invoke(
            Capability.AUDIO_GENERATION, envelope, params=AudioParams(audio_format="mp3")
        )

        assert plain.audio.path.endswith(".wav")
        assert asked_mp3.from_cache is True
        assert asked_mp3.audio.path == plain.audio.path

    @pytest.mark.asyncio
    async def test_configured_audio_format_used_when_none_given(self, make_provider, make_dispatcher, envelope, cache):
        outcome = ProviderResponse(text="spoken", audio_base64=_AUDIO_B64)
        p1 = make_provider("p1", [outcome], capabilities=AUDIO, credentials=False)
        dispatcher = make_dispatcher([p1], cache=cache)
        dispatcher.default_audio_format = "opus"

        result = await dispatcher.invoke(Capability.AUDIO_GENERATION, envelope)

        assert p1.calls[0]["params"].audio_format == "opus"
        assert result.audio.path.endswith(".opus")

    @pytest.mark.asyncio
    async def test_cache_read_failure_goes_to_network(self, make_provider, make_dispatcher, envelope, cache):
        p1 = make_provider("p1", credentials=False)
        dispatcher = make_dispatcher([p1], cache=cache)

        with patch.object(cache, "get", AsyncMock(side_effect=CacheIOError("disk gone"))):
            result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "ok from p1"
        assert result.from_cache is False
        assert len(p1.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_returns_response(self, make_provider, make_dispatcher, envelope, cache):
        p1 = make_provider("p1", credentials=False)
        dispatcher = make_dispatcher([p1], cache=cache)

        with patch.object(cache, "put", AsyncMock(side_effect=CacheIOError("disk full"))):
            result = await dispatcher.invoke(Capability.TEXT_GENERATION, envelope)

        assert result.text == "ok from p1"
        assert result.from_cache is False
        assert cache.memory.size == 0


class TestStatus:
    def test_status_sections(self, make_provider, make_dispatcher, cache):
        dispatcher = make_dispatcher([make_provider("p1")], keys={"p1": ["k1"]}, cache=cache)
        status = dispatcher.status()
        assert set(status) == {"providers", "registry", "circuits", "keys", "rate_limits", "cache"}
        assert status["providers"]["p1"]["requires_credentials"] is True
        assert status["keys"]["p1"]["total_keys"] == 1
        assert status["cache"]["enabled"] is True
