"""Tests for gateway types, parameter variants, cache keys and errors."""

from __future__ import annotations

import pytest

from ai_gateway.gateway.errors import (
    CredentialsExhaustedError,
    InvalidModelError,
    MalformedResponseError,
    TransientBackendError,
)
from ai_gateway.gateway.types import (
    AIResponse,
    Attachment,
    AudioParams,
    CacheKey,
    Capability,
    ImageParams,
    ProviderDescriptor,
    RequestEnvelope,
    TextParams,
)


# ==========================================================================
# Test: Capability parameters
# ==========================================================================


class TestCapabilityParams:
    def test_text_params_defaults(self):
        params = TextParams()
        assert params.temperature == 0.7
        assert params.max_output_tokens is None

    def test_text_params_rejects_out_of_range_temperature(self):
        with pytest.raises(ValueError):
            TextParams(temperature=2.5)

    def test_image_size_from_aspect_ratio(self):
        assert ImageParams().size == "auto"
        assert ImageParams(aspect_ratio="square").size == "1024x1024"
        assert ImageParams(aspect_ratio="portrait").size == "1024x1536"
        assert ImageParams(aspect_ratio="landscape").size == "1536x1024"

    def test_image_params_rejects_unknown_format(self):
        with pytest.raises(ValueError):
            ImageParams(output_format="gif")

    def test_audio_params_validation(self):
        with pytest.raises(ValueError):
            AudioParams(speed=5.0)
        with pytest.raises(ValueError):
            AudioParams(audio_format="ogg")

    def test_audio_instructions_join_accent_and_emotion(self):
        assert AudioParams(accent="Scottish", emotion="cheerful").instructions == "Scottish. cheerful"
        assert AudioParams().instructions == ""


# ==========================================================================
# Test: Request envelope
# ==========================================================================


class TestRequestEnvelope:
    def test_to_dict_omits_empty_history(self):
        data = RequestEnvelope(context={"a": 1}).to_dict()
        assert set(data) == {"context", "dateTime", "instructions"}

    def test_to_dict_includes_history(self, envelope):
        data = envelope.to_dict()
        assert data["history"] == [{"role": "user", "content": "Hello"}]

    def test_without_history_leaves_original_untouched(self, envelope):
        stripped = envelope.without_history()
        assert stripped.history is None
        assert "history" not in stripped.to_dict()
        assert envelope.history == [{"role": "user", "content": "Hello"}]

    def test_with_user_message_appends(self, envelope):
        longer = envelope.with_user_message("Again")
        assert len(longer.history) == 2
        assert longer.last_user_message == "Again"
        assert len(envelope.history) == 1

    def test_last_user_message_skips_assistant_turns(self):
        env = RequestEnvelope(
            history=[
                {"role": "user", "content": "Question"},
                {"role": "assistant", "content": "Answer"},
            ]
        )
        assert env.last_user_message == "Question"

    def test_cache_material_ignores_timestamp(self):
        a = RequestEnvelope(context={"x": 1}, date_time="2024-01-01T00:00:00+00:00")
        b = RequestEnvelope(context={"x": 1}, date_time="2025-06-01T12:00:00+00:00")
        assert a.cache_material() == b.cache_material()


# ==========================================================================
# Test: Attachment
# ==========================================================================


class TestAttachment:
    def test_from_bytes(self):
        att = Attachment.from_bytes(b"\x89PNG data", "image/png")
        assert att.data == b"\x89PNG data"
        assert att.is_image is True
        assert att.is_audio is False

    def test_extension_mapping(self):
        assert Attachment("", "audio/mpeg").extension == "mp3"
        assert Attachment("", "audio/wav").extension == "wav"
        assert Attachment("", "image/jpeg").extension == "jpg"

    def test_digest_depends_on_content(self):
        a = Attachment.from_bytes(b"one", "image/png")
        b = Attachment.from_bytes(b"two", "image/png")
        assert a.digest != b.digest


# ==========================================================================
# Test: Provider descriptor
# ==========================================================================


class TestProviderDescriptor:
    def test_bearer_auth_header(self):
        desc = ProviderDescriptor(provider_id="openai", required_credential_keys=("OPENAI_API_KEYS",))
        headers = desc.build_auth_headers("sk-test")
        assert headers["Authorization"] == "Bearer sk-test"
        assert headers["Content-Type"] == "application/json"

    def test_raw_key_header(self):
        desc = ProviderDescriptor(
            provider_id="google",
            required_credential_keys=("GOOGLE_API_KEYS",),
            auth_header="x-goog-api-key",
            auth_scheme="",
        )
        assert desc.build_auth_headers("g-key")["x-goog-api-key"] == "g-key"

    def test_no_credentials_no_auth_header(self):
        desc = ProviderDescriptor(provider_id="on_device")
        assert desc.requires_credentials is False
        assert desc.build_auth_headers("ignored") == {"Content-Type": "application/json"}

    def test_rate_limit_fallback(self):
        desc = ProviderDescriptor(provider_id="x")
        limit = desc.rate_limit_for(Capability.TEXT_GENERATION)
        assert limit.requests_per_minute == 1000
        assert limit.max_concurrent == 10


# ==========================================================================
# Test: Cache key
# ==========================================================================


def _audio_key(**overrides) -> CacheKey:
    fields = {
        "capability": Capability.AUDIO_GENERATION,
        "content": "Hello",
        "selector": "nova",
        "language": "en",
        "provider_id": "openai",
        "output_format": "mp3",
    }
    fields.update(overrides)
    return CacheKey(**fields)


class TestCacheKey:
    def test_deterministic(self):
        assert _audio_key().digest == _audio_key().digest

    def test_format_changes_digest(self):
        assert _audio_key(output_format="m4a").digest != _audio_key(output_format="mp3").digest

    @pytest.mark.parametrize(
        "override",
        [
            {"selector": "onyx"},
            {"language": "es"},
            {"provider_id": "on_device"},
            {"output_format": "wav"},
            {"speed": 1.5},
            {"content": "Hello!"},
        ],
    )
    def test_each_dimension_changes_digest(self, override):
        assert _audio_key(**override).digest != _audio_key().digest

    def test_digest_is_sha256_hex(self):
        digest = _audio_key().digest
        assert len(digest) == 64
        int(digest, 16)


# ==========================================================================
# Test: AIResponse and errors
# ==========================================================================


class TestAIResponse:
    def test_require_structured_returns_object(self):
        resp = AIResponse(text='{"a": 1}', structured={"a": 1})
        assert resp.is_structured is True
        assert resp.require_structured() == {"a": 1}

    def test_require_structured_raises_with_raw_text(self):
        resp = AIResponse(text="plain words", provider="xai")
        with pytest.raises(MalformedResponseError) as exc_info:
            resp.require_structured()
        assert exc_info.value.raw_text == "plain words"
        assert exc_info.value.provider_id == "xai"

    def test_to_dict(self):
        data = AIResponse(text="hi", provider="openai", model="gpt-4.1-mini").to_dict()
        assert data["capability"] == "text_generation"
        assert data["from_cache"] is False
        assert data["image"] is None


class TestErrors:
    def test_error_to_dict(self):
        err = InvalidModelError("gpt-9", "openai")
        assert err.to_dict() == {
            "code": "invalid_model",
            "message": "Model 'gpt-9' is not served by provider 'openai'",
            "provider_id": "openai",
        }

    def test_transient_rate_limit_flag(self):
        assert TransientBackendError("slow down", "openai", status_code=429).is_rate_limit is True
        assert TransientBackendError("boom", "openai", status_code=503).is_rate_limit is False

    def test_exhausted_carries_attempts(self):
        err = CredentialsExhaustedError("openai", attempts=3)
        assert err.attempts == 3
        assert err.code == "credentials_exhausted"
