"""Core types and DTOs for the AI provider gateway."""

from __future__ import annotations

import base64
import hashlib
import json
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ai_gateway.gateway.errors import MalformedResponseError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Capability(str, Enum):
    """Fixed categories of AI operation."""

    TEXT_GENERATION = "text_generation"
    IMAGE_GENERATION = "image_generation"
    IMAGE_ANALYSIS = "image_analysis"
    AUDIO_GENERATION = "audio_generation"
    AUDIO_TRANSCRIPTION = "audio_transcription"
    REALTIME_CONVERSATION = "realtime_conversation"


# Capabilities whose successful responses go through the content cache
CACHEABLE_CAPABILITIES: frozenset[Capability] = frozenset(
    {
        Capability.TEXT_GENERATION,
        Capability.IMAGE_GENERATION,
        Capability.AUDIO_GENERATION,
    }
)


class VoiceGender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    NEUTRAL = "neutral"


# ---------------------------------------------------------------------------
# Provider descriptor — static, immutable provider configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimit:
    """Per-capability request budget for a provider."""

    requests_per_minute: int = 1000
    max_concurrent: int = 10


@dataclass(frozen=True)
class ProviderDescriptor:
    """Everything the gateway knows about a provider before talking to it.

    Built once from configuration and never mutated; the registry keeps
    one per built provider.
    """

    provider_id: str
    display_name: str = ""
    enabled: bool = True
    capabilities: frozenset[Capability] = frozenset()
    default_models: dict[Capability, str] = field(default_factory=dict)
    available_models: dict[Capability, tuple[str, ...]] = field(default_factory=dict)
    model_prefixes: tuple[str, ...] = ()
    voices: tuple[str, ...] = ()
    default_voice: str | None = None
    rate_limits: dict[Capability, RateLimit] = field(default_factory=dict)

    # Auth
    required_credential_keys: tuple[str, ...] = ()  # e.g. ("OPENAI_API_KEYS",)
    auth_header: str = "Authorization"
    auth_scheme: str = "Bearer"  # empty → raw key in the header

    # Wire
    base_url: str = ""
    endpoints: dict[str, str] = field(default_factory=dict)
    max_output_tokens: int = 1024
    defaults: dict[str, str] = field(
        default_factory=lambda: {"image_mime_type": "image/png", "audio_format": "mp3"}
    )

    @property
    def requires_credentials(self) -> bool:
        return bool(self.required_credential_keys)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def rate_limit_for(self, capability: Capability) -> RateLimit:
        return self.rate_limits.get(capability, RateLimit())

    def build_auth_headers(self, api_key: str | None) -> dict[str, str]:
        """Auth header for one request. Providers without credentials send none."""
        headers = {"Content-Type": "application/json"}
        if not self.requires_credentials or not api_key:
            return headers
        value = f"{self.auth_scheme} {api_key}" if self.auth_scheme else api_key
        headers[self.auth_header] = value
        return headers


# ---------------------------------------------------------------------------
# Capability parameters — one tagged variant per capability family
# ---------------------------------------------------------------------------

_ASPECT_SIZES = {
    "square": "1024x1024",
    "portrait": "1024x1536",
    "landscape": "1536x1024",
}
_IMAGE_FORMATS = {"png", "jpeg", "webp"}
_IMAGE_BACKGROUNDS = {"auto", "transparent", "opaque"}
_IMAGE_FIDELITY = {"low", "high"}
_IMAGE_QUALITY = {"auto", "low", "medium", "high"}
AUDIO_FORMATS = frozenset({"mp3", "opus", "aac", "flac", "wav", "pcm", "m4a"})


@dataclass(frozen=True)
class TextParams:
    temperature: float = 0.7
    max_output_tokens: int | None = None

    def __post_init__(self):
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be within [0, 2], got {self.temperature}")
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be positive")


@dataclass(frozen=True)
class ImageParams:
    aspect_ratio: str | None = None  # square | portrait | landscape
    output_format: str = "png"
    background: str = "auto"
    fidelity: str = "low"
    quality: str = "auto"
    seed: str | None = None  # previous generation id, used to edit instead of regenerate

    def __post_init__(self):
        if self.aspect_ratio is not None and self.aspect_ratio not in _ASPECT_SIZES:
            raise ValueError(f"Unknown aspect ratio: {self.aspect_ratio}")
        if self.output_format not in _IMAGE_FORMATS:
            raise ValueError(f"Unsupported image format: {self.output_format}")
        if self.background not in _IMAGE_BACKGROUNDS:
            raise ValueError(f"Unsupported background: {self.background}")
        if self.fidelity not in _IMAGE_FIDELITY:
            raise ValueError(f"Unsupported fidelity: {self.fidelity}")
        if self.quality not in _IMAGE_QUALITY:
            raise ValueError(f"Unsupported quality: {self.quality}")

    @property
    def size(self) -> str:
        if self.aspect_ratio is None:
            return "auto"
        return _ASPECT_SIZES[self.aspect_ratio]


@dataclass(frozen=True)
class AudioParams:
    speed: float = 1.0
    audio_format: str | None = None  # None = the provider's own default
    language: str | None = None
    accent: str | None = None
    emotion: str | None = None
    pitch: float = 0.0

    def __post_init__(self):
        if not 0.25 <= self.speed <= 4.0:
            raise ValueError(f"speed must be within [0.25, 4.0], got {self.speed}")
        if self.audio_format is not None and self.audio_format not in AUDIO_FORMATS:
            raise ValueError(f"Unsupported audio format: {self.audio_format}")

    @property
    def instructions(self) -> str:
        """Free-form delivery hints for TTS backends that accept them."""
        parts = [p for p in (self.accent, self.emotion) if p]
        return ". ".join(parts)


CapabilityParams = TextParams | ImageParams | AudioParams


# ---------------------------------------------------------------------------
# Request envelope — what a provider receives
# ---------------------------------------------------------------------------


@dataclass
class RequestEnvelope:
    """Structured request: task context, ordered instructions, optional history.

    History lives only in ``history``. Providers call
    ``BaseProvider.process_history`` to take it out before serializing the
    rest, so the turns never appear twice on the wire.
    """

    context: dict[str, Any] = field(default_factory=dict)
    instructions: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, str]] | None = None
    date_time: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "context": self.context,
            "dateTime": self.date_time,
            "instructions": self.instructions,
        }
        if self.history:
            data["history"] = list(self.history)
        return data

    def cache_material(self) -> dict[str, Any]:
        """Semantically relevant fields only; the timestamp never affects identity."""
        return {
            "context": self.context,
            "instructions": self.instructions,
            "history": list(self.history or []),
        }

    def without_history(self) -> RequestEnvelope:
        return replace(self, history=None)

    def with_user_message(self, message: str) -> RequestEnvelope:
        turns = list(self.history or [])
        turns.append({"role": "user", "content": message})
        return replace(self, history=turns)

    @property
    def last_user_message(self) -> str:
        for turn in reversed(self.history or []):
            if turn.get("role") == "user":
                return turn.get("content", "") or ""
        return ""


@dataclass(frozen=True)
class Attachment:
    """Binary payload (image or audio) travelling with a request, base64-encoded."""

    base64_data: str
    mime_type: str

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> Attachment:
        return cls(base64_data=base64.b64encode(data).decode("ascii"), mime_type=mime_type)

    @property
    def data(self) -> bytes:
        return base64.b64decode(self.base64_data)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.base64_data.encode("ascii")).hexdigest()

    @property
    def extension(self) -> str:
        subtype = self.mime_type.split("/", 1)[-1].split(";", 1)[0]
        return {"mpeg": "mp3", "x-wav": "wav", "jpeg": "jpg", "mp4": "m4a"}.get(subtype, subtype)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass
class ProviderResponse:
    """Canonical output of one backend call."""

    text: str = ""
    seed: str = ""  # generation id (image edits reuse it)
    prompt: str = ""  # revised prompt / description reported by the backend
    image_base64: str | None = None
    audio_base64: str | None = None
    error: str = ""  # set instead of raising for unsupported capabilities

    @property
    def ok(self) -> bool:
        return not self.error


@dataclass
class VoiceInfo:
    id: str
    name: str = ""
    language: str = ""
    gender: VoiceGender = VoiceGender.NEUTRAL
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "language": self.language,
            "gender": self.gender.value,
            "description": self.description,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AIImage:
    prompt: str | None = None
    path: str | None = None  # persisted file in the image cache
    base64: str | None = None
    created_at_ms: int = field(default_factory=_now_ms)


@dataclass
class AIAudio:
    path: str | None = None  # persisted file in the audio cache
    base64: str | None = None
    created_at_ms: int = field(default_factory=_now_ms)


@dataclass
class AIResponse:
    """Normalized value returned by every capability call."""

    text: str = ""
    provider: str = ""
    model: str = ""
    capability: Capability = Capability.TEXT_GENERATION
    image: AIImage | None = None
    audio: AIAudio | None = None
    structured: dict[str, Any] | None = None  # JSON extracted from text, if any
    from_cache: bool = False
    seed: str = ""

    @property
    def is_structured(self) -> bool:
        return self.structured is not None

    def require_structured(self) -> dict[str, Any]:
        """Return the extracted JSON object or raise with the raw text attached."""
        if self.structured is None:
            raise MalformedResponseError(
                "Response did not contain a JSON object",
                raw_text=self.text,
                provider_id=self.provider or None,
            )
        return self.structured

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "capability": self.capability.value,
            "image": (
                {"prompt": self.image.prompt, "path": self.image.path, "created_at_ms": self.image.created_at_ms}
                if self.image
                else None
            ),
            "audio": {"path": self.audio.path, "created_at_ms": self.audio.created_at_ms} if self.audio else None,
            "structured": self.structured,
            "from_cache": self.from_cache,
            "seed": self.seed,
        }


# ---------------------------------------------------------------------------
# Cache key / entry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheKey:
    """Hashable identity of a cacheable request.

    Every dimension takes part in the digest, so the same text with a
    different voice, language, provider or format never collides.
    """

    capability: Capability
    content: str
    selector: str  # voice for audio, model otherwise
    language: str
    provider_id: str
    output_format: str
    speed: float = 1.0
    pitch: float = 0.0

    @property
    def digest(self) -> str:
        # JSON keeps field boundaries, so "a:b" + "c" never equals "a" + "b:c"
        material = json.dumps(
            [
                self.capability.value,
                self.provider_id,
                self.selector,
                self.language,
                f"{self.speed:g}",
                f"{self.pitch:g}",
                self.output_format,
                self.content,
            ],
            ensure_ascii=False,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """A cached artifact: optional file on disk plus the response it came from."""

    digest: str
    capability: Capability
    response: AIResponse
    path: str | None = None
    size_bytes: int = 0
    created_at: float = field(default_factory=time.time)
    ttl_seconds: float | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.ttl_seconds is None:
            return False
        return (now if now is not None else time.time()) - self.created_at >= self.ttl_seconds
