"""Content Cache — content-addressed, two tiers.

Lookup order: memory → disk → network (the dispatcher).
Write order after a network success: disk first, then memory.

  - MemoryCache: LRU map with a TTL timer per entry (asyncio call_later)
  - DiskCache: one file per artifact named by the key digest, under a
    capability directory (audio/, images/, text/), plus a models/ list cache
  - ContentCache: both tiers behind one interface

Disk entries never expire on their own. They go away through ``clear()``
or, when ``max_disk_bytes`` is set, oldest-first eviction after a write.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from ai_gateway.core.metrics import CACHE_LOOKUPS
from ai_gateway.gateway.errors import CacheIOError
from ai_gateway.gateway.types import (
    AIAudio,
    AIImage,
    AIResponse,
    Attachment,
    AudioParams,
    CacheEntry,
    CacheKey,
    Capability,
    CapabilityParams,
    ImageParams,
    RequestEnvelope,
    TextParams,
)

logger = logging.getLogger(__name__)

CAPABILITY_DIRS: dict[Capability, str] = {
    Capability.AUDIO_GENERATION: "audio",
    Capability.IMAGE_GENERATION: "images",
    Capability.TEXT_GENERATION: "text",
}
MODELS_DIR = "models"


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    cache_dir: str = "./.ai_cache"
    memory_ttl_seconds: float = 1800.0
    max_memory_entries: int = 1000
    models_ttl_hours: int = 168
    max_disk_bytes: int = 0  # 0 = unbounded
    default_language: str = "en"

    @classmethod
    def from_settings(cls, settings) -> CacheConfig:
        return cls(
            enabled=settings.cache_enabled,
            cache_dir=settings.cache_dir,
            memory_ttl_seconds=settings.memory_cache_ttl_seconds,
            max_memory_entries=settings.memory_cache_max_entries,
            models_ttl_hours=settings.models_cache_ttl_hours,
            max_disk_bytes=settings.disk_cache_max_bytes,
            default_language=settings.default_language,
        )


# ---------------------------------------------------------------------------
# Key construction
# ---------------------------------------------------------------------------


def _canonical(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, ensure_ascii=False, default=str)


def build_cache_key(
    capability: Capability,
    envelope: RequestEnvelope,
    provider_id: str,
    model: str | None,
    voice: str | None = None,
    params: CapabilityParams | None = None,
    attachment: Attachment | None = None,
    default_language: str = "en",
) -> CacheKey:
    """Deterministic key over everything that changes the produced artifact."""
    if capability == Capability.AUDIO_GENERATION:
        audio = params if isinstance(params, AudioParams) else AudioParams()
        return CacheKey(
            capability=capability,
            content=envelope.last_user_message,
            selector=voice or "default",
            language=audio.language or default_language,
            provider_id=provider_id,
            output_format=audio.audio_format or "mp3",
            speed=audio.speed,
            pitch=audio.pitch,
        )

    material: dict[str, Any] = {
        "envelope": envelope.cache_material(),
        "attachment": attachment.digest if attachment else None,
    }
    if capability == Capability.IMAGE_GENERATION:
        image = params if isinstance(params, ImageParams) else ImageParams()
        material.update(
            size=image.size,
            quality=image.quality,
            background=image.background,
            fidelity=image.fidelity,
            seed=image.seed,
        )
        output_format = image.output_format
    else:
        text = params if isinstance(params, TextParams) else TextParams()
        material.update(temperature=text.temperature, max_output_tokens=text.max_output_tokens)
        output_format = "json"

    return CacheKey(
        capability=capability,
        content=_canonical(material),
        selector=model or "default",
        language="",
        provider_id=provider_id,
        output_format=output_format,
    )


# ---------------------------------------------------------------------------
# Memory tier
# ---------------------------------------------------------------------------


class MemoryCache:
    """LRU map with a per-entry expiry timer.

    Timers need a running event loop; entries stored outside one still
    expire lazily on read.
    """

    def __init__(self, ttl_seconds: float = 1800.0, max_entries: int = 1000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def size(self) -> int:
        return len(self._entries)

    def get(self, digest: str) -> CacheEntry | None:
        entry = self._entries.get(digest)
        if entry is None:
            self.misses += 1
            return None
        if entry.is_expired():
            self.delete(digest)
            self.misses += 1
            return None
        self._entries.move_to_end(digest)
        self.hits += 1
        return entry

    def set(self, entry: CacheEntry) -> None:
        if entry.ttl_seconds is None:
            entry.ttl_seconds = self.ttl_seconds
        self._cancel_timer(entry.digest)
        self._entries[entry.digest] = entry
        self._entries.move_to_end(entry.digest)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._timers[entry.digest] = loop.call_later(entry.ttl_seconds, self._expire, entry.digest)

        while len(self._entries) > self.max_entries:
            oldest, _ = self._entries.popitem(last=False)
            self._cancel_timer(oldest)
            self.evictions += 1

    def _expire(self, digest: str) -> None:
        self._timers.pop(digest, None)
        if self._entries.pop(digest, None) is not None:
            logger.debug("Memory cache entry %s expired", digest[:12])

    def _cancel_timer(self, digest: str) -> None:
        timer = self._timers.pop(digest, None)
        if timer is not None:
            timer.cancel()

    def delete(self, digest: str) -> bool:
        self._cancel_timer(digest)
        return self._entries.pop(digest, None) is not None

    def clear(self, capability: Capability | None = None) -> int:
        doomed = [d for d, e in self._entries.items() if capability is None or e.capability == capability]
        for digest in doomed:
            self.delete(digest)
        return len(doomed)

    def dispose(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._entries.clear()


# ---------------------------------------------------------------------------
# Disk tier
# ---------------------------------------------------------------------------


class DiskCache:
    """Hash-named artifact files under capability directories.

    Layout:
        <root>/audio/<digest>.<fmt>      audio bytes
        <root>/images/<digest>.<fmt>     image bytes
        <root>/text/<digest>.json        text response
        <root>/<dir>/<digest>.meta.json  response metadata (audio, images)
        <root>/models/<provider>_models_cache.json
    """

    def __init__(self, root: str | Path, max_bytes: int = 0, models_ttl_hours: int = 168):
        self.root = Path(root)
        self.max_bytes = max_bytes
        self.models_ttl_seconds = models_ttl_hours * 3600
        self.hits = 0
        self.misses = 0

    def directory(self, capability: Capability) -> Path:
        return self.root / CAPABILITY_DIRS[capability]

    def path_for(self, key: CacheKey) -> Path:
        return self.directory(key.capability) / f"{key.digest}.{key.output_format}"

    def _meta_path(self, key: CacheKey) -> Path:
        return self.directory(key.capability) / f"{key.digest}.meta.json"

    # --- sync helpers, run in a worker thread ---

    def _read_sync(self, key: CacheKey) -> AIResponse | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        if path.stat().st_size == 0:
            logger.warning("Removing empty cache file %s", path.name)
            path.unlink(missing_ok=True)
            return None

        if key.capability == Capability.TEXT_GENERATION:
            data = json.loads(path.read_text(encoding="utf-8"))
            return AIResponse(
                text=data.get("text", ""),
                provider=key.provider_id,
                model=data.get("model", key.selector),
                capability=key.capability,
                structured=data.get("structured"),
                seed=data.get("seed", ""),
                from_cache=True,
            )

        meta: dict[str, Any] = {}
        meta_path = self._meta_path(key)
        if meta_path.exists():
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        payload = base64.b64encode(path.read_bytes()).decode("ascii")
        created_ms = int(path.stat().st_mtime * 1000)
        response = AIResponse(
            text=meta.get("text", ""),
            provider=key.provider_id,
            model=meta.get("model", ""),
            capability=key.capability,
            structured=meta.get("structured"),
            seed=meta.get("seed", ""),
            from_cache=True,
        )
        if key.capability == Capability.AUDIO_GENERATION:
            response.audio = AIAudio(path=str(path), base64=payload, created_at_ms=created_ms)
        else:
            response.image = AIImage(
                prompt=meta.get("prompt") or None, path=str(path), base64=payload, created_at_ms=created_ms
            )
        return response

    def _write_sync(self, key: CacheKey, response: AIResponse) -> Path:
        directory = self.directory(key.capability)
        directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)

        if key.capability == Capability.TEXT_GENERATION:
            payload = {
                "text": response.text,
                "model": response.model,
                "structured": response.structured,
                "seed": response.seed,
                "cached_at": time.time(),
            }
            path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        else:
            artifact = response.audio if key.capability == Capability.AUDIO_GENERATION else response.image
            if artifact is None or not artifact.base64:
                raise ValueError(f"{key.capability.value} response carries no payload")
            path.write_bytes(base64.b64decode(artifact.base64))
            meta = {
                "text": response.text,
                "model": response.model,
                "prompt": response.image.prompt if response.image else None,
                "structured": response.structured,
                "seed": response.seed,
                "cached_at": time.time(),
            }
            self._meta_path(key).write_text(json.dumps(meta, ensure_ascii=False), encoding="utf-8")

        if self.max_bytes > 0:
            self._enforce_cap(keep=path)
        return path

    def _artifact_files(self) -> list[Path]:
        files: list[Path] = []
        for name in CAPABILITY_DIRS.values():
            directory = self.root / name
            if directory.is_dir():
                files.extend(p for p in directory.iterdir() if p.is_file())
        return files

    def _enforce_cap(self, keep: Path) -> None:
        files = sorted(self._artifact_files(), key=lambda p: p.stat().st_mtime)
        total = sum(p.stat().st_size for p in files)
        for path in files:
            if total <= self.max_bytes:
                break
            if path == keep or path.name == keep.name.rsplit(".", 1)[0] + ".meta.json":
                continue
            total -= path.stat().st_size
            path.unlink(missing_ok=True)
            logger.info("Evicted %s to keep disk cache under %d bytes", path.name, self.max_bytes)

    def _clear_sync(self, capability: Capability | None) -> int:
        capabilities = [capability] if capability is not None else list(CAPABILITY_DIRS)
        removed = 0
        for cap in capabilities:
            directory = self.directory(cap)
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.is_file():
                    path.unlink()
                    removed += 1
        return removed

    # --- async API ---

    async def read(self, key: CacheKey) -> AIResponse | None:
        try:
            response = await asyncio.to_thread(self._read_sync, key)
        except (OSError, ValueError) as e:
            raise CacheIOError(f"Failed to read cache entry {key.digest[:12]}: {e}", key.provider_id) from e
        if response is None:
            self.misses += 1
        else:
            self.hits += 1
        return response

    async def write(self, key: CacheKey, response: AIResponse) -> Path:
        try:
            return await asyncio.to_thread(self._write_sync, key, response)
        except (OSError, ValueError, TypeError) as e:
            raise CacheIOError(f"Failed to write cache entry {key.digest[:12]}: {e}", key.provider_id) from e

    async def clear(self, capability: Capability | None = None) -> int:
        try:
            return await asyncio.to_thread(self._clear_sync, capability)
        except OSError as e:
            raise CacheIOError(f"Failed to clear cache: {e}") from e

    def total_bytes(self) -> int:
        return sum(p.stat().st_size for p in self._artifact_files())

    # --- models list cache ---

    def _models_path(self, provider_id: str) -> Path:
        return self.root / MODELS_DIR / f"{provider_id}_models_cache.json"

    def get_models(self, provider_id: str) -> list[str] | None:
        path = self._models_path(provider_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable models cache for %s: %s", provider_id, e)
            return None
        if time.time() - float(data.get("cached_at", 0)) > self.models_ttl_seconds:
            logger.debug("Models cache for %s expired", provider_id)
            return None
        return list(data.get("models", []))

    def save_models(self, provider_id: str, models: list[str]) -> None:
        path = self._models_path(provider_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps({"models": models, "cached_at": time.time()}), encoding="utf-8")
        except OSError as e:
            raise CacheIOError(f"Failed to save models cache for {provider_id}: {e}", provider_id) from e

    def clear_models(self) -> int:
        directory = self.root / MODELS_DIR
        if not directory.is_dir():
            return 0
        removed = 0
        for path in directory.glob("*_models_cache.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed


# ---------------------------------------------------------------------------
# Both tiers
# ---------------------------------------------------------------------------


class ContentCache:
    """Two-tier content cache consulted by the dispatcher.

    Usage:
        cache = ContentCache(CacheConfig(cache_dir="/tmp/ai"))
        key = build_cache_key(Capability.AUDIO_GENERATION, envelope, "openai", "gpt-4o-mini-tts", voice="nova")
        hit = await cache.get(key)
        if hit is None:
            response = await cache.put(key, fresh_response)
    """

    def __init__(self, config: CacheConfig | None = None):
        self.config = config or CacheConfig()
        self.memory = MemoryCache(self.config.memory_ttl_seconds, self.config.max_memory_entries)
        self.disk = DiskCache(self.config.cache_dir, self.config.max_disk_bytes, self.config.models_ttl_hours)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def get(self, key: CacheKey) -> AIResponse | None:
        """Memory first, then disk. Disk hits are promoted into memory."""
        digest = key.digest
        entry = self.memory.get(digest)
        if entry is not None:
            CACHE_LOOKUPS.labels(tier="memory", result="hit").inc()
            logger.debug("Memory cache hit %s", digest[:12], extra={"cache_key": digest})
            return replace(entry.response, from_cache=True)
        CACHE_LOOKUPS.labels(tier="memory", result="miss").inc()

        response = await self.disk.read(key)
        if response is None:
            CACHE_LOOKUPS.labels(tier="disk", result="miss").inc()
            return None

        CACHE_LOOKUPS.labels(tier="disk", result="hit").inc()
        logger.debug("Disk cache hit %s", digest[:12], extra={"cache_key": digest})
        self.memory.set(CacheEntry(digest=digest, capability=key.capability, response=response))
        return response

    async def put(self, key: CacheKey, response: AIResponse) -> AIResponse:
        """Persist to disk, then to memory. Returns the response with file paths filled in."""
        digest = key.digest
        path = await self.disk.write(key, response)

        stored = replace(response)
        if key.capability == Capability.AUDIO_GENERATION and stored.audio is not None:
            stored.audio = replace(stored.audio, path=str(path))
        elif key.capability == Capability.IMAGE_GENERATION and stored.image is not None:
            stored.image = replace(stored.image, path=str(path))

        self.memory.set(
            CacheEntry(
                digest=digest,
                capability=key.capability,
                response=stored,
                path=str(path),
                size_bytes=path.stat().st_size if path.exists() else 0,
            )
        )
        logger.info(
            "Cached %s response as %s",
            key.capability.value,
            path.name,
            extra={"provider": key.provider_id, "cache_key": digest},
        )
        return stored

    async def clear(self, capability: Capability | None = None) -> int:
        """Drop both tiers for one capability (or all). Returns files removed."""
        self.memory.clear(capability)
        removed = await self.disk.clear(capability)
        logger.info("Cleared %d cached file(s) for %s", removed, capability.value if capability else "all capabilities")
        return removed

    def clear_memory(self, capability: Capability | None = None) -> int:
        return self.memory.clear(capability)

    def get_cached_models(self, provider_id: str) -> list[str] | None:
        return self.disk.get_models(provider_id)

    def save_models(self, provider_id: str, models: list[str]) -> None:
        self.disk.save_models(provider_id, models)

    def clear_models_cache(self) -> int:
        return self.disk.clear_models()

    def stats(self) -> dict:
        try:
            disk_bytes = self.disk.total_bytes()
        except OSError:
            disk_bytes = -1
        return {
            "enabled": self.enabled,
            "memory_entries": self.memory.size,
            "memory_hits": self.memory.hits,
            "memory_misses": self.memory.misses,
            "memory_evictions": self.memory.evictions,
            "disk_hits": self.disk.hits,
            "disk_misses": self.disk.misses,
            "disk_bytes": disk_bytes,
            "disk_max_bytes": self.disk.max_bytes,
        }

    def dispose(self) -> None:
        self.memory.dispose()
