"""API key pools with rotation.

One pool per provider. The dispatcher asks for a key before every attempt
and reports the outcome back:
  - success: key stays active
  - 429: key is exhausted until its cooldown passes
  - 401/402/403: key is failed for good
  - 5xx / network: key stays active, rotation moves on to the next one
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from ai_gateway.core.logging import mask_key
from ai_gateway.core.metrics import KEY_ROTATIONS

logger = logging.getLogger(__name__)


class KeyStatus(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"  # rejected by the backend
    EXHAUSTED = "exhausted"  # rate limited, recovers after cooldown
    INVALID = "invalid"  # malformed or revoked


@dataclass
class ApiKeyInfo:
    key: str
    index: int
    status: KeyStatus = KeyStatus.ACTIVE
    last_used: float | None = None
    last_error: str | None = None
    failure_count: int = 0
    available_at: float = 0.0  # monotonic time when an exhausted key recovers

    def is_available(self, now: float | None = None) -> bool:
        if self.status == KeyStatus.ACTIVE:
            return True
        if self.status == KeyStatus.EXHAUSTED:
            now = time.monotonic() if now is None else now
            if now >= self.available_at:
                self.status = KeyStatus.ACTIVE
                return True
        return False

    def mark_failed(self, error: str) -> None:
        self.status = KeyStatus.FAILED
        self.last_error = error
        self.failure_count += 1

    def mark_exhausted(self, cooldown: float) -> None:
        self.status = KeyStatus.EXHAUSTED
        self.last_error = "Rate limit exceeded"
        self.failure_count += 1
        self.available_at = time.monotonic() + cooldown

    def mark_used(self) -> None:
        self.last_used = time.monotonic()

    def reset(self) -> None:
        self.status = KeyStatus.ACTIVE
        self.last_error = None
        self.failure_count = 0
        self.available_at = 0.0


class ApiKeyPool:
    """Rotating set of keys for a single provider.

    Usage:
        pool = ApiKeyPool("openai", ["sk-1", "sk-2"])
        key = pool.acquire(exclude=tried)
        ...
        pool.report_rate_limited(key)
    """

    def __init__(self, provider_id: str, keys: Iterable[str], cooldown_seconds: float = 60.0):
        self.provider_id = provider_id
        self.cooldown_seconds = cooldown_seconds
        self._keys: list[ApiKeyInfo] = [
            ApiKeyInfo(key=k.strip(), index=i) for i, k in enumerate(k for k in keys if k and k.strip())
        ]
        self._current = 0

    @property
    def size(self) -> int:
        return len(self._keys)

    def acquire(self, exclude: set[str] | None = None) -> str | None:
        """Next available key from the current index, skipping ``exclude``.

        Returns None when no key is left.
        """
        exclude = exclude or set()
        now = time.monotonic()
        for offset in range(len(self._keys)):
            index = (self._current + offset) % len(self._keys)
            info = self._keys[index]
            if info.key in exclude or not info.is_available(now):
                continue
            self._current = index
            info.mark_used()
            return info.key
        return None

    def _find(self, key: str) -> ApiKeyInfo | None:
        for info in self._keys:
            if info.key == key:
                return info
        return None

    def _advance(self, info: ApiKeyInfo, reason: str) -> None:
        self._current = (info.index + 1) % len(self._keys)
        KEY_ROTATIONS.labels(provider=self.provider_id, reason=reason).inc()
        logger.warning(
            "Rotated %s from key #%d (%s) after %s",
            self.provider_id,
            info.index,
            mask_key(info.key),
            reason,
            extra={"provider": self.provider_id},
        )

    def report_success(self, key: str) -> None:
        info = self._find(key)
        if info is not None and info.status == KeyStatus.EXHAUSTED:
            info.reset()

    def report_rate_limited(self, key: str) -> None:
        info = self._find(key)
        if info is None:
            return
        info.mark_exhausted(self.cooldown_seconds)
        self._advance(info, "rate_limited")

    def report_rejected(self, key: str, error: str) -> None:
        info = self._find(key)
        if info is None:
            return
        info.mark_failed(error)
        self._advance(info, "rejected")

    def report_transient(self, key: str, error: str) -> None:
        info = self._find(key)
        if info is None:
            return
        info.last_error = error
        info.failure_count += 1
        self._advance(info, "transient")

    def reset(self) -> None:
        for info in self._keys:
            info.reset()
        self._current = 0

    def stats(self) -> dict:
        now = time.monotonic()
        return {
            "provider": self.provider_id,
            "total_keys": len(self._keys),
            "available_keys": sum(1 for k in self._keys if k.is_available(now)),
            "failed_keys": sum(1 for k in self._keys if k.status == KeyStatus.FAILED),
            "exhausted_keys": sum(1 for k in self._keys if k.status == KeyStatus.EXHAUSTED),
            "current_index": self._current,
            "current_key": mask_key(self._keys[self._current].key) if self._keys else None,
        }


class KeyManager:
    """Holds one ApiKeyPool per provider.

    Providers with no configured keys get an empty pool, which the
    dispatcher treats as exhausted from the first attempt.
    """

    def __init__(self, keys: Mapping[str, Iterable[str]] | None = None, cooldown_seconds: float = 60.0):
        self.cooldown_seconds = cooldown_seconds
        self._pools: dict[str, ApiKeyPool] = {}
        for provider_id, provider_keys in (keys or {}).items():
            self.set_keys(provider_id, provider_keys)

    @classmethod
    def from_settings(cls, settings, provider_ids: Iterable[str]) -> KeyManager:
        return cls(
            {pid: settings.api_keys_for(pid) for pid in provider_ids},
            cooldown_seconds=settings.key_cooldown_seconds,
        )

    def set_keys(self, provider_id: str, keys: Iterable[str]) -> None:
        pid = provider_id.strip().lower()
        self._pools[pid] = ApiKeyPool(pid, keys, cooldown_seconds=self.cooldown_seconds)
        logger.info("Loaded %d key(s) for %s", self._pools[pid].size, pid)

    def pool(self, provider_id: str) -> ApiKeyPool:
        pid = provider_id.strip().lower()
        if pid not in self._pools:
            self._pools[pid] = ApiKeyPool(pid, [], cooldown_seconds=self.cooldown_seconds)
        return self._pools[pid]

    def stats(self) -> dict[str, dict]:
        return {pid: pool.stats() for pid, pool in self._pools.items()}
