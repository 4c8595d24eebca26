"""Prometheus metrics for provider dispatch and the content cache."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("ai_gateway", "AI provider gateway info")
APP_INFO.info({"version": "1.0.0", "name": "ai_gateway"})

DISPATCH_REQUESTS = Counter(
    "ai_dispatch_requests_total",
    "Provider calls made by the dispatcher",
    ["provider", "capability", "status"],
)

DISPATCH_DURATION = Histogram(
    "ai_dispatch_duration_seconds",
    "Provider call duration in seconds",
    ["provider", "capability"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

DISPATCH_RETRIES = Counter(
    "ai_dispatch_retries_total",
    "Retries and failovers performed by the dispatcher",
    ["provider", "reason"],
)

CACHE_LOOKUPS = Counter(
    "ai_cache_lookups_total",
    "Content cache lookups",
    ["tier", "result"],
)

KEY_ROTATIONS = Counter(
    "ai_key_rotations_total",
    "API key rotations per provider",
    ["provider", "reason"],
)


def metrics_text() -> bytes:
    """Render all collectors in the Prometheus text exposition format."""
    return generate_latest()
