"""AI provider unification layer.

One capability-oriented entry point over several AI backends:
  - Provider Registry (provider id → constructor, model → owner)
  - Providers (OpenAI, Google, xAI, on-device speech)
  - Retryable Dispatcher (key rotation, failover, circuit breaker)
  - Response Normalizer (JSON extraction from narrative text)
  - Content Cache (memory + disk, content-addressed)
"""
