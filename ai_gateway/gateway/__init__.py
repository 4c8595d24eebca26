"""AI Provider Gateway Layer.

Unifies several AI provider APIs behind capability-oriented calls:
  - Provider Registry (provider ids, model ownership)
  - Credential pools (API key rotation per provider)
  - Rate Limiter and Circuit Breaker (backoff with jitter)
  - Response Normalizer (JSON embedded in model text)
  - Content Cache (memory + disk, content-addressed)
  - Retryable Dispatcher and the AIClient facade
"""
