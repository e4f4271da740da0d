"""Shared constants used by resilience_core failure classification."""

RATE_LIMIT_STATUS = 429
TIMEOUT_STATUS = 408
SERVER_ERROR_MIN_STATUS = 500
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "quota", "429")
DEFAULT_TIMEOUT_MESSAGE = "Operation timed out"
