"""Security utilities for rate limiting and input validation."""
from .input_validator import (
    InputValidator,
    MedicalCodeType,
    RuleType,
    ValidationError,
    ValidationResult,
    ValidationRule,
    get_input_validator,
)
from .rate_limiter import (
    HealthcarePresets,
    LimitSnapshot,
    PRESETS,
    RateLimitConfig,
    RateLimitExceeded,
    RateLimitStatus,
    RateLimiter,
    get_preset,
    get_rate_limiter,
    rate_limited,
)
from .storage import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore

__all__ = [
    "InputValidator",
    "MedicalCodeType",
    "RuleType",
    "ValidationError",
    "ValidationResult",
    "ValidationRule",
    "get_input_validator",
    "HealthcarePresets",
    "LimitSnapshot",
    "PRESETS",
    "RateLimitConfig",
    "RateLimitExceeded",
    "RateLimitStatus",
    "RateLimiter",
    "get_preset",
    "get_rate_limiter",
    "rate_limited",
    "FileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
]
