"""Sliding-window rate limiting with persisted attempt history."""

import asyncio
import functools
import inspect
import json
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from config.settings import settings
from .storage import FileKeyValueStore, KeyValueStore


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

_log = logger.bind(component="RateLimiter")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """One logical rate-limited action class."""
    max_requests: int
    window_ms: int
    identifier: str
    message: Optional[str] = None
    skip: Optional[Callable[[], bool]] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {self.max_requests}")
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {self.window_ms}")
        if not self.identifier:
            raise ValueError("identifier cannot be empty")


@dataclass(frozen=True)
class RateLimitAttempt:
    """A single recorded attempt."""
    timestamp: int
    identifier: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any, identifier: str) -> Optional["RateLimitAttempt"]:
        """Build an attempt from its persisted shape, or None if unusable."""
        if not isinstance(data, dict):
            return None
        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            return None
        return cls(timestamp=int(timestamp), identifier=str(data.get("identifier") or identifier))


@dataclass
class RateLimitStatus:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: int
    total_requests: int
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LimitSnapshot:
    """Read-only view of a limit, without recording an attempt."""
    remaining: int
    reset_time: int
    total_requests: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateLimitExceeded(Exception):
    """Raised by ``rate_limited`` wrappers when a call is denied."""
    def __init__(self, status: RateLimitStatus):
        self.status = status
        super().__init__(status.message or "Rate limit exceeded")


class HealthcarePresets:
    """Fixed rate limits for the platform's sensitive operations."""

    PATIENT_DATA_ACCESS = RateLimitConfig(
        max_requests=10,
        window_ms=1 * MINUTE_MS,
        identifier="patient-data-access",
        message="Too many patient data requests. Please wait before accessing more records."
    )

    SEARCH_OPERATIONS = RateLimitConfig(
        max_requests=30,
        window_ms=1 * MINUTE_MS,
        identifier="search-operations",
        message="Too many search requests. Please wait before searching again."
    )

    FILE_UPLOADS = RateLimitConfig(
        max_requests=5,
        window_ms=5 * MINUTE_MS,
        identifier="file-uploads",
        message="Upload limit reached. Please wait before uploading more files."
    )

    API_CALLS = RateLimitConfig(
        max_requests=100,
        window_ms=1 * MINUTE_MS,
        identifier="api-calls",
        message="Too many API requests. Please slow down."
    )

    AUTH_ATTEMPTS = RateLimitConfig(
        max_requests=5,
        window_ms=15 * MINUTE_MS,
        identifier="auth-attempts",
        message="Too many authentication attempts. Please wait 15 minutes before trying again."
    )

    PASSWORD_RESET = RateLimitConfig(
        max_requests=3,
        window_ms=1 * HOUR_MS,
        identifier="password-reset",
        message="Too many password reset requests. Please wait 1 hour before trying again."
    )


PRESETS: Dict[str, RateLimitConfig] = {
    "patient_data_access": HealthcarePresets.PATIENT_DATA_ACCESS,
    "search_operations": HealthcarePresets.SEARCH_OPERATIONS,
    "file_uploads": HealthcarePresets.FILE_UPLOADS,
    "api_calls": HealthcarePresets.API_CALLS,
    "auth_attempts": HealthcarePresets.AUTH_ATTEMPTS,
    "password_reset": HealthcarePresets.PASSWORD_RESET,
}


def get_preset(name: str) -> RateLimitConfig:
    """Look up a preset configuration by name."""
    try:
        return PRESETS[name]
    except KeyError:
        raise ValueError(f"Unknown rate limit preset: {name}. Available: {', '.join(PRESETS)}") from None


class RateLimiter:
    """
    Per-identifier sliding-window rate limiter.

    Attempts are kept in memory as a cache over the persisted store: every
    mutation is written back under a single key, and a fresh instance picks
    up where the previous one left off. Checks are synchronous; only the
    periodic sweep runs as an asyncio task.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], int]] = None,
        storage_key: Optional[str] = None,
        sweep_interval_ms: Optional[int] = None,
        max_retention_ms: Optional[int] = None,
        known_configs: Optional[Iterable[RateLimitConfig]] = None
    ):
        self.store = store if store is not None else FileKeyValueStore(settings.storage_dir)
        self.storage_key = storage_key or settings.storage_key
        self.sweep_interval_ms = sweep_interval_ms or settings.sweep_interval_ms
        self.max_retention_ms = max_retention_ms or settings.max_retention_ms
        self._clock = clock or _now_ms

        self.attempts: Dict[str, List[RateLimitAttempt]] = {}

        # Largest window seen per identifier, so the sweep never prunes inside a live window
        self._windows: Dict[str, int] = {}
        for config in list(PRESETS.values()) + list(known_configs or []):
            self._observe_window(config)

        self._initialized = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def total_attempts(self) -> int:
        return sum(len(attempts) for attempts in self.attempts.values())

    def initialize(self) -> None:
        """
        Load persisted attempts, sweep expired ones and schedule the
        periodic sweep. Safe to call any number of times.
        """
        if not self._initialized:
            self.attempts = self._load()
            self._initialized = True
            self.sweep()

            _log.bind(
                stored_limits=len(self.attempts),
                total_attempts=self.total_attempts
            ).info(f"Rate limiter initialized with {len(self.attempts)} stored limits")

        self._schedule_sweep()

    async def start(self):
        """Initialize from inside the event loop so the sweep task gets scheduled."""
        self.initialize()
        _log.info("Rate limiter cleanup task started")

    async def stop(self):
        """Stop the sweep task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        _log.info("Rate limiter stopped")

    def check_limit(self, config: RateLimitConfig) -> RateLimitStatus:
        """
        Check whether an action may proceed and record it if so.

        Args:
            config: Rate limit configuration

        Returns:
            RateLimitStatus; a denial is reported through ``allowed``,
            never raised
        """
        # Window first, so a lazy load does not sweep inside it
        self._observe_window(config)
        self._ensure_initialized()

        if config.skip is not None and config.skip():
            return RateLimitStatus(
                allowed=True,
                remaining=config.max_requests,
                reset_time=0,
                total_requests=0
            )

        now = self._clock()
        valid_attempts, remaining, reset_time = self._evaluate(config, now)
        allowed = len(valid_attempts) < config.max_requests

        status = RateLimitStatus(
            allowed=allowed,
            remaining=remaining - 1 if allowed else remaining,
            reset_time=reset_time,
            total_requests=len(valid_attempts),
            message=None if allowed else config.message
        )

        if allowed:
            valid_attempts.append(RateLimitAttempt(timestamp=now, identifier=config.identifier))
            self.attempts[config.identifier] = valid_attempts
            self._persist()

            _log.bind(
                identifier=config.identifier,
                remaining=status.remaining,
                total_requests=status.total_requests
            ).debug(f"Rate limit checked - allowed: {config.identifier}")
        else:
            _log.bind(
                identifier=config.identifier,
                max_requests=config.max_requests,
                window_ms=config.window_ms,
                total_requests=status.total_requests,
                reset_time=status.reset_time
            ).warning(f"Rate limit exceeded: {config.identifier}")

        return status

    def get_status(self, config: RateLimitConfig) -> LimitSnapshot:
        """Current status for a config without recording an attempt."""
        self._observe_window(config)
        self._ensure_initialized()

        valid_attempts, remaining, reset_time = self._evaluate(config, self._clock())
        return LimitSnapshot(
            remaining=remaining,
            reset_time=reset_time,
            total_requests=len(valid_attempts)
        )

    def reset_limit(self, identifier: str) -> None:
        """Forget every attempt recorded for an identifier."""
        self._ensure_initialized()
        self.attempts.pop(identifier, None)
        self._persist()

        _log.bind(identifier=identifier).info(f"Rate limit reset: {identifier}")

    def clear_all(self) -> None:
        """Drop all attempts and the persisted data."""
        self.attempts.clear()
        self._initialized = True
        self._schedule_sweep()

        try:
            self.store.remove(self.storage_key)
        except Exception as e:
            _log.bind(error=str(e)).warning(f"Failed to remove persisted rate limits: {e}")

        _log.info("All rate limit data cleared")

    def sweep(self) -> int:
        """
        Drop attempts past their retention and remove empty identifiers.

        Returns:
            Number of attempts removed
        """
        self._ensure_initialized()
        cutoff_base = self._clock()
        cleaned = 0

        for identifier in list(self.attempts.keys()):
            attempts = self.attempts[identifier]
            cutoff = cutoff_base - max(self.max_retention_ms, self._windows.get(identifier, 0))
            valid_attempts = [a for a in attempts if a.timestamp > cutoff]

            if len(valid_attempts) != len(attempts):
                cleaned += len(attempts) - len(valid_attempts)
                if valid_attempts:
                    self.attempts[identifier] = valid_attempts
                else:
                    del self.attempts[identifier]

        if cleaned > 0:
            self._persist()
            _log.bind(cleaned=cleaned, remaining=len(self.attempts)).debug(
                f"Cleaned up {cleaned} expired rate limit attempts"
            )

        return cleaned

    def is_exempt(self, user_id: str, exempt_ids: List[str]) -> bool:
        """Check if a user is staff and exempt from rate limits."""
        return user_id in exempt_ids

    def format_limit_message(self, status: RateLimitStatus) -> str:
        """Format a user-friendly cooldown message."""
        retry_after = math.ceil(status.reset_time / 1000)
        minutes, seconds = divmod(retry_after, 60)

        if minutes > 0:
            time_str = f"{minutes}m {seconds}s"
        else:
            time_str = f"{seconds}s"

        reason = status.message or "Rate limit exceeded."
        return f"{reason} Please try again in {time_str}."

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    def _observe_window(self, config: RateLimitConfig) -> None:
        current = self._windows.get(config.identifier, 0)
        if config.window_ms > current:
            self._windows[config.identifier] = config.window_ms

    def _evaluate(self, config: RateLimitConfig, now: int) -> Tuple[List[RateLimitAttempt], int, int]:
        """Return (valid attempts, remaining, reset time) for a config at ``now``."""
        window_start = now - config.window_ms
        attempts = self.attempts.get(config.identifier, [])
        valid_attempts = [a for a in attempts if a.timestamp > window_start]

        remaining = max(0, config.max_requests - len(valid_attempts))

        if valid_attempts:
            oldest = min(a.timestamp for a in valid_attempts)
            reset_time = max(0, oldest + config.window_ms - now)
        else:
            reset_time = 0

        return valid_attempts, remaining, reset_time

    def _schedule_sweep(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; start() schedules the task later
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self):
        """Periodic sweep of expired attempts."""
        while True:
            try:
                await asyncio.sleep(self.sweep_interval_ms / 1000)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                _log.error(f"Rate limiter sweep error: {e}")

    def _load(self) -> Dict[str, List[RateLimitAttempt]]:
        """Read the persisted store. Anything unreadable counts as empty."""
        try:
            raw = self.store.get(self.storage_key)
        except Exception as e:
            _log.bind(error=str(e)).warning(f"Failed to read persisted rate limits: {e}")
            return {}

        if not raw:
            return {}

        try:
            data = json.loads(raw)
        except ValueError as e:
            _log.bind(error=str(e)).warning("Persisted rate limits are corrupt, starting empty")
            return {}

        if not isinstance(data, dict):
            _log.warning("Persisted rate limits have an unexpected shape, starting empty")
            return {}

        attempts: Dict[str, List[RateLimitAttempt]] = {}
        for identifier, entries in data.items():
            if not isinstance(entries, list):
                continue
            parsed = [RateLimitAttempt.from_dict(entry, identifier) for entry in entries]
            parsed = [a for a in parsed if a is not None]
            if parsed:
                # Stable sort keeps insertion order between equal timestamps
                parsed.sort(key=lambda a: a.timestamp)
                attempts[identifier] = parsed

        return attempts

    def _persist(self) -> bool:
        """
        Write the whole store under the storage key.

        Returns:
            True if written; failures are logged and the limiter keeps
            working in memory only
        """
        try:
            payload = json.dumps({
                identifier: [a.to_dict() for a in attempts]
                for identifier, attempts in self.attempts.items()
            })
            self.store.set(self.storage_key, payload)
            return True
        except Exception as e:
            _log.bind(error=str(e)).warning(f"Failed to persist rate limit attempts: {e}")
            return False


def rate_limited(limiter: RateLimiter, config: RateLimitConfig):
    """
    Decorator that checks ``config`` before each call and raises
    RateLimitExceeded when the call is denied. Works on plain and
    async callables.
    """
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                status = limiter.check_limit(config)
                if not status.allowed:
                    raise RateLimitExceeded(status)
                return await func(*args, **kwargs)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            status = limiter.check_limit(config)
            if not status.allowed:
                raise RateLimitExceeded(status)
            return func(*args, **kwargs)
        return wrapper

    return decorator


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
