"""Operation-keyed retry state with exponential backoff and a circuit breaker.

Every mailbox operation runs through :meth:`RetryManager.execute_with_retry`
under a key such as ``imap:<department_id>``. Transient transport failures are
retried with growing delays; once a key has failed ``max_retries`` times in a
row it is blocked until :meth:`RetryManager.reset_retry_state` is called.

State lives in memory for the life of the process. All mutation happens in
synchronous methods, so tasks sharing the event loop never observe a
half-updated state.
"""
from __future__ import annotations

import asyncio
import errno
import random
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

from helpdesk.core.config import get_settings
from helpdesk.core.logging import log_info, log_warning

T = TypeVar("T")

RETRYABLE_ERROR_CODES: frozenset[str] = frozenset(
    {
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "EHOSTUNREACH",
        "ENETUNREACH",
        "EAI_AGAIN",
        "IMAP_TIMEOUT",
        "IMAP_CONNECTION_LOST",
    }
)


class RetryBlockedError(Exception):
    """Raised when an operation key is circuit-broken."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Operation {key} is blocked after repeated failures")
        self.key = key


class RetryExhaustedError(Exception):
    """Raised when the final permitted attempt for a key fails."""

    def __init__(self, key: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Operation {key} failed after {attempts} attempts. Last error: {last_error}"
        )
        self.key = key
        self.attempts = attempts
        self.last_error = last_error


def transport_error_code(exc: BaseException) -> str | None:
    """Derive a symbolic error code from a network or socket exception."""
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    if isinstance(exc, socket.gaierror):
        if exc.errno == getattr(socket, "EAI_AGAIN", None):
            return "EAI_AGAIN"
        return "ENOTFOUND"
    if isinstance(exc, TimeoutError):
        return "ETIMEDOUT"
    if isinstance(exc, OSError) and exc.errno is not None:
        return errno.errorcode.get(exc.errno)
    return None


def is_retryable_error(exc: BaseException) -> bool:
    code = transport_error_code(exc) or ""
    haystack = f"{code} {exc}".upper()
    return any(candidate in haystack for candidate in RETRYABLE_ERROR_CODES)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        settings = get_settings()
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_ms / 1000,
            max_delay=settings.retry_max_delay_ms / 1000,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_factor=settings.retry_jitter_factor,
        )


@dataclass
class RetryAttempt:
    attempt: int
    delay: float
    timestamp: datetime
    error: str | None = None


@dataclass
class RetryState:
    attempts: list[RetryAttempt] = field(default_factory=list)
    next_retry_at: datetime | None = None
    blocked: bool = False
    consecutive_failures: int = 0


class RetryManager:
    def __init__(self, config: RetryConfig | None = None) -> None:
        self.config = config or RetryConfig.from_settings()
        self._states: dict[str, RetryState] = {}

    def get_state(self, key: str) -> RetryState | None:
        return self._states.get(key)

    def calculate_delay(self, attempt: int) -> float:
        """Backoff for the given 1-based attempt, capped, plus up to ``jitter_factor`` of jitter."""
        exponential = self.config.base_delay * (
            self.config.backoff_multiplier ** (attempt - 1)
        )
        capped = min(exponential, self.config.max_delay)
        return capped + capped * self.config.jitter_factor * random.random()

    def can_retry(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None:
            return True
        if state.blocked:
            return False
        if len(state.attempts) >= self.config.max_retries:
            return False
        if state.next_retry_at and datetime.now(timezone.utc) < state.next_retry_at:
            return False
        return True

    def record_attempt(self, key: str, error: BaseException | None = None) -> RetryAttempt:
        state = self._states.setdefault(key, RetryState())
        number = len(state.attempts) + 1
        delay = self.calculate_delay(number)
        now = datetime.now(timezone.utc)
        attempt = RetryAttempt(
            attempt=number,
            delay=delay,
            timestamp=now,
            error=str(error) if error is not None else None,
        )

        if error is None:
            self.reset_retry_state(key)
            return attempt

        state.attempts.append(attempt)
        state.consecutive_failures += 1
        state.next_retry_at = now + timedelta(seconds=delay)
        if number >= self.config.max_retries:
            state.blocked = True
            log_warning("Operation blocked after repeated failures", key=key, attempts=number)
        return attempt

    def get_time_until_next_retry(self, key: str) -> float:
        state = self._states.get(key)
        if state is None or state.next_retry_at is None:
            return 0.0
        remaining = (state.next_retry_at - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, remaining)

    def reset_retry_state(self, key: str) -> None:
        if key in self._states:
            self._states[key] = RetryState()

    def clear_retry_state(self, key: str) -> None:
        self._states.pop(key, None)

    async def execute_with_retry(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> T:
        state = self._states.get(key)
        if state is not None and (
            state.blocked or len(state.attempts) >= self.config.max_retries
        ):
            raise RetryBlockedError(key)
        wait = self.get_time_until_next_retry(key)
        if wait > 0:
            await asyncio.sleep(wait)

        while True:
            try:
                result = await operation()
            except Exception as exc:
                if not is_retryable_error(exc):
                    raise
                attempt = self.record_attempt(key, exc)
                if attempt.attempt >= self.config.max_retries:
                    raise RetryExhaustedError(key, attempt.attempt, exc) from exc
                if on_retry is not None:
                    on_retry(attempt.attempt, exc, attempt.delay)
                log_warning(
                    "Retryable operation failed",
                    key=key,
                    attempt=attempt.attempt,
                    max_retries=self.config.max_retries,
                    delay=round(attempt.delay, 3),
                    error=str(exc),
                )
                await asyncio.sleep(attempt.delay)
                continue
            self.record_attempt(key)
            return result

    def get_retry_stats(self) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        for key, state in self._states.items():
            last_attempt = state.attempts[-1] if state.attempts else None
            average_delay = (
                sum(attempt.delay for attempt in state.attempts) / len(state.attempts)
                if state.attempts
                else 0.0
            )
            stats[key] = {
                "total_attempts": len(state.attempts),
                "consecutive_failures": state.consecutive_failures,
                "blocked": state.blocked,
                "next_retry_at": state.next_retry_at,
                "last_attempt_at": last_attempt.timestamp if last_attempt else None,
                "last_error": last_attempt.error if last_attempt else None,
                "average_delay": average_delay,
            }
        return stats

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Forget keys whose latest attempt is older than ``max_age`` seconds."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age)
        stale = [
            key
            for key, state in self._states.items()
            if state.attempts and state.attempts[-1].timestamp < cutoff
        ]
        for key in stale:
            del self._states[key]
        if stale:
            log_info("Purged stale retry state", keys=len(stale))
        return len(stale)


retry_manager = RetryManager()
