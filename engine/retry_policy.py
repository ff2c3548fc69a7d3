"""Exponential-backoff retry policy with a delay cap."""

from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from typing import Any, Callable, Coroutine, Dict, Optional, Tuple, Type

from .config import EngineConfig
from .telemetry import get_logger

_logger = get_logger(__name__)


class RetryPolicy:
    """Retry failed async probe attempts with capped exponential back-off.

    back-off delay before retry *i* (0-indexed):
        ``min(cap, base × multiplier^i) × (1 + uniform(−jitter, jitter))``
    """

    def __init__(self, config: EngineConfig) -> None:
        self.max_attempts = config.probe_max_attempts
        self.backoff_base = config.retry_backoff_base
        self.backoff_multiplier = config.retry_backoff_multiplier
        self.backoff_cap = config.retry_backoff_cap
        self.jitter = config.retry_jitter
        self._retry_counts: Dict[str, int] = defaultdict(int)

    def calculate_backoff(self, attempt: int) -> float:
        """Return the delay in seconds before retry *attempt* (0-indexed).

        Args:
            attempt: Zero-based retry index (0 = first retry).

        Returns:
            Delay in seconds, never above ``backoff_cap``.
        """
        delay = min(self.backoff_cap, self.backoff_base * (self.backoff_multiplier ** attempt))
        jitter_factor = 1.0 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, min(self.backoff_cap, delay * jitter_factor))

    async def execute_with_retry(
        self,
        func: Callable[[], Coroutine[Any, Any, Any]],
        label: str,
        *,
        max_attempts: Optional[int] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        extra: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call *func* up to *max_attempts* times.

        Args:
            func: Zero-argument async callable producing one attempt.
            label: Probe/action label (for logging and stats).
            max_attempts: Overrides the configured attempt budget.
            retry_on: Exception types that trigger a retry; anything else
                propagates immediately.
            extra: Additional log context.

        Returns:
            Result of the first successful attempt.

        Raises:
            The last exception if all attempts fail.
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        last_exc: BaseException | None = None
        log_extra = dict(extra or {})

        for attempt in range(attempts):
            try:
                return await func()
            except retry_on as exc:
                last_exc = exc
                if attempt < attempts - 1:
                    delay = self.calculate_backoff(attempt)
                    self._retry_counts[label] += 1
                    _logger.info(
                        f"Retry {attempt + 1}/{attempts - 1} for {label} "
                        f"(backoff {delay:.2f}s): {exc}",
                        extra=log_extra,
                    )
                    await asyncio.sleep(delay)
                else:
                    _logger.warning(
                        f"Max attempts ({attempts}) exhausted for {label}",
                        extra=log_extra,
                    )

        raise last_exc  # type: ignore[misc]

    def get_retry_stats(self) -> Dict[str, int]:
        """Return mapping of label → retry count."""
        return dict(self._retry_counts)

    def reset_stats(self) -> None:
        """Clear retry statistics."""
        self._retry_counts.clear()
