"""
Bounded exponential backoff with full jitter.

delay(attempt) = uniform(0, min(max_delay, base_delay * 2**attempt))

Used for persistence writes: a bounded number of attempts, then the last
error propagates to the caller, which decides how to fail.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "RetryPolicy":
        cfg = cfg or {}
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", 3))),
            base_delay=float(cfg.get("base_delay_seconds", 0.1)),
            max_delay=float(cfg.get("max_delay_seconds", 2.0)),
        )

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Full-jitter delay before retry number `attempt` (0-based)."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** attempt))
        return (rng or random).uniform(0, ceiling)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds or the policy's attempts are exhausted.

    Raises:
        The last exception from fn once every attempt has failed
    """
    for attempt in range(policy.max_attempts):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts - 1:
                logger.error(f"{description} failed after {policy.max_attempts} attempts: {exc}")
                raise
            backoff = policy.delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}): {exc}; "
                f"retrying in {backoff:.2f}s"
            )
            sleep(backoff)
    raise RuntimeError(f"{description}: retry policy allows no attempts")  # pragma: no cover
