import random
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential backoff with additive jitter.

    delay(n) = min(cap, max(base * factor**n, retry_after)) + U(0, delay * jitter)

    `attempt` is zero-based: the wait after the first failure is delay(0).
    `max_attempts` counts total calls, including the first.
    """

    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    jitter: float = 0.1
    max_attempts: int = 4

    def delay(
        self,
        attempt: int,
        *,
        retry_after: float | None = None,
        rng: random.Random | None = None,
    ) -> float:
        raw = self.base * (self.factor ** max(0, attempt))
        if retry_after is not None and retry_after > raw:
            raw = retry_after

        delay = min(self.cap, raw)

        if self.jitter > 0:
            source = rng or random
            delay += source.uniform(0, delay * self.jitter)

        return delay

    def exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None, **defaults: Any) -> "BackoffPolicy":
        """
        Build a policy from a config block, e.g. the `polling` section:
        backoff_base_seconds, backoff_factor, backoff_cap_seconds, jitter,
        max_attempts. Missing keys fall back to `defaults`, then class defaults.
        """
        cfg = cfg or {}
        resolved: Dict[str, Any] = dict(defaults)

        mapping = {
            "backoff_base_seconds": "base",
            "backoff_factor": "factor",
            "backoff_cap_seconds": "cap",
            "jitter": "jitter",
            "max_attempts": "max_attempts",
        }
        for key, field_name in mapping.items():
            if key in cfg and cfg[key] is not None:
                resolved[field_name] = cfg[key]

        policy = cls(**resolved)
        if policy.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        return policy
