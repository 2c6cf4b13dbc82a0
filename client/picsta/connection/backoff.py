"""Exponential backoff with bounded jitter for reconnect attempts."""
import random
from typing import Optional


class Backoff:
    """Delay schedule ``initial * multiplier ** attempt``, capped at ``maximum``.

    Each delay is spread by up to ``jitter`` (a fraction of the delay) in
    either direction so that many clients dropped at once do not reconnect
    in lockstep. The jittered delay never exceeds ``maximum``.

    Args:
        initial: First delay in seconds.
        maximum: Upper bound for any delay.
        multiplier: Growth factor per attempt.
        jitter: Fraction in ``[0, 1)``.
        rng: Random source (tests pass a seeded ``random.Random``).
    """

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None,
    ) -> None:
        if initial <= 0 or maximum < initial:
            raise ValueError("backoff needs 0 < initial <= maximum")
        if multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("backoff jitter must be in [0, 1)")
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.jitter = jitter
        self._rng = rng or random.Random()
        self.attempts = 0

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay for ``attempt`` (0-based)."""
        # Stop growing once the cap is reached (avoids float overflow).
        delay = self.initial
        for _ in range(attempt):
            delay *= self.multiplier
            if delay >= self.maximum:
                return self.maximum
        return min(delay, self.maximum)

    def next_delay(self) -> float:
        delay = self.base_delay(self.attempts)
        self.attempts += 1
        if self.jitter:
            spread = delay * self.jitter
            delay += self._rng.uniform(-spread, spread)
        return max(0.0, min(delay, self.maximum))

    def reset(self) -> None:
        self.attempts = 0
