from __future__ import annotations

import random
import secrets
from typing import Any, Sequence


class RandomSource:
    """Random draws backed by the OS CSPRNG, or a seeded PRNG for tests."""

    def __init__(self, seed: int | None = None) -> None:
        self.seeded = seed is not None
        self._rng: random.Random = random.Random(seed) if seed is not None else secrets.SystemRandom()

    def int_between(self, low: int, high: int) -> int:
        """Uniform integer in ``[low, high]``, both inclusive."""
        return low + self._rng.randrange(high - low + 1)

    def below(self, n: int) -> int:
        return self._rng.randrange(n)

    def fraction(self) -> float:
        """Uniform float in ``[0, 1)``."""
        return self._rng.random()

    def token_bytes(self, n: int) -> bytes:
        return self._rng.getrandbits(8 * n).to_bytes(n, "big")

    def shuffled(self, items: Sequence[Any]) -> list[Any]:
        """Fisher-Yates shuffle of a copy of *items*."""
        out = list(items)
        for i in range(len(out) - 1, 0, -1):
            j = self._rng.randrange(i + 1)
            out[i], out[j] = out[j], out[i]
        return out
