"""Provably fair randomness.

Every draw a round makes comes from ``SeededStream``: HMAC-SHA256 keyed by
the round seed over ``"<label>:<counter>"``. The stream is a pure function of
(seed, label), so a revealed seed lets anyone replay the round.
"""

import hashlib
import hmac
import secrets
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def hmac_sha256(key: str, msg: str) -> str:
    return hmac.new(key.encode(), msg.encode(), hashlib.sha256).hexdigest()

def random_seed(length: int = 64) -> str:
    return secrets.token_hex(length // 2)

def hash_seed(seed: str) -> str:
    return hashlib.sha256(seed.encode()).hexdigest()


class SeededStream:
    def __init__(self, seed: str, label: str = ""):
        if not seed:
            raise ValueError("seed must be a non-empty string")
        self.seed = seed
        self.label = label
        self._counter = 0
        self._buffer = b""

    def _take(self, n: int) -> bytes:
        while len(self._buffer) < n:
            block = hmac.new(
                self.seed.encode(),
                f"{self.label}:{self._counter}".encode(),
                hashlib.sha256,
            ).digest()
            self._counter += 1
            self._buffer += block
        out, self._buffer = self._buffer[:n], self._buffer[n:]
        return out

    def randbits32(self) -> int:
        return int.from_bytes(self._take(4), "big")

    def uniform(self) -> float:
        """Uniform float in [0, 1) with 53 bits of precision."""
        return (int.from_bytes(self._take(7), "big") >> 3) / float(1 << 53)

    def randbelow(self, n: int) -> int:
        """Unbiased integer in [0, n) by rejection sampling."""
        if n <= 0:
            raise ValueError("n must be positive")
        bits = n.bit_length()
        nbytes = (bits + 7) // 8
        while True:
            r = int.from_bytes(self._take(nbytes), "big") >> (nbytes * 8 - bits)
            if r < n:
                return r

    def weighted_index(self, weights: Sequence[int]) -> int:
        total = sum(weights)
        if total <= 0 or any(w < 0 for w in weights):
            raise ValueError("weights must be non-negative with a positive sum")
        pick = self.randbelow(total)
        cumulative = 0
        for i, w in enumerate(weights):
            cumulative += w
            if pick < cumulative:
                return i
        return len(weights) - 1

    def shuffle(self, items: Sequence[T]) -> List[T]:
        out = list(items)
        for i in range(len(out) - 1, 0, -1):
            j = self.randbelow(i + 1)
            out[i], out[j] = out[j], out[i]
        return out
