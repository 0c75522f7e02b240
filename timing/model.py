"""
Timing Model — Turns message size and a persona into human-like delays.

Stages (all milliseconds):
  read           time to "see" and read the inbound message (never under 700)
  comprehension  think time, grows with the inbound token count
  write          composing time, grows with the reply length
  type           visible typing time at the persona's typing speed
  jitter         flat random noise
  pauses         optional hesitation bursts

Every range sample is drawn from a Lehmer generator seeded from a string key,
so the same (tenant, thread, message) always yields the same Timing.
"""
from __future__ import annotations

import math
import random
from typing import Callable

from models.schemas import PersonaProfile, Timing

MODULUS = 2_147_483_647           # 2^31 - 1
MULTIPLIER = 48_271
MIN_READ_MS = 700
MAX_TOTAL_MS = 45_000


def seed_from_key(seed_key: str) -> int:
    """
    Fold the UTF-16 code units of a key into a 32-bit seed, starting from 1.

    Characters outside the Basic Multilingual Plane count as their two
    surrogate units, so seeds match producers that hash UTF-16 strings.
    """
    data = seed_key.encode("utf-16-le")
    seed = 1
    for i in range(0, len(data), 2):
        unit = int.from_bytes(data[i:i + 2], "little")
        seed = (seed * 31 + unit) % 2**32
    return seed


class LehmerRandom:
    """Park–Miller minimal-standard generator yielding floats in [0, 1)."""

    def __init__(self, seed: int):
        seed %= MODULUS
        self._state = seed or 1

    def __call__(self) -> float:
        self._state = (self._state * MULTIPLIER) % MODULUS
        return self._state / MODULUS


def sample(rand: Callable[[], float], bounds: tuple[int, int]) -> int:
    lo, hi = bounds
    # half-up rounding; round() would round halves to even
    return math.floor(lo + rand() * (hi - lo) + 0.5)


def _pauses_ms(rand: Callable[[], float], persona: PersonaProfile) -> int:
    policy = persona.pauses
    if policy is None or rand() >= policy.prob:
        return 0
    count = 1 + math.floor(rand() * policy.max)
    return sum(sample(rand, policy.each_ms) for _ in range(count))


def compute_timing(
    seed_key: str,
    persona: PersonaProfile,
    input_chars: int,
    input_tokens: int,
    reply_chars: int,
    *,
    min_read_ms: int = MIN_READ_MS,
    max_total_ms: int = MAX_TOTAL_MS,
    seeded_pauses: bool = True,
) -> Timing:
    """
    Compute staged delays for one reply.

    Counts are used as given; callers clamp negative or absurd values.
    With seeded_pauses=False the pause step draws from an unseeded source
    and is the only non-reproducible part of the result.
    """
    rand = LehmerRandom(seed_from_key(seed_key))

    # millisecond granularity so trivial inputs fall to the perceptible floor
    read = max(min_read_ms, math.ceil(input_chars * 1000 / sample(rand, persona.read_cps)))
    comprehension = (sample(rand, persona.comp_base_ms)
                     + input_tokens * sample(rand, persona.comp_ms_per_token))
    write = reply_chars * sample(rand, persona.write_ms_per_char)
    typing = math.ceil(reply_chars / sample(rand, persona.type_cps)) * 1000
    jitter = sample(rand, persona.jitter_ms)
    pauses = _pauses_ms(rand if seeded_pauses else random.Random().random, persona)

    total = read + comprehension + write + typing + jitter + pauses

    return Timing(
        read_ms=read,
        comprehension_ms=comprehension,
        write_ms=write,
        type_ms=typing,
        jitter_ms=jitter,
        pauses_ms=pauses,
        total_ms=min(total, max_total_ms),
    )


def estimate_token_count(text: str) -> int:
    """Rough token estimate, ~4 characters per token for English."""
    return math.ceil(len(text) / 4)
