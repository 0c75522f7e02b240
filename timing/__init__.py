"""Deterministic human-like reply timing."""
from timing.model import (
    LehmerRandom,
    compute_timing,
    estimate_token_count,
    sample,
    seed_from_key,
)

__all__ = [
    "LehmerRandom", "compute_timing", "estimate_token_count",
    "sample", "seed_from_key",
]
