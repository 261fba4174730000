from __future__ import annotations

import random
import time

# Seeds live in the positive signed 32-bit range most image backends accept.
SEED_MODULUS = 2**31 - 1
SEED_STRIDE = 1_000_003


def generate_master_seed() -> int:
    """Time plus random jitter; unpredictable enough for variation control, not for security."""
    millis = int(time.time() * 1000)
    jitter = random.getrandbits(24)
    seed = (millis ^ (jitter << 7)) % SEED_MODULUS
    return seed or 1


def derive_seed(master_seed: int, index: int) -> int:
    """Deterministic per-slide seed: a large prime stride keeps neighbouring slides decorrelated."""
    if index < 0:
        raise ValueError("Slide index must be non-negative")
    return (int(master_seed) + index * SEED_STRIDE) % SEED_MODULUS


def seed_for_job(master_seed: int, index: int, role: str) -> int:
    if role == "key_visual":
        return int(master_seed) % SEED_MODULUS
    return derive_seed(master_seed, index)
