import random


def compute_backoff_seconds(attempt: int, base: float = 1.0, cap: float = 60.0) -> float:
    # exponential backoff with up to 1/3 jitter on top
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    return exp + random.uniform(0, exp / 3)
