"""
Deterministic string hashing for rollout and variant bucketing.
"""


def hash_string(value: str) -> int:
    """32-bit rolling hash (``h = h * 31 + c``) over UTF-16 code units.

    Matches the ``String.hashCode`` style hash used to bucket existing
    rollouts and A/B assignments, returned as an absolute value.
    """
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)
