"""
Deterministic percentile bucketing.

The same (subject, salt) pair always lands in the same bucket, with no
dependency on time, store state or call order. Flag rollout salts with the
feature name and variant assignment salts with the experiment id, so a user's
buckets for different flags and experiments are independent of each other.
"""

import hashlib

BUCKET_COUNT = 100


def bucket(subject_id: str, salt: str) -> int:
    """
    Map a subject to a stable integer in [0, 100).

    Algorithm:
    1. Hash "<subject_id>::<salt>" with SHA-256
    2. Read the first 8 bytes as a big-endian 64-bit integer
    3. Reduce modulo 100
    """
    hash_input = f"{subject_id}::{salt}"
    hash_bytes = hashlib.sha256(hash_input.encode("utf-8")).digest()
    return int.from_bytes(hash_bytes[:8], byteorder="big") % BUCKET_COUNT


def select_variant(bucket_value: int, allocation: list[tuple[str, int]]) -> str:
    """
    Walk cumulative allocation ranges in declared order.

    With allocation [("control", 50), ("treatment", 50)] buckets 0-49 map to
    control and 50-99 to treatment. Allocations are expected to sum to 100;
    the last variant absorbs anything past the final boundary.
    """
    cumulative = 0
    for name, share in allocation:
        cumulative += share
        if bucket_value < cumulative:
            return name
    return allocation[-1][0]
