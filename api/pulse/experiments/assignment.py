"""Deterministic variant assignment using FNV-1a hash.

The same ``(experiment_id, anonymous_id)`` pair always lands in the same
bucket, so assignments are sticky without being stored anywhere.
"""

# FNV-1a constants (32-bit)
FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
MASK_32 = 0xFFFFFFFF

BUCKETS = 10_000


def fnv1a(data: str) -> int:
    """Compute 32-bit FNV-1a hash of a string."""
    h = FNV_OFFSET_BASIS
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & MASK_32
    return h


def assignment_threshold(experiment_id: str, anonymous_id: str) -> float:
    """Map an identity to a point in ``[0, 1)`` for one experiment."""
    return (fnv1a(f"{experiment_id}:{anonymous_id}") % BUCKETS) / BUCKETS


def normalize_weights(variant_count: int, weights: list[float] | None) -> list[float]:
    """Normalize ``weights`` to sum to 1.

    Falls back to a uniform split when weights are missing, do not match the
    variant count, or do not sum to a positive number.
    """
    if weights and len(weights) == variant_count:
        total = sum(weights)
        if total > 0:
            return [w / total for w in weights]
    return [1 / variant_count] * variant_count


def pick_variant(
    anonymous_id: str,
    experiment_id: str,
    variants: list[str],
    weights: list[float] | None = None,
) -> str:
    """Walk the cumulative weights until they pass the identity's threshold.

    If rounding leaves the cumulative sum at or below the threshold, the last
    variant wins.
    """
    if not variants:
        raise ValueError("At least one variant is required")

    threshold = assignment_threshold(experiment_id, anonymous_id)
    cumulative = 0.0
    for variant, weight in zip(variants, normalize_weights(len(variants), weights)):
        cumulative += weight
        if threshold < cumulative:
            return variant
    return variants[-1]
