"""
Normalized name distance.

Jaro-Winkler distance: a Jaro comparison (matching characters inside a
bounded window, transpositions) reduced by a Winkler boost for a shared
prefix of up to 4 characters. The boost is only applied when the Jaro
similarity exceeds 0.7, so it cannot reorder very dissimilar strings.

Case and whitespace normalization happen upstream; this module compares
strings exactly as given.
"""

from typing import Iterable, List

from rapidfuzz.distance import JaroWinkler

DEFAULT_PREFIX_WEIGHT = 0.15
MAX_PREFIX_WEIGHT = 0.25


def score(a: str, b: str, prefix_weight: float = DEFAULT_PREFIX_WEIGHT) -> float:
    """Return the Jaro-Winkler distance between two strings.

    Args:
        a: First string
        b: Second string
        prefix_weight: Winkler boost strength, between 0 and 0.25

    Returns:
        Distance in [0, 1]; 0 for identical strings, 1 for maximal dissimilarity

    Raises:
        ValueError: If prefix_weight is outside [0, 0.25]
    """
    if not 0.0 <= prefix_weight <= MAX_PREFIX_WEIGHT:
        raise ValueError(
            f"prefix_weight must be between 0 and {MAX_PREFIX_WEIGHT}, got {prefix_weight}"
        )

    a = a or ""
    b = b or ""
    if a == b:
        return 0.0
    if not a or not b:
        return 1.0

    # Canonical argument order keeps the metric symmetric
    if b < a:
        a, b = b, a

    distance = JaroWinkler.normalized_distance(a, b, prefix_weight=prefix_weight)
    return min(1.0, max(0.0, distance))


def score_many(
    name: str,
    names: Iterable[str],
    prefix_weight: float = DEFAULT_PREFIX_WEIGHT,
) -> List[float]:
    """Score ``name`` against every entry of ``names``, preserving order."""
    return [score(name, other, prefix_weight) for other in names]
