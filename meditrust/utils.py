"""
Utility Functions for MediTrust
===============================
Small numeric and hashing helpers shared by the pipeline stages.

Features:
- SHA-256 image fingerprints (for logs and result identity)
- Clamping and weighted-mean scoring
- Log-safe masking of identifiers
"""

import hashlib
import math
from typing import Dict, Mapping, Optional


def hash_bytes(data: bytes) -> str:
    """
    Calculates SHA-256 hash of bytes.

    Args:
        data: Bytes to hash

    Returns:
        Hex digest of the SHA-256 hash
    """
    return hashlib.sha256(data).hexdigest()


def mask_sensitive_data(data: str, visible_chars: int = 8) -> str:
    """
    Masks an identifier for logging purposes.

    Args:
        data: String to mask
        visible_chars: Number of characters to show at the start

    Returns:
        Masked string (e.g., "3fa9c1d2…")
    """
    if not data:
        return ""

    if len(data) <= visible_chars:
        return "*" * len(data)

    return data[:visible_chars] + "…"


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamps value into [low, high]."""
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    """Rounds to the nearest integer, halves away from zero."""
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def weighted_mean(
    scores: Mapping[str, float],
    weights: Optional[Mapping[str, float]] = None
) -> float:
    """
    Weighted mean of per-feature scores.

    Features missing from weights get weight 0. With no weights every
    feature counts equally.

    Args:
        scores: Feature name -> score
        weights: Feature name -> non-negative weight

    Returns:
        Weighted mean, or 0.0 when the total weight is zero
    """
    if weights is None:
        weights = {key: 1.0 for key in scores}

    total_weight = 0.0
    accumulated = 0.0
    for key, score in scores.items():
        weight = weights.get(key, 0.0)
        total_weight += weight
        accumulated += weight * score

    if total_weight <= 0:
        return 0.0

    return accumulated / total_weight


def score_breakdown(
    scores: Mapping[str, float],
    weights: Mapping[str, float]
) -> Dict[str, Dict[str, float]]:
    """
    Per-feature contribution table, as logged alongside a verdict.

    Returns:
        Feature name -> {"score", "weight", "weighted_contribution"}
    """
    total_weight = sum(weights.get(key, 0.0) for key in scores) or 1.0
    return {
        key: {
            "score": round(score, 2),
            "weight": weights.get(key, 0.0),
            "weighted_contribution": round(score * weights.get(key, 0.0) / total_weight, 4),
        }
        for key, score in scores.items()
    }
