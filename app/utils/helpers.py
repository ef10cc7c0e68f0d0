"""
Common utility functions and helpers.
"""
from typing import Iterable, List
import hashlib
import re


def normalize_concepts(concepts: Iterable[str]) -> List[str]:
    """
    Clean an incoming concept set.

    Strips and collapses whitespace, drops blanks, and removes
    case-insensitive duplicates while keeping first-seen order.

    Args:
        concepts: Raw concept strings

    Returns:
        Normalized concept list (possibly empty)
    """
    seen = set()
    cleaned: List[str] = []
    for concept in concepts or []:
        if not isinstance(concept, str):
            continue
        text = re.sub(r'\s+', ' ', concept).strip()
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        cleaned.append(text)
    return cleaned


def tokenize(text: str) -> List[str]:
    """Lowercase whitespace tokens of *text*."""
    return [token for token in text.lower().split() if token]


def generate_hash(text: str) -> str:
    """
    Generate SHA256 hash of text.

    Args:
        text: Text to hash

    Returns:
        Hex digest of hash
    """
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def stable_id(prefix: str, *parts: str) -> str:
    """Deterministic short id built from *parts*."""
    digest = generate_hash("\x1f".join(parts))[:16]
    return f"{prefix}_{digest}"


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamp *value* into ``[low, high]``."""
    return max(low, min(high, value))


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator
        denominator: Denominator
        default: Default value if division fails

    Returns:
        Result of division or default
    """
    return numerator / denominator if denominator != 0 else default
