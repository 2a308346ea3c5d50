"""Shared utility functions for Ergon."""

from __future__ import annotations


def text_overlap(a: str, b: str) -> float:
    """Word overlap ratio used to rank memory excerpts.

    Filters words shorter than 3 characters to avoid false positives
    from stop words (the, is, a, in, etc.).

    Returns 0.0-1.0 representing what fraction of the smaller
    text's words appear in the larger text.
    """
    words_a = set(w for w in a.lower().split() if len(w) >= 3)
    words_b = set(w for w in b.lower().split() if len(w) >= 3)
    if not words_a or not words_b:
        return 0.0
    overlap = len(words_a & words_b)
    smaller = min(len(words_a), len(words_b))
    return overlap / smaller


def truncate_output(text: str, max_chars: int) -> tuple[str, bool]:
    """Cut ``text`` to ``max_chars`` and append a truncation marker.

    Returns (text, was_truncated).
    """
    if len(text) <= max_chars:
        return text, False
    return (
        f"{text[:max_chars]}\n... [output truncated: {len(text):,} chars, limit {max_chars:,}]",
        True,
    )


def cap_section(text: str, max_chars: int) -> str:
    """Cap a prompt section, marking the cut so the model knows text is missing."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "\n[...]"
