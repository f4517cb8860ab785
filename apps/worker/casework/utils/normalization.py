"""Data normalization utilities for matching and LLM prompts."""

import html
import re
from typing import Optional


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    return email.strip().lower()


def strip_html(content: Optional[str]) -> str:
    """Strip tags for plain-text prompts and keyword checks."""
    if not content:
        return ""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    return re.sub(r"[ \t\r\f\v]+", " ", text).strip()


def significant_words(text: Optional[str], min_length: int = 4) -> set[str]:
    """Lower-cased words of at least ``min_length`` characters."""
    if not text:
        return set()
    return {word for word in re.findall(r"[a-z0-9']+", text.lower()) if len(word) >= min_length}
