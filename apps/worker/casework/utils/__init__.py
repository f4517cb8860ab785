"""Utility modules."""

from casework.utils.datetime_parsing import (
    format_legacy_datetime,
    parse_legacy_datetime,
    to_utc,
    utcnow,
)
from casework.utils.normalization import normalize_email, significant_words, strip_html

__all__ = [
    # Datetime
    "format_legacy_datetime",
    "parse_legacy_datetime",
    "to_utc",
    "utcnow",
    # Normalization
    "normalize_email",
    "significant_words",
    "strip_html",
]
