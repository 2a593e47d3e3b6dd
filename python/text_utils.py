"""
Text helpers shared by the screening engine.

- sanitize_for_logging: strip control characters before user input hits a log
- normalize_name: accent/case/punctuation-insensitive form used for cache keys
- clean_document: strip separators from identifiers
"""

import re
import unicodedata
from typing import Optional


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a name for consistent keying.

    Removes accents, converts to uppercase, normalizes whitespace.

    Args:
        name: The name to normalize (can be None)

    Returns:
        Normalized name string, or empty string if name is None/empty
    """
    if not name:
        return ""

    normalized = unicodedata.normalize('NFD', name)
    normalized = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')
    normalized = re.sub(r'[^\w\s]', ' ', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.upper().strip()


def clean_document(doc_number: Optional[str], digits_only: bool = False) -> str:
    """
    Normalize a document number.

    Args:
        doc_number: Raw identifier as typed by the caller
        digits_only: Keep only ASCII digits (Brazilian CPF/CNPJ)

    Returns:
        Cleaned identifier, empty string for None/empty input
    """
    if not doc_number:
        return ""
    if digits_only:
        return re.sub(r'[^0-9]', '', doc_number)
    return re.sub(r'[\s\-\.\,\/]', '', doc_number).upper()


def mask_identifier(identifier: Optional[str], visible: int = 4) -> str:
    """Mask all but the last `visible` characters of an identifier."""
    if not identifier:
        return ""
    if len(identifier) <= visible:
        return "*" * len(identifier)
    return "*" * (len(identifier) - visible) + identifier[-visible:]
