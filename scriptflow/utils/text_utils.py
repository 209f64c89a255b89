"""
Scriptflow Text Utilities

Unicode normalization and fingerprinting for consistent cache keys.
"""

import hashlib
import re
import unicodedata

_FULLWIDTH_QUOTES = {
    '\u201c': '"',  # Left double quote
    '\u201d': '"',  # Right double quote
    '\uff02': '"',  # Fullwidth quotation mark
    '\u2018': "'",  # Left single quote
    '\u2019': "'",  # Right single quote
    '\uff07': "'",  # Fullwidth apostrophe
}


def normalize_text(text: str, form: str = 'NFC') -> str:
    """Normalize Unicode text to a standard form."""
    return unicodedata.normalize(form, text)


def clean_unicode(text: str) -> str:
    """
    Clean problematic Unicode characters from text.

    Removes zero-width characters, control characters other than newline
    and tab, and the replacement character.
    """
    text = re.sub(r'[\u200b\u200c\u200d\ufeff]', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.replace('\ufffd', '')


def fullwidth_quotes_to_ascii(text: str) -> str:
    """Replace typographic and fullwidth quotation marks with ASCII quotes."""
    for char, replacement in _FULLWIDTH_QUOTES.items():
        text = text.replace(char, replacement)
    return text


def content_fingerprint(text: str, length: int = 16) -> str:
    """
    Deterministic hash of normalized text.

    Texts differing only in Unicode composition, invisible characters or
    whitespace layout share a fingerprint.
    """
    normalized = clean_unicode(normalize_text(text or ""))
    normalized = re.sub(r'\s+', ' ', normalized).strip()
    return hashlib.sha256(normalized.encode('utf-8')).hexdigest()[:length]
