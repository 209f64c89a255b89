"""
Scriptflow Utilities

File and text helpers shared by the stores, the cache and the chunker.
"""

from .file_utils import read_json, write_json, read_text, ensure_directory, safe_filename
from .text_utils import normalize_text, clean_unicode, fullwidth_quotes_to_ascii, content_fingerprint

__all__ = [
    'read_json',
    'write_json',
    'read_text',
    'ensure_directory',
    'safe_filename',
    'normalize_text',
    'clean_unicode',
    'fullwidth_quotes_to_ascii',
    'content_fingerprint',
]
