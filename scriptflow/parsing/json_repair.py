"""
JSON Repair

Recovers a structured value from free-text model output. Models wrap JSON
in prose, fence it in markdown, emit JavaScript-isms (single quotes, bare
keys, trailing commas, ``undefined``) or get cut off mid-object. The repair
cascade tries progressively more invasive fixes and stops at the first
candidate that parses:

    1. extract a fenced code block
    2. extract the longest balanced bracket span
    3. parse as-is
    4. fix common syntax errors
    5. trim surrounding prose and decode unicode escapes
    6. keep the longest prefix that parses

Every step that changes the candidate is recorded in the attempts log.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from scriptflow.core.logging_config import get_logger
from scriptflow.utils.text_utils import fullwidth_quotes_to_ascii

logger = get_logger("parsing.json_repair")

ATTEMPT_CODE_BLOCK = "extracted_from_code_block"
ATTEMPT_BRACKET_MATCHING = "bracket_matching"
ATTEMPT_COMMON_FIXES = "fixed_common_errors"
ATTEMPT_AGGRESSIVE_FIX = "aggressive_fix"
ATTEMPT_PARTIAL_EXTRACTION = "partial_extraction"

ERROR_SNIPPET_LENGTH = 200

# An unterminated fence still counts; truncated responses often lose it
_CODE_BLOCK = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?(.*?)(?:```|$)", re.DOTALL)
_DOUBLE_QUOTED = re.compile(r'"(?:[^"\\]|\\.)*"', re.DOTALL)
_UNICODE_ESCAPE = re.compile(r'\\u([0-9a-fA-F]{4})')

_FAILED = object()


@dataclass
class RepairResult:
    """Outcome of :func:`repair_and_parse`."""
    success: bool
    value: Any = None
    error: Optional[str] = None
    attempts: List[str] = field(default_factory=list)


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text, strict=False)
    except (ValueError, RecursionError):
        return _FAILED


# =============================================================================
# EXTRACTION
# =============================================================================

def extract_code_block(text: str) -> Optional[str]:
    """Return the stripped content of the first fenced code block, if any."""
    match = _CODE_BLOCK.search(text)
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


def _scan_spans(text: str, open_ch: str, close_ch: str) -> Tuple[Optional[Tuple[int, int]], Optional[int]]:
    """
    Find the longest balanced top-level ``open_ch``/``close_ch`` span.

    Quoted strings inside a span are skipped, including escaped quotes.

    Returns:
        (longest complete span or None, start of a span left open at the end or None)
    """
    best: Optional[Tuple[int, int]] = None
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch == open_ch:
            if depth == 0:
                start = i
            depth += 1
        elif ch == close_ch and depth > 0:
            depth -= 1
            if depth == 0:
                span = (start, i + 1)
                if best is None or span[1] - span[0] > best[1] - best[0]:
                    best = span

    return best, (start if depth > 0 else None)


def find_complete_json(text: str) -> Optional[str]:
    """
    Extract the longest balanced object or array span from ``text``.

    When both kinds are present the longer span wins. An array that sits
    inside an object left unclosed by truncation is not returned on its
    own, since that would silently drop the enclosing data.
    """
    obj_span, obj_open = _scan_spans(text, '{', '}')
    arr_span, arr_open = _scan_spans(text, '[', ']')

    if arr_span and obj_open is not None and obj_open < arr_span[0]:
        arr_span = None
    if obj_span and arr_open is not None and arr_open < obj_span[0]:
        obj_span = None

    candidates = [span for span in (obj_span, arr_span) if span]
    if not candidates:
        return None
    start, end = max(candidates, key=lambda span: (span[1] - span[0], -span[0]))
    return text[start:end]


# =============================================================================
# FIXES
# =============================================================================

def _outside_strings(transform: Callable[[str], str], text: str) -> str:
    """Apply ``transform`` only to the parts of ``text`` outside double-quoted strings."""
    parts = []
    last = 0
    for match in _DOUBLE_QUOTED.finditer(text):
        parts.append(transform(text[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(transform(text[last:]))
    return "".join(parts)


def _sub_outside_strings(pattern: str, repl, text: str) -> str:
    return _outside_strings(lambda part: re.sub(pattern, repl, part), text)


def fix_common_errors(text: str) -> str:
    """
    Fix the syntax errors models commonly produce.

    Handles fullwidth quotes, single-quoted keys and values, bare keys,
    duplicate and trailing commas, missing commas between adjacent
    literals, ``undefined`` and function values, and Python literals.
    """
    # Quotation marks inside valid strings are dialogue, not delimiters
    text = _outside_strings(fullwidth_quotes_to_ascii, text)

    # Single-quoted keys, values and array items
    text = _sub_outside_strings(r"'([^'\n]+?)'\s*:", r'"\1":', text)
    text = _sub_outside_strings(r":\s*'([^'\n]*?)'(?=\s*[,}\]])", r': "\1"', text)
    text = _sub_outside_strings(r"([\[,]\s*)'([^'\n]*?)'(?=\s*[,\]])", r'\1"\2"', text)

    # Bare identifier keys
    text = _sub_outside_strings(r'([{,]\s*)([^\W\d][\w$-]*)\s*:', r'\1"\2":', text)

    # Commas
    text = _sub_outside_strings(r',(\s*,)+', ',', text)
    text = _sub_outside_strings(r'}\s*{', '},{', text)
    text = _sub_outside_strings(r']\s*\[', '],[', text)

    # Non-JSON values
    text = _sub_outside_strings(r'function\s*\([^)]*\)\s*\{[^{}]*\}', 'null', text)
    text = _sub_outside_strings(r'\bundefined\b', 'null', text)
    text = _sub_outside_strings(r'\bNone\b', 'null', text)
    text = _sub_outside_strings(r'\bTrue\b', 'true', text)
    text = _sub_outside_strings(r'\bFalse\b', 'false', text)

    text = _sub_outside_strings(r',\s*([}\]])', r'\1', text)
    return text


def _decode_unicode_escape(match: re.Match) -> str:
    char = chr(int(match.group(1), 16))
    # Decoding these would break the surrounding string literal
    if char in '"\\' or ord(char) < 0x20:
        return match.group(0)
    return char


def fix_aggressively(text: str) -> str:
    """Drop prose outside the outermost brackets and decode ``\\uXXXX`` escapes."""
    starts = [pos for pos in (text.find('{'), text.find('[')) if pos != -1]
    if starts:
        first = min(starts)
        last = max(text.rfind('}'), text.rfind(']'))
        text = text[first:last + 1] if last > first else text[first:]
    return _UNICODE_ESCAPE.sub(_decode_unicode_escape, text)


def _closing_cuts(text: str) -> List[Tuple[int, str]]:
    """
    Positions where a truncated document can be cut and closed.

    Each entry is (cut position, closers needed), one per element separator
    outside strings plus the end of the text when it is not mid-string.
    """
    cuts: List[Tuple[int, str]] = []
    stack: List[str] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '{[':
            stack.append('}' if ch == '{' else ']')
        elif ch in '}]':
            if stack:
                stack.pop()
        elif ch == ',' and stack:
            cuts.append((i, "".join(reversed(stack))))

    if stack and not in_string:
        cuts.append((len(text), "".join(reversed(stack))))
    return cuts


def extract_partial_json(text: str) -> Any:
    """
    Recover the longest parsable prefix of ``text``.

    Scans prefixes from the full length downward. A document starting with
    a bracket can only parse at a closing bracket, so other cut points are
    skipped. When no prefix parses, the text is treated as truncated: it is
    cut back at element separators and the still-open brackets are closed.

    Returns:
        The parsed value, or the module's failure sentinel.
    """
    structural = text[:1] in ('{', '[')
    for end in range(len(text), 0, -1):
        if structural and text[end - 1] not in '}]':
            continue
        value = _try_parse(text[:end])
        if value is not _FAILED:
            return value

    if structural:
        for pos, closers in reversed(_closing_cuts(text)):
            value = _try_parse(text[:pos].rstrip().rstrip(',') + closers)
            if value is not _FAILED:
                return value

    return _FAILED


# =============================================================================
# CASCADE
# =============================================================================

def repair_and_parse(raw_text: Optional[str]) -> RepairResult:
    """
    Parse model output into a JSON value, repairing it where needed.

    Args:
        raw_text: Raw model response

    Returns:
        RepairResult with the parsed value on success, otherwise an error
        message including a snippet of the final candidate
    """
    attempts: List[str] = []

    if raw_text is None or not str(raw_text).strip():
        return RepairResult(success=False, error="Empty response, nothing to parse", attempts=attempts)

    candidate = str(raw_text).strip()

    value = _try_parse(candidate)
    if value is not _FAILED:
        return RepairResult(success=True, value=value, attempts=attempts)

    block = extract_code_block(candidate)
    if block is not None and block != candidate:
        candidate = block
        attempts.append(ATTEMPT_CODE_BLOCK)

    span = find_complete_json(candidate)
    if span is not None and span != candidate:
        candidate = span
        attempts.append(ATTEMPT_BRACKET_MATCHING)

    value = _try_parse(candidate)
    if value is not _FAILED:
        return RepairResult(success=True, value=value, attempts=attempts)

    for name, fixer in ((ATTEMPT_COMMON_FIXES, fix_common_errors), (ATTEMPT_AGGRESSIVE_FIX, fix_aggressively)):
        fixed = fixer(candidate)
        if fixed == candidate:
            continue
        candidate = fixed
        attempts.append(name)
        value = _try_parse(candidate)
        if value is not _FAILED:
            logger.debug(f"JSON repaired via {attempts}")
            return RepairResult(success=True, value=value, attempts=attempts)

    value = extract_partial_json(candidate)
    if value is not _FAILED:
        attempts.append(ATTEMPT_PARTIAL_EXTRACTION)
        logger.warning(f"Recovered partial JSON after {len(attempts)} repair attempts")
        return RepairResult(success=True, value=value, attempts=attempts)

    error = (
        f"Failed to parse JSON after {len(attempts)} repair attempts. "
        f"Last attempt: {candidate[:ERROR_SNIPPET_LENGTH]}..."
    )
    logger.debug(error)
    return RepairResult(success=False, error=error, attempts=attempts)


def validate_structure(data: Any, required_fields: Sequence[str]) -> Tuple[bool, List[str]]:
    """
    Check that ``data`` is an object carrying every required field.

    Returns:
        (valid, missing field names)
    """
    if not isinstance(data, dict):
        return False, list(required_fields)
    missing = [name for name in required_fields if data.get(name) is None]
    return not missing, missing
