"""
Scriptflow File Utilities

JSON persistence for session and cache files, and script loading that
copes with the encodings screenplays and novels arrive in.
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Sequence, Union

from scriptflow.core.exceptions import StoreError

# utf-8-sig also accepts plain UTF-8; GB18030 covers scripts saved by Chinese editors
SCRIPT_ENCODINGS = ('utf-8-sig', 'gb18030')


def read_json(path: Union[str, Path], encoding: str = 'utf-8') -> Any:
    """
    Read and parse a JSON file.

    Raises:
        StoreError: If the file is missing, unreadable or not valid JSON
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding=encoding) as f:
            return json.load(f)
    except FileNotFoundError:
        raise StoreError(f"File not found: {path}")
    except json.JSONDecodeError as e:
        raise StoreError(f"Invalid JSON in {path}: {e}", {"line": e.lineno})
    except OSError as e:
        raise StoreError(f"Failed to read {path}: {e}")


def write_json(
    path: Union[str, Path],
    data: Any,
    encoding: str = 'utf-8',
    indent: int = 2,
    ensure_ascii: bool = False
) -> None:
    """
    Write data to a JSON file atomically.

    The payload goes to a temporary file in the same directory which then
    replaces the target, so readers never observe a half-written file.
    """
    path = Path(path)
    ensure_directory(path.parent)

    try:
        payload = json.dumps(data, indent=indent, ensure_ascii=ensure_ascii)
    except (TypeError, ValueError) as e:
        raise StoreError(f"Cannot serialize data for {path}: {e}")

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding=encoding) as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except OSError as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise StoreError(f"Failed to write {path}: {e}")


def read_text(path: Union[str, Path], encodings: Sequence[str] = SCRIPT_ENCODINGS) -> str:
    """
    Read a script file, trying each encoding in turn.

    Raises:
        StoreError: If the file is missing or no encoding decodes it
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        raise StoreError(f"File not found: {path}")
    except OSError as e:
        raise StoreError(f"Failed to read {path}: {e}")

    for encoding in encodings:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise StoreError(f"Cannot decode {path}", {"encodings": list(encodings)})


def ensure_directory(path: Union[str, Path]) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str, max_length: int = 100) -> str:
    """Turn a script or project id into a file name; empty results become ``unnamed``."""
    safe = re.sub(r'[<>:"/\\|?*]', '_', name)
    safe = re.sub(r'[\s_]+', '_', safe)
    safe = safe.strip('_.')
    if len(safe) > max_length:
        safe = safe[:max_length].rstrip('_')
    return safe or "unnamed"
