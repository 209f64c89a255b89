"""
Centralized environment variable loading.

The ``.env`` file is loaded once, before the first API key lookup. It is
found from the working directory upwards, so ``scriptflow`` run inside a
project picks up that project's keys; ``SCRIPTFLOW_ENV_FILE`` points at a
specific file instead.

Usage:
    from scriptflow.core.env_loader import get_api_key
    key = get_api_key("SCRIPTFLOW_API_KEY", ["OPENAI_API_KEY"])
"""

import os
from pathlib import Path
from typing import List, Optional, Union

from dotenv import find_dotenv, load_dotenv

ENV_FILE_VAR = "SCRIPTFLOW_ENV_FILE"

_loaded_from: Optional[Path] = None


def find_env_file() -> Optional[Path]:
    """Locate the ``.env`` to load, or None when there is none."""
    explicit = os.getenv(ENV_FILE_VAR)
    if explicit:
        return Path(explicit)
    found = find_dotenv(usecwd=True)
    return Path(found) if found else None


def ensure_env_loaded(env_path: Optional[Union[str, Path]] = None, reload: bool = False) -> bool:
    """
    Load variables from a ``.env`` file into the process environment.

    Variables already set in the process win over the file.

    Args:
        env_path: Explicit file. Defaults to ``find_env_file()``.
        reload: Load again even if a file was loaded before

    Returns:
        True if a file was loaded by this call
    """
    global _loaded_from

    if _loaded_from is not None and not reload:
        return False

    path = Path(env_path) if env_path else find_env_file()
    if path is None or not path.is_file():
        return False

    load_dotenv(path, override=False)
    _loaded_from = path
    return True


def loaded_env_file() -> Optional[Path]:
    return _loaded_from


def get_api_key(key_name: str, fallback_keys: Optional[List[str]] = None) -> Optional[str]:
    """
    First non-empty value among ``key_name`` and ``fallback_keys``.

    Returns:
        API key value or None if not found
    """
    ensure_env_loaded()
    for name in [key_name, *(fallback_keys or [])]:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None
