"""
Scriptflow Stores

Persistence capabilities consumed by the pipeline:

* Script Store - one parse state per (script, project), updated through a
  mutator so callers get read-modify-write without their own lock.
* Cache Store - flat key-value storage behind the cache's slower tiers.
  Writing ``None`` deletes a key.

Both come in an in-memory flavour (tests, embedding) and a JSON-file flavour
(CLI, local runs).
"""

import asyncio
import copy
import hashlib
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

from scriptflow.core.exceptions import StoreError
from scriptflow.core.logging_config import get_logger
from scriptflow.utils.file_utils import ensure_directory, read_json, safe_filename, write_json

logger = get_logger("storage.stores")

StateMutator = Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]


@runtime_checkable
class ScriptStore(Protocol):
    """Durable mirror of parse sessions."""

    async def get_parse_state(self, script_id: str, project_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def update_parse_state(self, script_id: str, project_id: str, mutator: StateMutator) -> None:
        ...


@runtime_checkable
class CacheStore(Protocol):
    """Key-value storage for cache tiers."""

    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryScriptStore:
    """Script Store kept in a dict. Values are deep-copied in and out."""

    def __init__(self):
        self._states: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.write_count = 0

    async def get_parse_state(self, script_id: str, project_id: str) -> Optional[Dict[str, Any]]:
        state = self._states.get((project_id, script_id))
        return copy.deepcopy(state) if state is not None else None

    async def update_parse_state(self, script_id: str, project_id: str, mutator: StateMutator) -> None:
        current = await self.get_parse_state(script_id, project_id)
        updated = mutator(current)
        if updated is None:
            raise StoreError("Parse state mutator returned None", {"script_id": script_id})
        self._states[(project_id, script_id)] = copy.deepcopy(updated)
        self.write_count += 1


class InMemoryCacheStore:
    """Cache Store kept in a dict."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = copy.deepcopy(value)

    def __len__(self) -> int:
        return len(self._data)


# =============================================================================
# JSON FILES
# =============================================================================

class JSONFileScriptStore:
    """
    Script Store writing one JSON file per script.

    Layout: ``{root}/projects/{project_id}/scripts/{script_id}.json``.
    Writes to the same file are serialized with an asyncio lock and land
    through an atomic replace.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._locks: Dict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _path(self, script_id: str, project_id: str) -> Path:
        return self.root / "projects" / safe_filename(project_id) / "scripts" / f"{safe_filename(script_id)}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        document = read_json(path)
        if not isinstance(document, dict):
            raise StoreError(f"Unexpected document in {path}")
        return document.get("parseState")

    async def get_parse_state(self, script_id: str, project_id: str) -> Optional[Dict[str, Any]]:
        return self._read(self._path(script_id, project_id))

    async def update_parse_state(self, script_id: str, project_id: str, mutator: StateMutator) -> None:
        path = self._path(script_id, project_id)
        async with self._locks[path]:
            updated = mutator(self._read(path))
            if updated is None:
                raise StoreError("Parse state mutator returned None", {"script_id": script_id})
            write_json(path, {
                "scriptId": script_id,
                "projectId": project_id,
                "updatedAt": datetime.now().isoformat(),
                "parseState": updated,
            })
        logger.debug(f"Saved parse state for {project_id}/{script_id}")


class JSONFileCacheStore:
    """
    Cache Store writing one JSON file per key under ``{root}/{namespace}``.

    File names are hashes of the key, so arbitrary keys are safe.
    """

    def __init__(self, root: Union[str, Path], namespace: str = "cache"):
        self.directory = ensure_directory(Path(root) / safe_filename(namespace))

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{digest}.json"

    async def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        document = read_json(path)
        if not isinstance(document, dict) or document.get("key") != key:
            return None
        return document.get("value")

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        if value is None:
            if path.exists():
                path.unlink()
            return
        write_json(path, {"key": key, "value": value}, indent=None)
