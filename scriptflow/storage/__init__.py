"""
Scriptflow Storage

Script Store and Cache Store capabilities with in-memory and JSON-file
implementations.
"""

from .stores import (
    ScriptStore,
    CacheStore,
    StateMutator,
    InMemoryScriptStore,
    InMemoryCacheStore,
    JSONFileScriptStore,
    JSONFileCacheStore,
)

__all__ = [
    'ScriptStore',
    'CacheStore',
    'StateMutator',
    'InMemoryScriptStore',
    'InMemoryCacheStore',
    'JSONFileScriptStore',
    'JSONFileCacheStore',
]
