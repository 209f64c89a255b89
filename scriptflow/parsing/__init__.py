"""
Scriptflow Parsing

Building blocks of the structuring pipeline: JSON repair, semantic chunking,
the multi-level cache and the parse state manager.
"""

from .json_repair import RepairResult, repair_and_parse, validate_structure
from .semantic_chunker import SemanticChunk, SemanticChunker
from .multi_level_cache import CacheEntry, MultiLevelCache
from .parse_state_manager import ParseStateManager, overall_progress

__all__ = [
    'RepairResult',
    'repair_and_parse',
    'validate_structure',
    'SemanticChunk',
    'SemanticChunker',
    'CacheEntry',
    'MultiLevelCache',
    'ParseStateManager',
    'overall_progress',
]
