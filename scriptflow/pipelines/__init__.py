"""
Scriptflow Pipelines

Concurrency limiting, completion-backed extraction and the resumable
script structuring pipeline.
"""

from .concurrency_limiter import ConcurrencyLimiter
from .script_extractor import Extraction, ScriptExtractor, align_to_names
from .script_pipeline import ProgressCallback, ScriptPipeline, ShotValidator

__all__ = [
    'ConcurrencyLimiter',
    'Extraction',
    'ScriptExtractor',
    'align_to_names',
    'ProgressCallback',
    'ScriptPipeline',
    'ShotValidator',
]
