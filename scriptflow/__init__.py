"""
Scriptflow - Script Structuring Pipeline

Turns long, unstructured narrative text (a screenplay or a novel) into
structured production data: metadata, characters, scenes and camera shots.
Extraction is driven through an external text-completion capability and is
resumable at sub-task granularity.

Version: 1.0.0
"""

__version__ = "1.0.0"
__project__ = "Scriptflow"
