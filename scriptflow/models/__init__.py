"""
Scriptflow Models

Record shapes extracted from scripts and the resumable session state.
"""

from .script_models import (
    ScriptMetadata,
    ScriptCharacter,
    ScriptScene,
    ScriptItem,
    Shot,
    validate_metadata,
    validate_character,
    validate_scene,
    validate_shot,
    validate_shots,
    validate_item,
)
from .parse_state import (
    SubTaskState,
    ProgressDetail,
    CostEstimate,
    StoryBible,
    ExtendedParseState,
)

__all__ = [
    'ScriptMetadata',
    'ScriptCharacter',
    'ScriptScene',
    'ScriptItem',
    'Shot',
    'validate_metadata',
    'validate_character',
    'validate_scene',
    'validate_shot',
    'validate_shots',
    'validate_item',
    'SubTaskState',
    'ProgressDetail',
    'CostEstimate',
    'StoryBible',
    'ExtendedParseState',
]
