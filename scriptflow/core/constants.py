"""
Scriptflow Constants

Global constants used throughout the pipeline.
"""

from enum import Enum
from typing import Dict, List

# =============================================================================
# VERSION INFO
# =============================================================================
VERSION = "1.0.0"
PROJECT_NAME = "Scriptflow"

# =============================================================================
# PIPELINE STAGES
# =============================================================================

class ParseStage(str, Enum):
    """Stages of the structuring pipeline, in execution order."""
    IDLE = "idle"
    METADATA = "metadata"
    CHARACTERS = "characters"
    SCENES = "scenes"
    ITEMS = "items"
    SHOTS = "shots"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STAGES = (ParseStage.COMPLETED, ParseStage.ERROR)

# Width of each stage's band on the 0-100 overall progress scale.
STAGE_WEIGHTS: Dict[ParseStage, int] = {
    ParseStage.METADATA: 10,
    ParseStage.CHARACTERS: 30,
    ParseStage.SCENES: 30,
    ParseStage.ITEMS: 5,
    ParseStage.SHOTS: 25,
    ParseStage.COMPLETED: 100,
}

WORK_STAGES: List[ParseStage] = [
    ParseStage.METADATA,
    ParseStage.CHARACTERS,
    ParseStage.SCENES,
    ParseStage.ITEMS,
    ParseStage.SHOTS,
]

# =============================================================================
# SUB-TASKS
# =============================================================================

class SubTaskType(str, Enum):
    """Unit of resumable work."""
    CHARACTER = "character"
    SCENE = "scene"
    SHOT = "shot"
    PROP = "prop"


class SubTaskStatus(str, Enum):
    """Lifecycle of a sub-task."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Failures after which a sub-task is handed to a human
HUMAN_INTERVENTION_THRESHOLD = 3

# =============================================================================
# SHOT VOCABULARY
# =============================================================================

class ShotType(str, Enum):
    """Framing distance of a shot."""
    EXTREME_LONG = "extreme_long"
    LONG = "long"
    FULL = "full"
    MEDIUM = "medium"
    CLOSE_UP = "close_up"
    EXTREME_CLOSE_UP = "extreme_close_up"


class CameraMovement(str, Enum):
    """Camera movement during a shot."""
    STATIC = "static"
    PUSH = "push"
    PULL = "pull"
    PAN = "pan"
    TILT = "tilt"
    TRACK = "track"
    CRANE = "crane"


DEFAULT_SHOT_TYPE = ShotType.MEDIUM
DEFAULT_CAMERA_MOVEMENT = CameraMovement.STATIC
DEFAULT_SHOT_DURATION = 3.0

# =============================================================================
# CACHE
# =============================================================================

class CacheTier(str, Enum):
    """Cache tiers, fastest first."""
    L1 = "l1"
    L2 = "l2"
    L3 = "l3"


CACHE_TIERS: List[CacheTier] = [CacheTier.L1, CacheTier.L2, CacheTier.L3]

# =============================================================================
# TEXT
# =============================================================================

# Trailing characters of the previous chunk carried as context
CONTEXT_CHARS = 500

# One token is roughly 1.5 characters for CJK-heavy text
CHARS_PER_TOKEN = 1.5
