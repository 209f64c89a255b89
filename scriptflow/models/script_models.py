"""
Script Record Models

Pydantic shapes for the structured production data extracted from a script,
plus pure validate-with-defaults functions that turn whatever the model
returned into complete records.

Records serialize with camelCase field names (``visualPrompt``,
``timeOfDay``) because downstream consumers depend on that exact field set.
"""

import re
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from scriptflow.core.constants import (
    DEFAULT_CAMERA_MOVEMENT,
    DEFAULT_SHOT_DURATION,
    DEFAULT_SHOT_TYPE,
    CameraMovement,
    ShotType,
)


class ScriptModel(BaseModel):
    """Base for all record shapes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls.model_validate(data)


# =============================================================================
# RECORDS
# =============================================================================

class ScriptMetadata(ScriptModel):
    """Script-level facts. Produced once, read by every later stage."""
    title: str = ""
    word_count: int = 0
    estimated_duration: str = ""
    character_count: int = 0
    character_names: List[str] = Field(default_factory=list)
    scene_count: int = 0
    scene_names: List[str] = Field(default_factory=list)
    chapter_count: int = 0
    genre: str = ""
    tone: str = ""


class CharacterAppearance(ScriptModel):
    height: str
    build: str
    face: str
    hair: str
    clothing: str


class EmotionalPhase(ScriptModel):
    phase: str
    emotion: str


class Relationship(ScriptModel):
    character: str
    relation: str


class ScriptCharacter(ScriptModel):
    """A character; ``name`` is unique within a script."""
    name: str
    gender: str
    age: str
    identity: str
    appearance: CharacterAppearance
    personality: List[str]
    signature_items: List[str]
    emotional_arc: List[EmotionalPhase]
    relationships: List[Relationship]
    visual_prompt: str


class SceneEnvironment(ScriptModel):
    architecture: str
    furnishings: List[str]
    lighting: str
    color_tone: str


class ScriptScene(ScriptModel):
    """A location-bound scene; ``name`` is unique within a script."""
    name: str
    location_type: str
    description: str
    time_of_day: str
    season: str
    weather: str
    environment: SceneEnvironment
    scene_function: str
    visual_prompt: str
    characters: List[str]


class Shot(ScriptModel):
    """One camera shot of a scene."""
    id: str
    scene_name: str
    sequence: int
    shot_type: ShotType
    camera_movement: CameraMovement
    description: str
    dialogue: Optional[str] = None
    sound: Optional[str] = None
    duration: float
    characters: List[str]


class ScriptItem(ScriptModel):
    """A prop or significant object."""
    name: str
    description: str
    category: str
    owner: str
    importance: str
    visual_prompt: str


# =============================================================================
# DEFAULTS
# =============================================================================

GENDERS = ("male", "female", "unknown")
LOCATION_TYPES = ("indoor", "outdoor", "unknown")

CHARACTER_DEFAULTS = {
    "gender": "unknown",
    "age": "25",
    "identity": "Unknown identity",
    "height": "Average height",
    "build": "Standard build",
    "face": "Regular features",
    "hair": "Ordinary hairstyle",
    "clothing": "Everyday clothing",
    "personality": ["Gentle"],
    "emotional_arc": [{"phase": "Initial", "emotion": "Calm"}],
}

SCENE_DEFAULTS = {
    "location_type": "unknown",
    "time_of_day": "Daytime",
    "season": "Spring",
    "weather": "Clear",
    "architecture": "Ordinary building",
    "furnishings": ["Basic furnishings"],
    "lighting": "Natural light",
    "color_tone": "Bright",
    "scene_function": "Advances the plot",
}

_GENDER_ALIASES = {
    "m": "male", "man": "male", "boy": "male", "男": "male", "男性": "male",
    "f": "female", "woman": "female", "girl": "female", "女": "female", "女性": "female",
}
_LOCATION_ALIASES = {
    "interior": "indoor", "int": "indoor", "inside": "indoor", "室内": "indoor", "内景": "indoor",
    "exterior": "outdoor", "ext": "outdoor", "outside": "outdoor", "室外": "outdoor", "外景": "outdoor",
}
_SHOT_TYPE_ALIASES = {
    "els": ShotType.EXTREME_LONG, "extreme long shot": ShotType.EXTREME_LONG,
    "ls": ShotType.LONG, "wide": ShotType.LONG, "long shot": ShotType.LONG,
    "fs": ShotType.FULL, "full shot": ShotType.FULL,
    "ms": ShotType.MEDIUM, "medium shot": ShotType.MEDIUM, "mid": ShotType.MEDIUM,
    "cu": ShotType.CLOSE_UP, "closeup": ShotType.CLOSE_UP, "close-up": ShotType.CLOSE_UP,
    "ecu": ShotType.EXTREME_CLOSE_UP, "extreme close-up": ShotType.EXTREME_CLOSE_UP,
}
_CAMERA_ALIASES = {
    "dolly in": CameraMovement.PUSH, "push in": CameraMovement.PUSH, "zoom in": CameraMovement.PUSH,
    "dolly out": CameraMovement.PULL, "pull out": CameraMovement.PULL, "zoom out": CameraMovement.PULL,
    "tracking": CameraMovement.TRACK, "dolly": CameraMovement.TRACK, "follow": CameraMovement.TRACK,
    "fixed": CameraMovement.STATIC, "none": CameraMovement.STATIC,
}


# =============================================================================
# COERCION HELPERS
# =============================================================================

def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _pick(data: Dict[str, Any], *names: str) -> Any:
    """First present, non-empty value among camelCase and snake_case spellings."""
    for name in names:
        for key in (name, to_camel(name)):
            value = data.get(key)
            if value not in (None, "", [], {}):
                return value
    return None


def _text(value: Any, default: str) -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    text = str(value).strip()
    return text or default


def _optional_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _text_list(value: Any, default: Optional[List[str]] = None) -> List[str]:
    if isinstance(value, str):
        value = re.split(r'[,，、;；]', value)
    if not isinstance(value, list):
        return list(default or [])
    items = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("name")
        text = _optional_text(item)
        if text and text not in items:
            items.append(text)
    return items or list(default or [])


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        match = re.search(r'-?\d+', value.replace(',', ''))
        if match:
            return int(match.group(0))
    return default


def _float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.search(r'\d+(?:\.\d+)?', value)
        if match:
            return float(match.group(0))
    return default


def _choice(value: Any, allowed, aliases: Dict[str, Any], default):
    text = _optional_text(value)
    if text is None:
        return default
    key = text.lower().replace('-', '_') if text.isascii() else text
    for option in allowed:
        option_value = getattr(option, "value", option)
        if key == option_value:
            return option
    return aliases.get(text.lower(), aliases.get(text, default))


# =============================================================================
# VALIDATORS
# =============================================================================

def validate_metadata(partial: Any) -> ScriptMetadata:
    """Complete script metadata from a partial model response."""
    data = _as_dict(partial)
    character_names = _text_list(_pick(data, "character_names", "characters"))
    scene_names = _text_list(_pick(data, "scene_names", "scenes"))
    return ScriptMetadata(
        title=_text(_pick(data, "title"), "Untitled"),
        word_count=_int(_pick(data, "word_count")),
        estimated_duration=_text(_pick(data, "estimated_duration"), ""),
        character_count=_int(_pick(data, "character_count"), len(character_names)) or len(character_names),
        character_names=character_names,
        scene_count=_int(_pick(data, "scene_count"), len(scene_names)) or len(scene_names),
        scene_names=scene_names,
        chapter_count=_int(_pick(data, "chapter_count")),
        genre=_text(_pick(data, "genre"), ""),
        tone=_text(_pick(data, "tone"), ""),
    )


def _relationships(value: Any) -> List[Relationship]:
    result = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, dict):
            other = _optional_text(_pick(item, "character", "name", "target"))
            if other:
                result.append(Relationship(
                    character=other,
                    relation=_text(_pick(item, "relation", "relationship", "type"), "Acquaintance"),
                ))
    return result


def _emotional_arc(value: Any) -> List[EmotionalPhase]:
    phases = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, dict):
            emotion = _optional_text(_pick(item, "emotion", "state"))
            if emotion:
                phases.append(EmotionalPhase(phase=_text(_pick(item, "phase", "stage"), "Unspecified"), emotion=emotion))
    return phases or [EmotionalPhase(**arc) for arc in CHARACTER_DEFAULTS["emotional_arc"]]


def validate_character(partial: Any, name: str) -> ScriptCharacter:
    """
    Complete a character record.

    ``name`` is the requested name and always wins over whatever the model
    put in the payload; every other missing field gets a fixed default.
    """
    data = _as_dict(partial)
    name = _text(name, "") or _text(_pick(data, "name"), "Unnamed")
    appearance = _as_dict(_pick(data, "appearance"))
    defaults = CHARACTER_DEFAULTS
    return ScriptCharacter(
        name=name,
        gender=_choice(_pick(data, "gender"), GENDERS, _GENDER_ALIASES, defaults["gender"]),
        age=_text(_pick(data, "age"), defaults["age"]),
        identity=_text(_pick(data, "identity", "role"), defaults["identity"]),
        appearance=CharacterAppearance(
            height=_text(_pick(appearance, "height"), defaults["height"]),
            build=_text(_pick(appearance, "build"), defaults["build"]),
            face=_text(_pick(appearance, "face"), defaults["face"]),
            hair=_text(_pick(appearance, "hair"), defaults["hair"]),
            clothing=_text(_pick(appearance, "clothing"), defaults["clothing"]),
        ),
        personality=_text_list(_pick(data, "personality"), defaults["personality"]),
        signature_items=_text_list(_pick(data, "signature_items")),
        emotional_arc=_emotional_arc(_pick(data, "emotional_arc")),
        relationships=_relationships(_pick(data, "relationships")),
        visual_prompt=_text(_pick(data, "visual_prompt"), f"Character portrait of {name}"),
    )


def validate_scene(partial: Any, name: str) -> ScriptScene:
    """Complete a scene record. ``name`` is the requested scene name."""
    data = _as_dict(partial)
    name = _text(name, "") or _text(_pick(data, "name"), "Unnamed scene")
    environment = _as_dict(_pick(data, "environment"))
    defaults = SCENE_DEFAULTS
    return ScriptScene(
        name=name,
        location_type=_choice(_pick(data, "location_type"), LOCATION_TYPES, _LOCATION_ALIASES, defaults["location_type"]),
        description=_text(_pick(data, "description"), name),
        time_of_day=_text(_pick(data, "time_of_day"), defaults["time_of_day"]),
        season=_text(_pick(data, "season"), defaults["season"]),
        weather=_text(_pick(data, "weather"), defaults["weather"]),
        environment=SceneEnvironment(
            architecture=_text(_pick(environment, "architecture"), defaults["architecture"]),
            furnishings=_text_list(_pick(environment, "furnishings"), defaults["furnishings"]),
            lighting=_text(_pick(environment, "lighting"), defaults["lighting"]),
            color_tone=_text(_pick(environment, "color_tone"), defaults["color_tone"]),
        ),
        scene_function=_text(_pick(data, "scene_function"), defaults["scene_function"]),
        visual_prompt=_text(_pick(data, "visual_prompt"), f"Establishing view of {name}"),
        characters=_text_list(_pick(data, "characters")),
    )


def validate_shot(partial: Any, scene_name: str, index: int) -> Shot:
    """
    Complete a shot record.

    ``index`` is the zero-based position in the scene's shot list and
    supplies the sequence number when the model omitted one. Every shot
    gets a fresh identifier; ids from the model are not trusted to be unique.
    """
    data = _as_dict(partial)
    sequence = _int(_pick(data, "sequence", "shot_number"), 0)
    return Shot(
        id=uuid.uuid4().hex,
        scene_name=_text(scene_name, "") or _text(_pick(data, "scene_name"), "Unknown scene"),
        sequence=sequence if sequence > 0 else index + 1,
        shot_type=_choice(_pick(data, "shot_type"), ShotType, _SHOT_TYPE_ALIASES, DEFAULT_SHOT_TYPE),
        camera_movement=_choice(_pick(data, "camera_movement"), CameraMovement, _CAMERA_ALIASES, DEFAULT_CAMERA_MOVEMENT),
        description=_text(_pick(data, "description"), f"Shot {index + 1} of {scene_name}"),
        dialogue=_optional_text(_pick(data, "dialogue")),
        sound=_optional_text(_pick(data, "sound")),
        duration=_float(_pick(data, "duration"), DEFAULT_SHOT_DURATION) or DEFAULT_SHOT_DURATION,
        characters=_text_list(_pick(data, "characters")),
    )


def validate_shots(partials: Any, scene_name: str, max_shots: Optional[int] = None) -> List[Shot]:
    """
    Complete a scene's shot list.

    Sequence numbers are kept when the model supplied a strictly increasing
    run and renumbered 1..n otherwise.
    """
    items = partials if isinstance(partials, list) else []
    if max_shots is not None:
        items = items[:max_shots]
    shots = [validate_shot(item, scene_name, index) for index, item in enumerate(items)]

    sequences = [shot.sequence for shot in shots]
    if any(later <= earlier for earlier, later in zip(sequences, sequences[1:])):
        for index, shot in enumerate(shots):
            shot.sequence = index + 1
    return shots


def validate_item(partial: Any, name: str) -> ScriptItem:
    """Complete a prop record."""
    data = _as_dict(partial)
    name = _text(name, "") or _text(_pick(data, "name"), "Unnamed item")
    return ScriptItem(
        name=name,
        description=_text(_pick(data, "description"), name),
        category=_text(_pick(data, "category"), "prop"),
        owner=_text(_pick(data, "owner"), "None"),
        importance=_text(_pick(data, "importance"), "normal"),
        visual_prompt=_text(_pick(data, "visual_prompt"), f"Close view of {name}"),
    )
