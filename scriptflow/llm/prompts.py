"""
Scriptflow Prompt Templates

Prompt text for each extraction stage. Placeholders use ``{name}`` and are
filled by :func:`render`; literal braces in the JSON examples are left
alone because only known placeholders are substituted.
"""

from typing import Any

from scriptflow.core.constants import CameraMovement, ShotType

SHOT_TYPES = ", ".join(t.value for t in ShotType)
CAMERA_MOVEMENTS = ", ".join(m.value for m in CameraMovement)


def render(template: str, **variables: Any) -> str:
    """Substitute ``{name}`` placeholders."""
    for name, value in variables.items():
        template = template.replace("{" + name + "}", str(value))
    return template


SYSTEM_PROMPT = """You are a professional script supervisor who breaks narrative text down into production data.
Answer with valid JSON only. Do not add commentary before or after the JSON."""


METADATA_PROMPT = """Analyze the opening of this script or novel and return its metadata.

TEXT:
{content}

Return a JSON object:
{
  "title": "work title",
  "wordCount": 0,
  "estimatedDuration": "estimated screen time, e.g. 90 minutes",
  "characterCount": 0,
  "characterNames": ["every named character, main characters first"],
  "sceneCount": 0,
  "sceneNames": ["every distinct location or scene, in order of appearance"],
  "chapterCount": 0,
  "genre": "genre",
  "tone": "overall tone"
}"""


CHARACTER_FIELDS = """{
  "name": "character name",
  "gender": "male | female | unknown",
  "age": "age or age range",
  "identity": "occupation or role in the story",
  "appearance": {
    "height": "height",
    "build": "build",
    "face": "facial features",
    "hair": "hairstyle and colour",
    "clothing": "typical clothing"
  },
  "personality": ["trait"],
  "signatureItems": ["item the character is associated with"],
  "emotionalArc": [{"phase": "story phase", "emotion": "emotional state"}],
  "relationships": [{"character": "other character", "relation": "relationship"}],
  "visualPrompt": "one-paragraph visual description for image generation"
}"""


CHARACTER_PROMPT = """Build a detailed profile of the character "{name}" from the text below.

TEXT:
{content}

Return a JSON object:
""" + CHARACTER_FIELDS


CHARACTERS_BATCH_PROMPT = """Build a detailed profile for each of these characters: {names}

TEXT:
{content}

Return a JSON array with exactly one object per character, in the order listed above. Each object:
""" + CHARACTER_FIELDS


SCENE_FIELDS = """{
  "name": "scene name",
  "locationType": "indoor | outdoor | unknown",
  "description": "what the place looks like and what happens there",
  "timeOfDay": "time of day",
  "season": "season",
  "weather": "weather",
  "environment": {
    "architecture": "architecture",
    "furnishings": ["notable furnishing or prop"],
    "lighting": "lighting",
    "colorTone": "dominant colour tone"
  },
  "sceneFunction": "dramatic function of the scene",
  "visualPrompt": "one-paragraph visual description for image generation",
  "characters": ["names of characters present"]
}"""


SCENE_PROMPT = """Describe the scene "{name}" from the text below.

TEXT:
{content}

Return a JSON object:
""" + SCENE_FIELDS


SCENES_BATCH_PROMPT = """Describe each of these scenes: {names}

TEXT:
{content}

Return a JSON array with exactly one object per scene, in the order listed above. Each object:
""" + SCENE_FIELDS


ITEMS_PROMPT = """List the props and significant objects in the text below.

TEXT:
{content}

Return a JSON array. Each object:
{
  "name": "item name",
  "description": "what it looks like",
  "category": "weapon | document | vehicle | costume | prop | other",
  "owner": "character who owns or uses it",
  "importance": "high | normal | low",
  "visualPrompt": "visual description for image generation"
}"""


SHOT_FIELDS = """{
  "sequence": 1,
  "shotType": "one of: """ + SHOT_TYPES + """",
  "cameraMovement": "one of: """ + CAMERA_MOVEMENTS + """",
  "description": "what the camera sees",
  "dialogue": "spoken line, or null",
  "sound": "sound effects or music, or null",
  "duration": 3,
  "characters": ["names of characters in frame"]
}"""


SHOTS_PROMPT = """Break the scene "{scene_name}" into {min_shots}-{max_shots} camera shots.

SCENE: {scene_description}
CHARACTERS PRESENT: {characters}

TEXT:
{content}

Return a JSON array of shots in screen order. Each shot:
""" + SHOT_FIELDS


SHOTS_BATCH_PROMPT = """Break each of these scenes into {min_shots}-{max_shots} camera shots:
{scenes}

TEXT:
{content}

Return a JSON array with one object per scene, in the order listed above:
[
  {
    "sceneName": "scene name",
    "shots": [shot, ...]
  }
]
Each shot:
""" + SHOT_FIELDS
