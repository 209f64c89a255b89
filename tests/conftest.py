"""
Pytest Configuration and Fixtures

Shared fixtures for all tests.
"""

import asyncio
import json
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from scriptflow.core.config import PipelineConfig
from scriptflow.llm.text_completion import CompletionResult, TokenUsage
from scriptflow.storage.stores import InMemoryScriptStore

_PROMPT_KINDS = [
    (re.compile(r'^Analyze the opening'), "metadata"),
    (re.compile(r'^Build a detailed profile of the character "(.+?)"'), "character"),
    (re.compile(r'^Build a detailed profile for each of these characters: (.+)'), "character_batch"),
    (re.compile(r'^Describe the scene "(.+?)"'), "scene"),
    (re.compile(r'^Describe each of these scenes: (.+)'), "scene_batch"),
    (re.compile(r'^Break the scene "(.+?)"'), "shots"),
    (re.compile(r'^Break each of these scenes'), "shot_batch"),
    (re.compile(r'^List the props'), "items"),
]

_SCENE_LISTING = re.compile(r'(?m)^- (.+?): ')

DEFAULT_SHOTS = [
    {"shotType": "long", "cameraMovement": "static", "description": "Wide view of the place"},
    {"shotType": "medium", "cameraMovement": "push", "description": "The characters meet"},
    {"shotType": "close_up", "cameraMovement": "static", "description": "A face in shadow", "dialogue": "Who's there?"},
]


def classify_prompt(prompt: str) -> Tuple[str, Optional[str]]:
    for pattern, kind in _PROMPT_KINDS:
        match = pattern.search(prompt)
        if match:
            return kind, match.group(1) if match.groups() else None
    raise AssertionError(f"Unrecognised prompt: {prompt[:80]}")


class ScriptedCompletion:
    """
    Text Completion double that answers each prompt kind from canned data.

    Queued replies in ``replies[(kind, name)]`` (or ``replies[(kind, None)]``)
    are served first; a queued exception is raised and a queued
    CompletionResult is returned as is.
    """

    model = "fake-model"

    def __init__(self):
        self.metadata: Dict[str, Any] = {
            "title": "The Harbor",
            "characterNames": ["A", "B"],
            "sceneNames": ["Dock", "Lighthouse"],
            "genre": "Drama",
        }
        self.characters: Dict[str, Dict[str, Any]] = {}
        self.scenes: Dict[str, Dict[str, Any]] = {}
        self.shots: Dict[str, List[Dict[str, Any]]] = {}
        self.items: List[Dict[str, Any]] = [{"name": "Lantern", "owner": "A"}]
        self.replies: Dict[Tuple[str, Optional[str]], List[Any]] = {}
        self.hold: set = set()
        self.held = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.tokens = 15

    def count(self, kind: str, name: Optional[str] = None) -> int:
        return sum(1 for k, n in self.calls if k == kind and (name is None or n == name))

    def queue(self, kind: str, name: Optional[str], *replies: Any) -> None:
        self.replies.setdefault((kind, name), []).extend(replies)

    def _character(self, name: str) -> Dict[str, Any]:
        return {"name": name, "gender": "female", "identity": f"{name} the sailor", **self.characters.get(name, {})}

    def _scene(self, name: str) -> Dict[str, Any]:
        return {"name": name, "locationType": "outdoor", "description": f"The {name}", **self.scenes.get(name, {})}

    def _default(self, kind: str, name: Optional[str], prompt: str) -> str:
        if kind == "metadata":
            return json.dumps(self.metadata)
        if kind == "character":
            return json.dumps(self._character(name))
        if kind == "character_batch":
            return json.dumps([self._character(n) for n in name.split(", ")])
        if kind == "scene":
            return json.dumps(self._scene(name))
        if kind == "scene_batch":
            return json.dumps([self._scene(n) for n in name.split(", ")])
        if kind == "shots":
            return json.dumps(self.shots.get(name, DEFAULT_SHOTS))
        if kind == "shot_batch":
            names = _SCENE_LISTING.findall(prompt)
            return json.dumps([{"sceneName": n, "shots": self.shots.get(n, DEFAULT_SHOTS)} for n in names])
        return json.dumps(self.items)

    async def generate_text(self, prompt, system_prompt=None, params=None):
        kind, name = classify_prompt(prompt)
        self.calls.append((kind, name))

        if kind in self.hold:
            self.held.set()
            await self.release.wait()

        queued = self.replies.get((kind, name)) or self.replies.get((kind, None))
        if queued:
            reply = queued.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            if isinstance(reply, CompletionResult):
                return reply
        else:
            reply = self._default(kind, name, prompt)
        return CompletionResult.ok(reply, model=self.model, usage=TokenUsage(10, 5, self.tokens))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_script_text() -> str:
    """Short two-chapter story mentioning two characters and two places."""
    return (
        "Chapter 1\n\n"
        "A walked down to the Dock at dawn. The fog was thick and the boats creaked.\n\n"
        "B was already there, mending a net. \"You're late,\" B said.\n\n"
        "Chapter 2\n\n"
        "That night A climbed the Lighthouse stairs. B followed with a lantern.\n\n"
        "At the top they saw the ship that should not have been there."
    )


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def script_store() -> InMemoryScriptStore:
    return InMemoryScriptStore()


@pytest.fixture
def fast_config() -> PipelineConfig:
    """Pipeline settings with every delay set to zero."""
    return PipelineConfig(
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        shot_retry_delay=0.0,
        call_timeout=5.0,
        use_cache=False,
    )


@pytest.fixture
def completion_factory():
    """Build additional independent completions within one test."""
    return ScriptedCompletion
