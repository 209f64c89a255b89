"""
Scriptflow Script Extractor

Turns script text into validated records through the Text Completion
capability. Every call is bounded by the concurrency limiter, carries a
wall-clock timeout, races the cancellation token and is retried on
transient failure. Raw responses go through the JSON repair cascade and
then through the validators, so callers always get complete records.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from scriptflow.core.cancellation import CancellationToken
from scriptflow.core.config import PipelineConfig
from scriptflow.core.exceptions import (
    CompletionRejectedError,
    ExtractionError,
    TransientCompletionError,
)
from scriptflow.core.logging_config import get_logger
from scriptflow.core.retry import RetryConfig, retry_async_call
from scriptflow.llm import prompts
from scriptflow.llm.text_completion import CompletionResult, TextCompletion
from scriptflow.models.script_models import (
    ScriptCharacter,
    ScriptItem,
    ScriptMetadata,
    ScriptScene,
    Shot,
    validate_character,
    validate_item,
    validate_metadata,
    validate_scene,
    validate_shots,
)
from scriptflow.parsing.json_repair import repair_and_parse
from scriptflow.parsing.multi_level_cache import MultiLevelCache
from scriptflow.parsing.semantic_chunker import SemanticChunk, SemanticChunker, count_words
from scriptflow.pipelines.concurrency_limiter import ConcurrencyLimiter

logger = get_logger("pipelines.extractor")

_PARAGRAPH_BREAK = re.compile(r'\n[ \t]*\n')

RetryCallback = Callable[[Exception, int, float], None]


@dataclass
class Extraction:
    """A parsed value plus the completion call that produced it."""
    value: Any
    model: str = ""
    tokens: int = 0

    @classmethod
    def from_result(cls, value: Any, result: CompletionResult) -> 'Extraction':
        return cls(value=value, model=result.model, tokens=result.total_tokens)


class ScriptExtractor:
    """
    Completion-backed extraction of metadata, characters, scenes, props and shots.

    Usage:
        extractor = ScriptExtractor(client, PipelineConfig(), ConcurrencyLimiter(1))
        extraction = await extractor.extract_character("Alice", text, token)
        character = extraction.value
    """

    def __init__(
        self,
        completion: TextCompletion,
        config: PipelineConfig,
        limiter: ConcurrencyLimiter,
        chunker: Optional[SemanticChunker] = None,
        cache: Optional[MultiLevelCache] = None,
        on_retry: Optional[RetryCallback] = None
    ):
        self.completion = completion
        self.config = config
        self.limiter = limiter
        self.chunker = chunker or SemanticChunker(max_tokens=config.chunk_max_tokens)
        self.cache = cache if config.use_cache else None
        self.on_retry = on_retry
        self._chunked_text: Optional[str] = None
        self._chunks: List[SemanticChunk] = []

    @property
    def model_name(self) -> str:
        return getattr(self.completion, "model", "") or ""

    # -------------------------------------------------------------------------
    # Completion calls
    # -------------------------------------------------------------------------

    def _retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            retryable_exceptions=(TransientCompletionError,),
        )

    def _shot_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.config.shot_attempts - 1,
            base_delay=self.config.shot_retry_delay,
            max_delay=self.config.shot_retry_delay,
            exponential_base=1.0,
            jitter=False,
            retryable_exceptions=(TransientCompletionError, ExtractionError),
        )

    async def _attempt(self, prompt: str, token: CancellationToken) -> CompletionResult:
        result = await self.limiter.run(
            lambda: token.run(
                self.completion.generate_text(prompt, system_prompt=prompts.SYSTEM_PROMPT),
                timeout=self.config.call_timeout,
            )
        )
        if result.success:
            return result
        message = result.error or "Completion failed"
        if result.retryable:
            raise TransientCompletionError(message, status_code=result.status_code)
        raise CompletionRejectedError(message, status_code=result.status_code)

    async def complete(self, prompt: str, token: CancellationToken, retry: bool = True) -> CompletionResult:
        """
        One completion call with the full call discipline.

        With ``retry=False`` a transient failure is raised after the first
        attempt, leaving retries to the caller's own loop.

        Raises:
            TransientCompletionError: Retries were exhausted.
            CompletionRejectedError: The provider refused the request.
            PipelineCancelledError: The token was cancelled.
        """
        if not retry:
            token.raise_if_cancelled()
            return await self._attempt(prompt, token)
        return await retry_async_call(
            self._attempt,
            prompt,
            token,
            config=self._retry_config(),
            on_retry=self.on_retry,
            cancel_token=token,
        )

    async def complete_json(
        self,
        prompt: str,
        token: CancellationToken,
        entity: str,
        retry: bool = True
    ) -> Tuple[Any, CompletionResult]:
        """Complete and repair the response into a JSON value."""
        result = await self.complete(prompt, token, retry=retry)
        repaired = repair_and_parse(result.text)
        if not repaired.success:
            raise ExtractionError(entity, repaired.error or "Unparseable response", attempts=repaired.attempts)
        if repaired.attempts:
            logger.debug(f"Repaired response for {entity}: {', '.join(repaired.attempts)}")
        return repaired.value, result

    # -------------------------------------------------------------------------
    # Context selection
    # -------------------------------------------------------------------------

    def chunks(self, content: str) -> List[SemanticChunk]:
        """Semantic chunks of ``content``, computed once per text."""
        if self._chunked_text != content:
            self._chunks = self.chunker.chunk(content)
            self._chunked_text = content
            logger.debug(f"Split {len(content)} chars into {len(self._chunks)} chunks")
        return self._chunks

    def _segments(self, content: str) -> List[str]:
        if self.config.use_semantic_chunking:
            return [chunk.content for chunk in self.chunks(content)]
        return [p.strip() for p in _PARAGRAPH_BREAK.split(content) if p.strip()]

    def context_for(self, content: str, names: Sequence[str], budget: int) -> str:
        """
        Text relevant to ``names`` within ``budget`` characters.

        Segments mentioning any of the names are taken in source order. Text
        with no mentions falls back to its opening.
        """
        if len(content) <= budget:
            return content

        selected: List[str] = []
        used = 0
        for segment in self._segments(content):
            if not any(name and name in segment for name in names):
                continue
            if used + len(segment) > budget:
                remaining = budget - used
                if remaining > 0 and not selected:
                    selected.append(segment[:remaining])
                break
            selected.append(segment)
            used += len(segment) + 2

        return "\n\n".join(selected) if selected else content[:budget]

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def cache_key(self, kind: str, name: str, content: str) -> str:
        return MultiLevelCache.generate_key(kind, {
            "name": name,
            "fingerprint": MultiLevelCache.fingerprint(content),
            "model": self.model_name,
        })

    async def cached(self, kind: str, name: str, content: str) -> Optional[Dict[str, Any]]:
        if self.cache is None:
            return None
        return await self.cache.get(self.cache_key(kind, name, content))

    async def remember(self, kind: str, name: str, content: str, record: Any) -> None:
        if self.cache is not None:
            await self.cache.set(self.cache_key(kind, name, content), record.to_dict())

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def extract_metadata(self, content: str, token: CancellationToken) -> Extraction:
        """Metadata from the opening of the text."""
        prompt = prompts.render(prompts.METADATA_PROMPT, content=content[:self.config.metadata_prefix_chars])
        value, result = await self.complete_json(prompt, token, "metadata")
        if not isinstance(value, dict):
            raise ExtractionError("metadata", f"Expected an object, got {type(value).__name__}")

        metadata: ScriptMetadata = validate_metadata(value)
        if not metadata.word_count:
            metadata.word_count = count_words(content)
        return Extraction.from_result(metadata, result)

    # -------------------------------------------------------------------------
    # Characters and scenes
    # -------------------------------------------------------------------------

    async def extract_character(self, name: str, content: str, token: CancellationToken) -> Extraction:
        context = self.context_for(content, [name], self.config.entity_context_chars)
        prompt = prompts.render(prompts.CHARACTER_PROMPT, name=name, content=context)
        value, result = await self.complete_json(prompt, token, f"character '{name}'")
        value = _single_object(value, f"character '{name}'")
        character: ScriptCharacter = validate_character(value, name)
        return Extraction.from_result(character, result)

    async def extract_characters_batch(self, names: Sequence[str], content: str, token: CancellationToken) -> Extraction:
        """
        One call covering several characters.

        The value maps each requested name to its record. Names the model
        skipped are absent and must be extracted individually.
        """
        context = self.context_for(content, names, self.config.batch_context_chars)
        prompt = prompts.render(prompts.CHARACTERS_BATCH_PROMPT, names=", ".join(names), content=context)
        value, result = await self.complete_json(prompt, token, "character batch")
        items = _batch_items(value, "characters", "character batch")
        records = {name: validate_character(item, name) for name, item in align_to_names(items, names).items()}
        return Extraction.from_result(records, result)

    async def extract_scene(self, name: str, content: str, token: CancellationToken) -> Extraction:
        context = self.context_for(content, [name], self.config.entity_context_chars)
        prompt = prompts.render(prompts.SCENE_PROMPT, name=name, content=context)
        value, result = await self.complete_json(prompt, token, f"scene '{name}'")
        value = _single_object(value, f"scene '{name}'")
        scene: ScriptScene = validate_scene(value, name)
        return Extraction.from_result(scene, result)

    async def extract_scenes_batch(self, names: Sequence[str], content: str, token: CancellationToken) -> Extraction:
        """One call covering several scenes; see :meth:`extract_characters_batch`."""
        context = self.context_for(content, names, self.config.batch_context_chars)
        prompt = prompts.render(prompts.SCENES_BATCH_PROMPT, names=", ".join(names), content=context)
        value, result = await self.complete_json(prompt, token, "scene batch")
        items = _batch_items(value, "scenes", "scene batch")
        records = {name: validate_scene(item, name) for name, item in align_to_names(items, names).items()}
        return Extraction.from_result(records, result)

    # -------------------------------------------------------------------------
    # Props
    # -------------------------------------------------------------------------

    async def extract_items(self, content: str, token: CancellationToken) -> Extraction:
        prompt = prompts.render(prompts.ITEMS_PROMPT, content=content[:self.config.entity_context_chars])
        value, result = await self.complete_json(prompt, token, "items")
        items: List[ScriptItem] = []
        seen = set()
        for raw in _batch_items(value, "items", "items"):
            if not isinstance(raw, dict):
                continue
            item = validate_item(raw, raw.get("name", ""))
            if item.name not in seen:
                seen.add(item.name)
                items.append(item)
        return Extraction.from_result(items, result)

    # -------------------------------------------------------------------------
    # Shots
    # -------------------------------------------------------------------------

    def _scene_shots(self, scene_name: str, raw: Any) -> List[Shot]:
        shots = validate_shots(raw, scene_name, max_shots=self.config.max_shots)
        if not shots:
            raise ExtractionError(f"shots for '{scene_name}'", "Response contained no shots")
        if len(shots) < self.config.min_shots:
            logger.warning(
                f"Scene '{scene_name}' got {len(shots)} shots, "
                f"fewer than the {self.config.min_shots} requested"
            )
        return shots

    async def _shots_once(self, scene: ScriptScene, content: str, token: CancellationToken) -> Extraction:
        context = self.context_for(content, [scene.name], self.config.shot_context_chars)
        prompt = prompts.render(
            prompts.SHOTS_PROMPT,
            scene_name=scene.name,
            scene_description=scene.description,
            characters=", ".join(scene.characters) or "unspecified",
            min_shots=self.config.min_shots,
            max_shots=self.config.max_shots,
            content=context,
        )
        value, result = await self.complete_json(prompt, token, f"shots for '{scene.name}'", retry=False)
        if isinstance(value, dict):
            value = value.get("shots", [])
        return Extraction.from_result(self._scene_shots(scene.name, value), result)

    async def extract_shots(self, scene: ScriptScene, content: str, token: CancellationToken) -> Extraction:
        """
        Shot list for one scene.

        Attempted up to ``shot_attempts`` times with a fixed delay, which is
        the only retry loop for shots. An empty list counts as a failed
        attempt. A rejected request is not retried.
        """
        return await retry_async_call(
            self._shots_once,
            scene,
            content,
            token,
            config=self._shot_retry_config(),
            on_retry=self.on_retry,
            cancel_token=token,
        )

    async def extract_shots_batch(self, scenes: Sequence[ScriptScene], content: str, token: CancellationToken) -> Extraction:
        """
        Shot lists for several scenes in one call.

        The value maps scene name to shots. Scenes the model skipped or left
        empty are absent.
        """
        names = [scene.name for scene in scenes]
        listing = "\n".join(f"- {scene.name}: {scene.description}" for scene in scenes)
        context = self.context_for(content, names, self.config.shot_context_chars)
        prompt = prompts.render(
            prompts.SHOTS_BATCH_PROMPT,
            scenes=listing,
            min_shots=self.config.min_shots,
            max_shots=self.config.max_shots,
            content=context,
        )
        value, result = await self.complete_json(prompt, token, "shot batch")

        if isinstance(value, dict) and not any(key in value for key in ("scenes", "items", "data", "shots")):
            # {"Scene name": [shots]}
            groups = {name: shots for name, shots in value.items() if name in names}
        else:
            items = _batch_items(value, "scenes", "shot batch")
            groups = {
                name: item.get("shots", [])
                for name, item in align_to_names(items, names, name_keys=("sceneName", "scene_name", "name")).items()
            }

        shots: Dict[str, List[Shot]] = {}
        for name, raw in groups.items():
            try:
                shots[name] = self._scene_shots(name, raw)
            except ExtractionError as e:
                logger.warning(f"Batch skipped {e.entity}")
        return Extraction.from_result(shots, result)


def align_to_names(
    items: List[Any],
    names: Sequence[str],
    name_keys: Sequence[str] = ("name",)
) -> Dict[str, Dict[str, Any]]:
    """
    Pair batch items with the requested names.

    Items are matched by position. A requested name whose positional item is
    missing or not an object is matched to any item carrying that name
    instead. Extra items are ignored.
    """
    by_name: Dict[str, Dict[str, Any]] = {}
    for item in items:
        if isinstance(item, dict):
            for key in name_keys:
                value = item.get(key)
                if isinstance(value, str) and value.strip() in names:
                    by_name.setdefault(value.strip(), item)
                    break

    aligned: Dict[str, Dict[str, Any]] = {}
    for index, name in enumerate(names):
        item = items[index] if index < len(items) else None
        if not isinstance(item, dict):
            item = by_name.get(name)
        if item is not None:
            aligned[name] = item
    return aligned


def _single_object(value: Any, entity: str) -> Dict[str, Any]:
    if isinstance(value, list):
        value = next((item for item in value if isinstance(item, dict)), None)
    if not isinstance(value, dict):
        raise ExtractionError(entity, "Expected a JSON object")
    return value


def _batch_items(value: Any, key: str, entity: str) -> List[Any]:
    if isinstance(value, dict):
        for candidate in (key, "items", "data"):
            if isinstance(value.get(candidate), list):
                return value[candidate]
        return [value]
    if isinstance(value, list):
        return value
    raise ExtractionError(entity, f"Expected a JSON array, got {type(value).__name__}")
