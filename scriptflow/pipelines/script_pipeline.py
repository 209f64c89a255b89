"""
Scriptflow Script Structuring Pipeline

Drives one script through the structuring stages:

    metadata -> characters -> scenes -> [items] -> shots -> completed

Each character, scene and scene's shot list is a sub-task tracked by the
ParseStateManager and persisted as soon as it finishes, so an interrupted
or failed run resumes where it stopped. Stages whose output already exists
are skipped.

Usage:
    pipeline = ScriptPipeline(client, JSONFileScriptStore("data"))
    state = await pipeline.run("script-1", "project-1", text, on_progress=print)
"""

import asyncio
import inspect
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from scriptflow.core.cancellation import CancellationToken
from scriptflow.core.config import PipelineConfig
from scriptflow.core.constants import WORK_STAGES, ParseStage, SubTaskStatus, SubTaskType
from scriptflow.core.exceptions import (
    CompletionError,
    ExtractionError,
    PipelineCancelledError,
    StagePreconditionError,
)
from scriptflow.core.logging_config import get_logger
from scriptflow.llm.text_completion import TextCompletion
from scriptflow.models.parse_state import ExtendedParseState, SubTaskState
from scriptflow.models.script_models import ScriptScene, Shot, validate_character, validate_scene
from scriptflow.parsing.multi_level_cache import MultiLevelCache
from scriptflow.parsing.parse_state_manager import ParseStateManager
from scriptflow.parsing.semantic_chunker import SemanticChunker
from scriptflow.pipelines.concurrency_limiter import ConcurrencyLimiter
from scriptflow.pipelines.script_extractor import Extraction, ScriptExtractor
from scriptflow.storage.stores import ScriptStore

logger = get_logger("pipelines.script")

ProgressCallback = Callable[[ParseStage, float, str], None]
ShotValidator = Callable[[ScriptScene, List[Shot]], Any]

ITEMS_TASK_NAME = "items"


@dataclass
class _Run:
    """Collaborators of one pipeline invocation."""
    manager: ParseStateManager
    extractor: ScriptExtractor
    config: PipelineConfig
    token: CancellationToken
    content: str
    on_progress: Optional[ProgressCallback] = None

    def report(self, message: str) -> None:
        state = self.manager.state
        logger.info(f"[{state.stage.value}] {state.progress:.0f}% {message}")
        if self.on_progress:
            self.on_progress(state.stage, state.progress, message)

    def retrying(self, error: Exception, attempt: int, delay: float) -> None:
        if self.manager.has_state:
            self.report(f"Attempt {attempt} failed ({error}), retrying in {delay:.1f}s")


@dataclass
class _EntityStage:
    """How one named-entity stage extracts and records its records."""
    stage: ParseStage
    task_type: SubTaskType
    kind: str
    extract_one: Callable[[str, str, CancellationToken], Awaitable[Extraction]]
    extract_batch: Callable[[Sequence[str], str, CancellationToken], Awaitable[Extraction]]
    validate: Callable[[Any, str], Any]
    record: Callable[[Any], None]
    recorded_names: Callable[[], List[str]]


class ScriptPipeline:
    """
    Resumable script structuring pipeline.

    Features:
    - Per-entity sub-tasks persisted after each completion
    - Batched extraction with per-entity fallback
    - Content-fingerprint cache ahead of character and scene calls
    - Cooperative cancellation and per-call timeouts
    - Optional prop extraction, story bible lock and shot validation
    """

    def __init__(
        self,
        completion: TextCompletion,
        script_store: ScriptStore,
        cache: Optional[MultiLevelCache] = None,
        config: Optional[PipelineConfig] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        chunker: Optional[SemanticChunker] = None,
        shot_validator: Optional[ShotValidator] = None
    ):
        """
        Initialize the pipeline.

        Args:
            completion: Text Completion capability
            script_store: Where sessions are persisted
            cache: Cache consulted before character and scene calls
            config: Pipeline settings
            limiter: Shared limiter; one sized by ``config.concurrency`` is created otherwise
            chunker: Chunker used for context selection
            shot_validator: Called with each scene and its shots; the return
                value is stored as the scene's quality report
        """
        self.completion = completion
        self.store = script_store
        self.cache = cache
        self._config = config or PipelineConfig()
        self._owns_limiter = limiter is None
        self.limiter = limiter or ConcurrencyLimiter(self._config.concurrency)
        self.chunker = chunker or SemanticChunker(max_tokens=self._config.chunk_max_tokens)
        self.shot_validator = shot_validator
        self.state_manager: Optional[ParseStateManager] = None
        self._active: Optional[_Run] = None

    # -------------------------------------------------------------------------
    # Configuration and control
    # -------------------------------------------------------------------------

    def get_config(self) -> PipelineConfig:
        """Copy of the current configuration."""
        return replace(self._config)

    def update_config(self, **changes: Any) -> PipelineConfig:
        """
        Apply configuration changes.

        A run in progress picks the changes up at its next call. A new
        concurrency limit applies from the next run.

        Raises:
            InvalidConfigError: Unknown key or invalid value.
        """
        self._config = self._config.updated(**changes)
        if self._active is not None:
            self._active.config = self._config
            self._active.extractor.config = self._config
        logger.info(f"Pipeline config updated: {changes}")
        return self.get_config()

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Cancel the active run. Returns False when nothing is running."""
        if self._active is None:
            return False
        self._active.token.cancel(reason or "Cancelled by caller")
        return True

    @property
    def is_running(self) -> bool:
        return self._active is not None

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def run(
        self,
        script_id: str,
        project_id: str,
        content: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ExtendedParseState:
        """
        Run every stage, resuming a saved session when there is one.

        Returns:
            The completed session state

        Raises:
            PipelineCancelledError: The token was cancelled. Finished work is saved.
            Exception: Any unexpected failure, after it is recorded on the
                session and the session is saved.
        """
        run = self._open(content, on_progress, cancel_token)

        async def work() -> None:
            await self._resume(run, script_id, project_id, restart_completed=True)
            await self._metadata_stage(run)
            await self._entity_stage(run, self._character_stage(run), self._metadata_names(run, "character_names"))
            await self._entity_stage(run, self._scene_stage(run), self._metadata_names(run, "scene_names"))
            await self._lock_story_bible(run)
            if run.config.extract_items:
                await self._items_stage(run)
            await self._shot_stage(run)

            run.manager.update_stage(ParseStage.COMPLETED)
            await run.manager.save()
            run.report("Parsing completed")

        return await self._execute(run, work)

    async def run_stage(
        self,
        script_id: str,
        project_id: str,
        content: str,
        stage: ParseStage,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ExtendedParseState:
        """
        Run a single stage on the saved session.

        Raises:
            StagePreconditionError: The stage's inputs do not exist yet.
        """
        stage = ParseStage(stage)
        if stage not in WORK_STAGES:
            raise StagePreconditionError(stage.value, "not a runnable stage")
        run = self._open(content, on_progress, cancel_token)

        async def work() -> None:
            await self._resume(run, script_id, project_id, restart_completed=False)
            finished = run.manager.state.stage == ParseStage.COMPLETED
            self._check_preconditions(run, stage)
            if stage == ParseStage.METADATA:
                await self._metadata_stage(run)
            elif stage == ParseStage.CHARACTERS:
                await self._entity_stage(run, self._character_stage(run), self._metadata_names(run, "character_names"))
            elif stage == ParseStage.SCENES:
                await self._entity_stage(run, self._scene_stage(run), self._metadata_names(run, "scene_names"))
                await self._lock_story_bible(run)
            elif stage == ParseStage.ITEMS:
                await self._items_stage(run)
            else:
                await self._shot_stage(run)
            if finished:
                # A re-run stage leaves a finished session finished
                run.manager.update_stage(ParseStage.COMPLETED)
                await run.manager.save()

        return await self._execute(run, work)

    # -------------------------------------------------------------------------
    # Run plumbing
    # -------------------------------------------------------------------------

    def _open(
        self,
        content: str,
        on_progress: Optional[ProgressCallback],
        cancel_token: Optional[CancellationToken]
    ) -> _Run:
        config = self._config
        if self._owns_limiter and self.limiter.capacity != config.concurrency:
            self.limiter = ConcurrencyLimiter(config.concurrency)

        manager = ParseStateManager(self.store, token_price_per_1k=config.token_price_per_1k)
        self.state_manager = manager
        token = cancel_token or CancellationToken()
        extractor = ScriptExtractor(self.completion, config, self.limiter, self.chunker, self.cache)
        run = _Run(
            manager=manager,
            extractor=extractor,
            config=config,
            token=token,
            content=content,
            on_progress=on_progress,
        )
        extractor.on_retry = run.retrying
        return run

    async def _execute(self, run: _Run, work: Callable[[], Awaitable[None]]) -> ExtendedParseState:
        self._active = run
        try:
            await work()
        except PipelineCancelledError as e:
            logger.warning(f"Pipeline cancelled: {e}")
            await self._save_after_failure(run)
            raise
        except Exception as e:
            logger.error(f"Pipeline failed: {e}")
            if run.manager.has_state:
                run.manager.mark_error(str(e))
                await self._save_after_failure(run)
                run.report(f"Failed: {e}")
            raise
        finally:
            self._active = None
        return run.manager.state

    async def _save_after_failure(self, run: _Run) -> None:
        if not run.manager.has_state:
            return
        try:
            await run.manager.save()
        except Exception as save_error:
            logger.error(f"Could not persist parse state after failure: {save_error}")

    async def _resume(self, run: _Run, script_id: str, project_id: str, restart_completed: bool) -> None:
        manager = run.manager
        state = await manager.load(script_id, project_id)
        if state is None:
            manager.initialize(script_id, project_id)
            await manager.save()
            run.report("Started new session")
            return

        if state.stage == ParseStage.COMPLETED and restart_completed:
            logger.info(f"Session {project_id}/{script_id} already completed, starting over")
            manager.initialize(script_id, project_id)
            await manager.save()
            run.report("Started new session")
            return

        if state.stage == ParseStage.ERROR:
            logger.info(f"Resuming failed session {project_id}/{script_id} (last error: {state.error})")
            manager.clear_error()
        run.report(f"Resuming session from stage {state.stage.value}")

    def _check_preconditions(self, run: _Run, stage: ParseStage) -> None:
        state = run.manager.state
        if stage in (ParseStage.CHARACTERS, ParseStage.SCENES) and state.metadata is None:
            raise StagePreconditionError(stage.value, "metadata has not been extracted")
        if stage == ParseStage.SHOTS and not state.scenes:
            raise StagePreconditionError(stage.value, "no scenes have been extracted")

    def _skip(self, run: _Run, stage: ParseStage, message: str) -> None:
        run.manager.update_stage(stage)
        run.manager.update_stage_progress(100)
        run.report(f"Skipping {stage.value}: {message}")

    @staticmethod
    def _metadata_names(run: _Run, field_name: str) -> List[str]:
        metadata = run.manager.state.metadata
        return _unique(getattr(metadata, field_name)) if metadata else []

    @staticmethod
    def _update_progress(run: _Run, tasks: Sequence[SubTaskState]) -> None:
        finished = sum(1 for t in tasks if t.status in (SubTaskStatus.COMPLETED, SubTaskStatus.FAILED))
        run.manager.update_stage_progress(finished / len(tasks) * 100 if tasks else 100)

    @staticmethod
    def _should_batch(config: PipelineConfig, count: int) -> bool:
        return config.prefer_batch and config.batch_min_entities <= count <= config.batch_max_entities

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def _metadata_stage(self, run: _Run) -> None:
        manager = run.manager
        if manager.state.metadata is not None:
            self._skip(run, ParseStage.METADATA, "metadata already extracted")
            return

        manager.update_stage(ParseStage.METADATA)
        run.report("Extracting metadata")
        extraction = await run.extractor.extract_metadata(run.content, run.token)
        metadata = extraction.value
        manager.set_metadata(metadata)
        manager.add_usage(extraction.tokens, extraction.model)
        manager.update_stage_progress(100)
        await manager.save()
        run.report(
            f"Found {len(metadata.character_names)} characters "
            f"and {len(metadata.scene_names)} scenes in '{metadata.title}'"
        )

    # -------------------------------------------------------------------------
    # Characters and scenes
    # -------------------------------------------------------------------------

    def _character_stage(self, run: _Run) -> _EntityStage:
        return _EntityStage(
            stage=ParseStage.CHARACTERS,
            task_type=SubTaskType.CHARACTER,
            kind="character",
            extract_one=run.extractor.extract_character,
            extract_batch=run.extractor.extract_characters_batch,
            validate=validate_character,
            record=run.manager.record_character,
            recorded_names=run.manager.state.character_names,
        )

    def _scene_stage(self, run: _Run) -> _EntityStage:
        return _EntityStage(
            stage=ParseStage.SCENES,
            task_type=SubTaskType.SCENE,
            kind="scene",
            extract_one=run.extractor.extract_scene,
            extract_batch=run.extractor.extract_scenes_batch,
            validate=validate_scene,
            record=run.manager.record_scene,
            recorded_names=run.manager.state.scene_names,
        )

    def _adopt_recorded(self, run: _Run, entity: _EntityStage, tasks: Iterable[SubTaskState]) -> None:
        """Mark sub-tasks done for records saved before sub-tasks were tracked."""
        recorded = set(entity.recorded_names())
        for task in tasks:
            if task.status == SubTaskStatus.PENDING and task.retry_count == 0 and task.entity_name in recorded:
                run.manager.start_sub_task(task.id)
                run.manager.complete_sub_task(task.id)

    async def _entity_stage(self, run: _Run, entity: _EntityStage, names: List[str]) -> None:
        manager = run.manager
        tasks = [manager.create_sub_task(entity.task_type, name) for name in names]
        self._adopt_recorded(run, entity, tasks)

        pending = [t for t in tasks if t.status != SubTaskStatus.COMPLETED and not t.needs_intervention]
        if pending and manager.is_story_bible_locked():
            logger.warning(f"Story bible is locked, leaving {len(pending)} {entity.kind}s unextracted")
            pending = []
        if not pending:
            self._skip(run, entity.stage, f"{len(tasks)} {entity.kind}s already done")
            return

        manager.update_stage(entity.stage)
        self._update_progress(run, tasks)
        run.report(f"Extracting {len(pending)} of {len(tasks)} {entity.kind}s")

        misses = await self._apply_cache(run, entity, tasks, pending)
        if misses and self._should_batch(run.config, len(misses)):
            misses = await self._extract_batch(run, entity, tasks, misses)
        if misses:
            await self._extract_each(run, entity, tasks, misses)

    async def _apply_cache(
        self,
        run: _Run,
        entity: _EntityStage,
        tasks: List[SubTaskState],
        pending: List[SubTaskState]
    ) -> List[SubTaskState]:
        manager = run.manager
        misses = []
        hits = 0
        for task in pending:
            cached = await run.extractor.cached(entity.kind, task.entity_name, run.content)
            if cached is None:
                misses.append(task)
                continue
            record = entity.validate(cached, task.entity_name)
            if task.status != SubTaskStatus.PROCESSING:
                manager.start_sub_task(task.id)
            entity.record(record)
            manager.complete_sub_task(task.id, record.to_dict(), model_used="cache")
            hits += 1

        if hits:
            self._update_progress(run, tasks)
            await manager.save()
            run.report(f"Reused {hits} cached {entity.kind}s")
        return misses

    async def _extract_batch(
        self,
        run: _Run,
        entity: _EntityStage,
        tasks: List[SubTaskState],
        batch: List[SubTaskState]
    ) -> List[SubTaskState]:
        """Extract ``batch`` in one call and return the sub-tasks it did not cover."""
        manager = run.manager
        for task in batch:
            if task.status != SubTaskStatus.PROCESSING:
                manager.start_sub_task(task.id)

        names = [task.entity_name for task in batch]
        try:
            extraction = await entity.extract_batch(names, run.content, run.token)
        except (CompletionError, ExtractionError) as e:
            logger.warning(f"Batch extraction of {len(names)} {entity.kind}s failed, extracting individually: {e}")
            run.report(f"Batch {entity.kind} extraction failed, falling back to one call each")
            return batch

        records = extraction.value
        covered = [task for task in batch if task.entity_name in records]
        share, remainder = divmod(extraction.tokens, len(covered)) if covered else (0, extraction.tokens)
        for task in covered:
            record = records[task.entity_name]
            entity.record(record)
            manager.complete_sub_task(task.id, record.to_dict(), model_used=extraction.model, token_used=share)
            await run.extractor.remember(entity.kind, task.entity_name, run.content, record)
        manager.add_usage(remainder, extraction.model)

        self._update_progress(run, tasks)
        await manager.save()
        run.report(f"Extracted {len(covered)} {entity.kind}s in one batch")

        missing = [task for task in batch if task.entity_name not in records]
        if missing:
            logger.info(f"{len(missing)} {entity.kind}s missing from batch response, extracting individually")
        return missing

    async def _extract_each(
        self,
        run: _Run,
        entity: _EntityStage,
        tasks: List[SubTaskState],
        pending: List[SubTaskState]
    ) -> None:
        manager = run.manager

        async def extract(task: SubTaskState) -> None:
            name = task.entity_name
            if task.status != SubTaskStatus.PROCESSING:
                manager.start_sub_task(task.id)
            try:
                extraction = await entity.extract_one(name, run.content, run.token)
            except (CompletionError, ExtractionError) as e:
                needs_intervention = manager.fail_sub_task(task.id, str(e))
                entity.record(entity.validate({}, name))
                self._update_progress(run, tasks)
                await manager.save()
                suffix = ", needs manual review" if needs_intervention else ", will retry on next run"
                run.report(f"Could not extract {entity.kind} '{name}'{suffix}")
                return

            record = extraction.value
            entity.record(record)
            manager.complete_sub_task(task.id, record.to_dict(), model_used=extraction.model, token_used=extraction.tokens)
            await run.extractor.remember(entity.kind, name, run.content, record)
            self._update_progress(run, tasks)
            await manager.save()
            run.report(f"Extracted {entity.kind} '{name}'")

        results = await asyncio.gather(*(extract(task) for task in pending), return_exceptions=True)
        _raise_first(results)

    async def _lock_story_bible(self, run: _Run) -> None:
        manager = run.manager
        if not run.config.lock_story_bible or manager.is_story_bible_locked():
            return
        manager.lock_story_bible(run.config.visual_style)
        await manager.save()
        run.report("Story bible locked")

    # -------------------------------------------------------------------------
    # Props
    # -------------------------------------------------------------------------

    async def _items_stage(self, run: _Run) -> None:
        manager = run.manager
        task = manager.create_sub_task(SubTaskType.PROP, ITEMS_TASK_NAME)
        if task.status == SubTaskStatus.COMPLETED or task.needs_intervention:
            self._skip(run, ParseStage.ITEMS, "props already extracted")
            return

        manager.update_stage(ParseStage.ITEMS)
        run.report("Extracting props")
        manager.start_sub_task(task.id)
        try:
            extraction = await run.extractor.extract_items(run.content, run.token)
        except (CompletionError, ExtractionError) as e:
            manager.fail_sub_task(task.id, str(e))
            manager.update_stage_progress(100)
            await manager.save()
            run.report(f"Could not extract props: {e}")
            return

        for item in extraction.value:
            manager.record_item(item)
        manager.complete_sub_task(
            task.id,
            {"count": len(extraction.value)},
            model_used=extraction.model,
            token_used=extraction.tokens,
        )
        manager.update_stage_progress(100)
        await manager.save()
        run.report(f"Extracted {len(extraction.value)} props")

    # -------------------------------------------------------------------------
    # Shots
    # -------------------------------------------------------------------------

    def _shot_scenes(self, run: _Run) -> List[ScriptScene]:
        state = run.manager.state
        if run.manager.is_story_bible_locked():
            return list(state.story_bible.scenes)
        return list(state.scenes)

    async def _shot_stage(self, run: _Run) -> None:
        manager = run.manager
        scenes = self._shot_scenes(run)
        if not scenes:
            self._skip(run, ParseStage.SHOTS, "no scenes")
            return

        tasks = [manager.create_sub_task(SubTaskType.SHOT, scene.name) for scene in scenes]
        by_name = {task.entity_name: task for task in tasks}
        pending = [
            scene for scene in scenes
            if by_name[scene.name].status != SubTaskStatus.COMPLETED and not by_name[scene.name].needs_intervention
        ]
        if not pending:
            self._skip(run, ParseStage.SHOTS, f"{len(scenes)} scenes already have shots")
            return

        manager.update_stage(ParseStage.SHOTS)
        self._update_progress(run, tasks)
        run.report(f"Generating shots for {len(pending)} of {len(scenes)} scenes")

        if self._should_batch(run.config, len(pending)):
            pending = await self._shots_batch(run, tasks, by_name, pending)
        if pending:
            await self._shots_each(run, tasks, by_name, pending)

    async def _finish_shots(self, run: _Run, task: SubTaskState, scene: ScriptScene, shots: List[Shot], model: str, tokens: int) -> None:
        manager = run.manager
        manager.record_shots(scene.name, shots)
        if self.shot_validator is not None:
            report = self.shot_validator(scene, shots)
            if inspect.isawaitable(report):
                report = await report
            manager.record_quality_report(scene.name, report)
        manager.complete_sub_task(task.id, {"shotCount": len(shots)}, model_used=model, token_used=tokens)

    async def _shots_batch(self, run: _Run, tasks: List[SubTaskState], by_name: dict, scenes: List[ScriptScene]) -> List[ScriptScene]:
        manager = run.manager
        for scene in scenes:
            task = by_name[scene.name]
            if task.status != SubTaskStatus.PROCESSING:
                manager.start_sub_task(task.id)

        try:
            extraction = await run.extractor.extract_shots_batch(scenes, run.content, run.token)
        except (CompletionError, ExtractionError) as e:
            logger.warning(f"Batch shot generation for {len(scenes)} scenes failed, generating per scene: {e}")
            run.report("Batch shot generation failed, falling back to one call per scene")
            return scenes

        groups = extraction.value
        covered = [scene for scene in scenes if scene.name in groups]
        share, remainder = divmod(extraction.tokens, len(covered)) if covered else (0, extraction.tokens)
        for scene in covered:
            await self._finish_shots(run, by_name[scene.name], scene, groups[scene.name], extraction.model, share)
        manager.add_usage(remainder, extraction.model)

        self._update_progress(run, tasks)
        await manager.save()
        run.report(f"Generated shots for {len(covered)} scenes in one batch")
        return [scene for scene in scenes if scene.name not in groups]

    async def _shots_each(self, run: _Run, tasks: List[SubTaskState], by_name: dict, scenes: List[ScriptScene]) -> None:
        manager = run.manager

        async def generate(scene: ScriptScene) -> None:
            task = by_name[scene.name]
            if task.status != SubTaskStatus.PROCESSING:
                manager.start_sub_task(task.id)
            try:
                extraction = await run.extractor.extract_shots(scene, run.content, run.token)
            except (CompletionError, ExtractionError) as e:
                manager.fail_sub_task(task.id, str(e))
                logger.error(f"Giving up on shots for scene '{scene.name}': {e}")
                self._update_progress(run, tasks)
                await manager.save()
                run.report(f"Could not generate shots for scene '{scene.name}'")
                return

            await self._finish_shots(run, task, scene, extraction.value, extraction.model, extraction.tokens)
            self._update_progress(run, tasks)
            await manager.save()
            run.report(f"Generated {len(extraction.value)} shots for scene '{scene.name}'")

        results = await asyncio.gather(*(generate(scene) for scene in scenes), return_exceptions=True)
        _raise_first(results)


def _unique(names: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for name in names:
        name = (name or "").strip()
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


def _raise_first(results: List[Any]) -> None:
    """Re-raise the first exception from a gather, preferring cancellation."""
    errors = [r for r in results if isinstance(r, BaseException)]
    if not errors:
        return
    for error in errors:
        if isinstance(error, PipelineCancelledError):
            raise error
    raise errors[0]
