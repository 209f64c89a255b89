"""
Scriptflow Parse State Manager

Owns the in-memory :class:`ExtendedParseState` of one parsing session and
is the only component that mutates it. Tracks work per sub-task (one per
character, scene or scene's shot batch) so an interrupted session resumes
from the last incomplete sub-task, escalates repeatedly failing sub-tasks
to a human, and mirrors the session into the Script Store on :meth:`save`.

Sub-task lifecycle::

    pending -> processing -> completed
                          -> failed -> (reset) -> pending
"""

import copy
import time
from typing import Any, Callable, List, Optional

from scriptflow.core.constants import (
    HUMAN_INTERVENTION_THRESHOLD,
    STAGE_WEIGHTS,
    WORK_STAGES,
    ParseStage,
    SubTaskStatus,
    SubTaskType,
)
from scriptflow.core.exceptions import (
    InvalidTransitionError,
    StateNotInitializedError,
    StoryBibleLockedError,
    SubTaskNotFoundError,
)
from scriptflow.core.logging_config import get_logger
from scriptflow.models.parse_state import CostEstimate, ExtendedParseState, StoryBible, SubTaskState
from scriptflow.models.script_models import ScriptCharacter, ScriptItem, ScriptMetadata, ScriptScene, Shot
from scriptflow.storage.stores import ScriptStore

logger = get_logger("parsing.state")


def overall_progress(stage: ParseStage, stage_percent: float) -> float:
    """
    Map a stage and its in-stage percentage onto the 0-100 scale.

    Stage weights are consecutive bands: metadata 0-10, characters 10-40,
    scenes 40-70, items 70-75, shots 75-100.
    """
    if stage == ParseStage.COMPLETED:
        return 100.0
    if stage not in WORK_STAGES:
        return 0.0
    start = sum(STAGE_WEIGHTS[s] for s in WORK_STAGES[:WORK_STAGES.index(stage)])
    return round(start + STAGE_WEIGHTS[stage] * stage_percent / 100, 2)


class ParseStateManager:
    """
    Session state owner.

    Usage:
        manager = ParseStateManager(store)
        state = await manager.load(script_id, project_id) or manager.initialize(script_id, project_id)
        task = manager.create_sub_task(SubTaskType.CHARACTER, "Alice")
        manager.start_sub_task(task.id)
        manager.complete_sub_task(task.id, record, model_used="gpt-4o-mini", token_used=812)
        await manager.save()
    """

    def __init__(
        self,
        script_store: ScriptStore,
        token_price_per_1k: float = 0.0,
        clock: Callable[[], float] = time.time
    ):
        self.store = script_store
        self.token_price_per_1k = token_price_per_1k
        self._clock = clock
        self._state: Optional[ExtendedParseState] = None

    @property
    def state(self) -> ExtendedParseState:
        if self._state is None:
            raise StateNotInitializedError()
        return self._state

    @property
    def has_state(self) -> bool:
        return self._state is not None

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, script_id: str, project_id: str) -> ExtendedParseState:
        """Start a fresh session."""
        now = self._clock()
        self._state = ExtendedParseState(
            script_id=script_id,
            project_id=project_id,
            started_at=now,
            last_updated=now,
        )
        logger.info(f"Initialized parse state for {project_id}/{script_id}")
        return self._state

    async def load(self, script_id: str, project_id: str) -> Optional[ExtendedParseState]:
        """
        Restore a saved session, or return None if there is none.

        Sessions saved before sub-task tracking existed get an empty sub-task
        map. Sub-tasks caught mid-flight by a crash go back to pending.
        """
        raw = await self.store.get_parse_state(script_id, project_id)
        if not raw:
            return None

        if "subTasks" not in raw:
            logger.info(f"Migrating legacy parse state for {project_id}/{script_id}")

        state = ExtendedParseState.from_dict(raw, script_id=script_id, project_id=project_id)
        for task in state.sub_tasks.values():
            if task.status == SubTaskStatus.PROCESSING:
                logger.info(f"Sub-task {task.id} was interrupted, returning it to pending")
                task.status = SubTaskStatus.PENDING
                task.start_time = None

        self._state = state
        self._refresh_task_progress()
        logger.info(
            f"Loaded parse state for {project_id}/{script_id} "
            f"(stage: {state.stage.value}, {len(state.sub_tasks)} sub-tasks)"
        )
        return state

    async def save(self) -> None:
        """Write the whole session to the Script Store."""
        state = self.state
        state.last_updated = self._clock()
        snapshot = state.to_dict()
        await self.store.update_parse_state(state.script_id, state.project_id, lambda _current: snapshot)

    # -------------------------------------------------------------------------
    # Sub-tasks
    # -------------------------------------------------------------------------

    def create_sub_task(self, task_type: SubTaskType, entity_name: str) -> SubTaskState:
        """Create the sub-task for (type, entity), or return the existing one unchanged."""
        task_id = SubTaskState.make_id(task_type, entity_name)
        existing = self.state.sub_tasks.get(task_id)
        if existing is not None:
            return existing

        task = SubTaskState(
            id=task_id,
            type=SubTaskType(task_type),
            entity_name=entity_name,
            created_at=self._clock(),
        )
        self.state.sub_tasks[task_id] = task
        self._refresh_task_progress()
        return task

    def get_sub_task(self, task_id: str) -> Optional[SubTaskState]:
        return self.state.sub_tasks.get(task_id)

    def _require(self, task_id: str) -> SubTaskState:
        task = self.state.sub_tasks.get(task_id)
        if task is None:
            raise SubTaskNotFoundError(task_id)
        return task

    def start_sub_task(self, task_id: str) -> SubTaskState:
        """Move a pending or failed sub-task to processing."""
        task = self._require(task_id)
        if task.status not in (SubTaskStatus.PENDING, SubTaskStatus.FAILED):
            raise InvalidTransitionError(task_id, task.status.value, SubTaskStatus.PROCESSING.value)
        task.status = SubTaskStatus.PROCESSING
        task.start_time = self._clock()
        task.end_time = None
        return task

    def complete_sub_task(
        self,
        task_id: str,
        result: Any = None,
        model_used: Optional[str] = None,
        token_used: int = 0
    ) -> SubTaskState:
        """Move a processing sub-task to completed and account its token usage."""
        task = self._require(task_id)
        if task.status != SubTaskStatus.PROCESSING:
            raise InvalidTransitionError(task_id, task.status.value, SubTaskStatus.COMPLETED.value)
        task.status = SubTaskStatus.COMPLETED
        task.result = result
        task.error = None
        task.end_time = self._clock()
        task.model_used = model_used
        task.token_used = token_used or 0
        self.add_usage(task.token_used, model_used)
        self._refresh_task_progress()
        return task

    def fail_sub_task(self, task_id: str, error: str) -> bool:
        """
        Record a failure.

        Returns:
            True once the sub-task has failed enough times to need human
            intervention. Callers must not retry it automatically after that
            without an explicit reset.
        """
        task = self._require(task_id)
        if task.status == SubTaskStatus.COMPLETED:
            raise InvalidTransitionError(task_id, task.status.value, SubTaskStatus.FAILED.value)
        task.status = SubTaskStatus.FAILED
        task.retry_count += 1
        task.error = error
        task.end_time = self._clock()
        self._refresh_task_progress()

        needs_intervention = task.retry_count >= HUMAN_INTERVENTION_THRESHOLD
        if needs_intervention:
            logger.warning(f"Sub-task {task_id} failed {task.retry_count} times and needs human intervention: {error}")
        else:
            logger.warning(f"Sub-task {task_id} failed (attempt {task.retry_count}): {error}")
        return needs_intervention

    def reset_sub_task(self, task_id: str) -> SubTaskState:
        """Return a failed sub-task to pending. The retry counter is kept."""
        task = self._require(task_id)
        if task.status == SubTaskStatus.PENDING:
            return task
        if task.status != SubTaskStatus.FAILED:
            raise InvalidTransitionError(task_id, task.status.value, SubTaskStatus.PENDING.value)
        task.status = SubTaskStatus.PENDING
        task.error = None
        task.start_time = None
        task.end_time = None
        return task

    def needs_intervention(self, task_id: str) -> bool:
        return self._require(task_id).needs_intervention

    def get_uncompleted_tasks(self) -> List[SubTaskState]:
        return [t for t in self.state.sub_tasks.values() if t.status != SubTaskStatus.COMPLETED]

    def get_tasks_by_type(self, task_type: SubTaskType) -> List[SubTaskState]:
        task_type = SubTaskType(task_type)
        return [t for t in self.state.sub_tasks.values() if t.type == task_type]

    def get_intervention_tasks(self) -> List[SubTaskState]:
        return [t for t in self.state.sub_tasks.values() if t.needs_intervention]

    def _refresh_task_progress(self) -> None:
        detail = self.state.progress_detail
        tasks = self.state.sub_tasks.values()
        detail.total_tasks = len(tasks)
        detail.completed_tasks = sum(1 for t in tasks if t.status == SubTaskStatus.COMPLETED)
        detail.overall = round(detail.completed_tasks / detail.total_tasks * 100) if detail.total_tasks else 0

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def set_metadata(self, metadata: ScriptMetadata) -> None:
        self.state.metadata = metadata

    def _check_unlocked(self, kind: str, name: str) -> None:
        if self.is_story_bible_locked():
            raise StoryBibleLockedError(
                f"Story bible is locked, cannot change {kind} '{name}'",
                {"kind": kind, "name": name}
            )

    def record_character(self, character: ScriptCharacter) -> None:
        """Add a character, replacing any earlier record with the same name."""
        self._check_unlocked("character", character.name)
        _replace_by_name(self.state.characters, character)

    def record_scene(self, scene: ScriptScene) -> None:
        """Add a scene, replacing any earlier record with the same name."""
        self._check_unlocked("scene", scene.name)
        _replace_by_name(self.state.scenes, scene)

    def record_item(self, item: ScriptItem) -> None:
        _replace_by_name(self.state.items, item)

    def record_shots(self, scene_name: str, shots: List[Shot]) -> None:
        """Replace the shot list of one scene."""
        self.state.shots = [s for s in self.state.shots if s.scene_name != scene_name] + list(shots)

    def record_quality_report(self, scene_name: str, report: Any) -> None:
        self.state.quality_reports[scene_name] = report

    # -------------------------------------------------------------------------
    # Story bible
    # -------------------------------------------------------------------------

    def lock_story_bible(self, visual_style: str = "") -> StoryBible:
        """
        Freeze the current characters and scenes.

        Raises:
            StoryBibleLockedError: The bible is already locked.
        """
        if self.is_story_bible_locked():
            raise StoryBibleLockedError("Story bible is already locked")
        bible = StoryBible(
            characters=tuple(c.model_copy(deep=True) for c in self.state.characters),
            scenes=tuple(s.model_copy(deep=True) for s in self.state.scenes),
            visual_style=visual_style,
            locked_at=self._clock(),
        )
        self.state.story_bible = bible
        logger.info(
            f"Story bible locked with {len(bible.characters)} characters "
            f"and {len(bible.scenes)} scenes"
        )
        return bible

    def is_story_bible_locked(self) -> bool:
        bible = self.state.story_bible
        return bible is not None and bible.locked

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def update_stage(self, stage: ParseStage) -> None:
        """Enter ``stage``; the in-stage percentage restarts at zero."""
        stage = ParseStage(stage)
        previous = self.state.stage
        self.state.stage = stage
        if stage == ParseStage.ERROR:
            return
        self.state.progress_detail.stage = 100.0 if stage == ParseStage.COMPLETED else 0.0
        self.state.progress = overall_progress(stage, self.state.progress_detail.stage)
        if previous != stage:
            logger.info(f"Stage {previous.value} -> {stage.value} ({self.state.progress:.0f}%)")

    def update_stage_progress(self, percent: float) -> float:
        """Set the in-stage percentage (clamped to 0-100) and return the overall progress."""
        percent = max(0.0, min(100.0, float(percent)))
        self.state.progress_detail.stage = percent
        if self.state.stage != ParseStage.ERROR:
            self.state.progress = overall_progress(self.state.stage, percent)
        return self.state.progress

    def mark_error(self, message: str) -> None:
        self.state.error = message
        self.update_stage(ParseStage.ERROR)

    def clear_error(self) -> None:
        self.state.error = None

    # -------------------------------------------------------------------------
    # Cost
    # -------------------------------------------------------------------------

    def add_usage(self, tokens: int, model: Optional[str] = None) -> None:
        """Account tokens spent outside a sub-task (e.g. metadata)."""
        self.state.cost_estimate.add(tokens or 0, model, self.token_price_per_1k)

    def get_cost_estimate(self) -> CostEstimate:
        return copy.deepcopy(self.state.cost_estimate)


def _replace_by_name(records: list, record) -> None:
    for index, existing in enumerate(records):
        if existing.name == record.name:
            records[index] = record
            return
    records.append(record)
