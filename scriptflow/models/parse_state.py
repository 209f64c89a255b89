"""
Parse Session State

Dataclasses describing one resumable parsing session: the per-entity
sub-tasks, accumulated records, progress, story bible and cost totals.
Everything round-trips through ``to_dict``/``from_dict`` with camelCase
keys so the Script Store can persist it as plain JSON.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from scriptflow.core.constants import (
    HUMAN_INTERVENTION_THRESHOLD,
    TERMINAL_STAGES,
    ParseStage,
    SubTaskStatus,
    SubTaskType,
)
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
)


@dataclass
class SubTaskState:
    """Resumable unit of work for one named entity."""
    id: str
    type: SubTaskType
    entity_name: str
    status: SubTaskStatus = SubTaskStatus.PENDING
    retry_count: int = 0
    result: Any = None
    error: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    model_used: Optional[str] = None
    token_used: int = 0

    @staticmethod
    def make_id(task_type: SubTaskType, entity_name: str) -> str:
        return f"{SubTaskType(task_type).value}_{entity_name}"

    @property
    def needs_intervention(self) -> bool:
        return self.status == SubTaskStatus.FAILED and self.retry_count >= HUMAN_INTERVENTION_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entityName": self.entity_name,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "result": self.result,
            "error": self.error,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "createdAt": self.created_at,
            "modelUsed": self.model_used,
            "tokenUsed": self.token_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubTaskState':
        task_type = SubTaskType(data["type"])
        entity_name = data.get("entityName", "")
        return cls(
            id=data.get("id") or cls.make_id(task_type, entity_name),
            type=task_type,
            entity_name=entity_name,
            status=SubTaskStatus(data.get("status", SubTaskStatus.PENDING.value)),
            retry_count=int(data.get("retryCount", 0)),
            result=data.get("result"),
            error=data.get("error"),
            start_time=data.get("startTime"),
            end_time=data.get("endTime"),
            created_at=data.get("createdAt") or time.time(),
            model_used=data.get("modelUsed"),
            token_used=int(data.get("tokenUsed") or 0),
        )


@dataclass
class ProgressDetail:
    """In-stage percentage and sub-task completion ratio."""
    stage: float = 0.0
    overall: float = 0.0
    completed_tasks: int = 0
    total_tasks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "overall": self.overall,
            "completedTasks": self.completed_tasks,
            "totalTasks": self.total_tasks,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ProgressDetail':
        data = data or {}
        return cls(
            stage=float(data.get("stage", 0.0)),
            overall=float(data.get("overall", 0.0)),
            completed_tasks=int(data.get("completedTasks", 0)),
            total_tasks=int(data.get("totalTasks", 0)),
        )


@dataclass
class CostEstimate:
    """Running token totals for the session, broken down by model."""
    total_tokens: int = 0
    total_usd: float = 0.0
    breakdown: Dict[str, int] = field(default_factory=dict)

    def add(self, tokens: int, model: Optional[str], price_per_1k: float = 0.0) -> None:
        if tokens <= 0:
            return
        self.total_tokens += tokens
        self.total_usd = round(self.total_usd + tokens / 1000 * price_per_1k, 6)
        key = model or "unknown"
        self.breakdown[key] = self.breakdown.get(key, 0) + tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "totalUSD": self.total_usd,
            "breakdown": dict(self.breakdown),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CostEstimate':
        data = data or {}
        return cls(
            total_tokens=int(data.get("totalTokens", 0)),
            total_usd=float(data.get("totalUSD", 0.0)),
            breakdown=dict(data.get("breakdown") or {}),
        )


@dataclass(frozen=True)
class StoryBible:
    """Locked snapshot of characters, scenes and visual style."""
    characters: Tuple[ScriptCharacter, ...]
    scenes: Tuple[ScriptScene, ...]
    visual_style: str
    locked_at: float
    locked: bool = True

    def character(self, name: str) -> Optional[ScriptCharacter]:
        return next((c for c in self.characters if c.name == name), None)

    def scene(self, name: str) -> Optional[ScriptScene]:
        return next((s for s in self.scenes if s.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locked": self.locked,
            "characters": [c.to_dict() for c in self.characters],
            "scenes": [s.to_dict() for s in self.scenes],
            "visualStyle": self.visual_style,
            "lockedAt": self.locked_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoryBible':
        return cls(
            characters=tuple(ScriptCharacter.from_dict(c) for c in data.get("characters", [])),
            scenes=tuple(ScriptScene.from_dict(s) for s in data.get("scenes", [])),
            visual_style=data.get("visualStyle", ""),
            locked_at=float(data.get("lockedAt") or 0.0),
            locked=bool(data.get("locked", True)),
        )


@dataclass
class ExtendedParseState:
    """Everything known about one (script, project) parsing session."""
    script_id: str
    project_id: str
    stage: ParseStage = ParseStage.IDLE
    progress: float = 0.0
    metadata: Optional[ScriptMetadata] = None
    characters: List[ScriptCharacter] = field(default_factory=list)
    scenes: List[ScriptScene] = field(default_factory=list)
    items: List[ScriptItem] = field(default_factory=list)
    shots: List[Shot] = field(default_factory=list)
    sub_tasks: Dict[str, SubTaskState] = field(default_factory=dict)
    progress_detail: ProgressDetail = field(default_factory=ProgressDetail)
    story_bible: Optional[StoryBible] = None
    cost_estimate: CostEstimate = field(default_factory=CostEstimate)
    quality_reports: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def character_names(self) -> List[str]:
        return [c.name for c in self.characters]

    def scene_names(self) -> List[str]:
        return [s.name for s in self.scenes]

    def shots_for(self, scene_name: str) -> List[Shot]:
        return [shot for shot in self.shots if shot.scene_name == scene_name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scriptId": self.script_id,
            "projectId": self.project_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "characters": [c.to_dict() for c in self.characters],
            "scenes": [s.to_dict() for s in self.scenes],
            "items": [i.to_dict() for i in self.items],
            "shots": [s.to_dict() for s in self.shots],
            "subTasks": {task_id: task.to_dict() for task_id, task in self.sub_tasks.items()},
            "progressDetail": self.progress_detail.to_dict(),
            "storyBible": self.story_bible.to_dict() if self.story_bible else None,
            "costEstimate": self.cost_estimate.to_dict(),
            "qualityReports": dict(self.quality_reports),
            "error": self.error,
            "startedAt": self.started_at,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        script_id: Optional[str] = None,
        project_id: Optional[str] = None
    ) -> 'ExtendedParseState':
        """
        Restore a session.

        Older sessions may lack the sub-task map, progress detail or cost
        estimate; those start empty. Stored records are re-validated so a
        partially written record comes back complete.
        """
        metadata = data.get("metadata")
        bible = data.get("storyBible")
        now = time.time()
        return cls(
            script_id=script_id or data.get("scriptId", ""),
            project_id=project_id or data.get("projectId", ""),
            stage=ParseStage(data.get("stage") or ParseStage.IDLE.value),
            progress=float(data.get("progress") or 0.0),
            metadata=validate_metadata(metadata) if metadata else None,
            characters=[validate_character(c, c.get("name", "")) for c in data.get("characters") or []],
            scenes=[validate_scene(s, s.get("name", "")) for s in data.get("scenes") or []],
            items=[validate_item(i, i.get("name", "")) for i in data.get("items") or []],
            shots=[Shot.from_dict(s) for s in data.get("shots") or []],
            sub_tasks={
                task_id: SubTaskState.from_dict(task)
                for task_id, task in (data.get("subTasks") or {}).items()
            },
            progress_detail=ProgressDetail.from_dict(data.get("progressDetail")),
            story_bible=StoryBible.from_dict(bible) if bible and bible.get("locked") else None,
            cost_estimate=CostEstimate.from_dict(data.get("costEstimate")),
            quality_reports=dict(data.get("qualityReports") or {}),
            error=data.get("error"),
            started_at=data.get("startedAt") or now,
            last_updated=data.get("lastUpdated") or now,
        )
