"""
Tests for Script Structuring Pipeline

Tests for scriptflow/pipelines/script_pipeline.py
"""

import asyncio

import pytest

from scriptflow.core.cancellation import CancellationToken
from scriptflow.core.constants import ParseStage, SubTaskStatus, SubTaskType
from scriptflow.core.exceptions import (
    CompletionRejectedError,
    InvalidConfigError,
    PipelineCancelledError,
    StagePreconditionError,
)
from scriptflow.llm.text_completion import CompletionResult
from scriptflow.models.script_models import validate_character, validate_metadata
from scriptflow.parsing.multi_level_cache import MultiLevelCache
from scriptflow.parsing.parse_state_manager import ParseStateManager
from scriptflow.pipelines.script_pipeline import ScriptPipeline
from scriptflow.storage.stores import InMemoryScriptStore

CHARACTER_FIELDS = {
    "name", "gender", "age", "identity", "appearance", "personality",
    "signatureItems", "emotionalArc", "relationships", "visualPrompt",
}


def rejected():
    return CompletionResult.failure("bad request", status_code=400)


class TestEndToEnd:
    """Full runs against a scripted completion."""

    @pytest.mark.asyncio
    async def test_characters_a_and_b_fully_populated(self, completion, script_store, fast_config, sample_script_text):
        """Test that metadata names A and B become two complete character records."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.character_names() == ["A", "B"]
        for character in state.characters:
            data = character.to_dict()
            assert set(data) == CHARACTER_FIELDS
            assert all(value is not None for value in data.values())
            assert all(data["appearance"].values())
            assert data["personality"]
            assert data["emotionalArc"]

    @pytest.mark.asyncio
    async def test_run_completes_and_persists(self, completion, script_store, fast_config, sample_script_text):
        """Test the final stage, progress and saved session."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.stage == ParseStage.COMPLETED
        assert state.progress == 100.0
        assert state.scene_names() == ["Dock", "Lighthouse"]
        assert len(state.shots_for("Dock")) == 3
        assert len(state.shots_for("Lighthouse")) == 3

        saved = await script_store.get_parse_state("s1", "p1")
        assert saved["stage"] == "completed"
        assert len(saved["shots"]) == 6

    @pytest.mark.asyncio
    async def test_batches_when_several_entities_remain(self, completion, script_store, fast_config, sample_script_text):
        """Test one call per stage when batching applies."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("metadata") == 1
        assert completion.count("character_batch") == 1
        assert completion.count("character") == 0
        assert completion.count("scene_batch") == 1
        assert completion.count("shot_batch") == 1
        assert state.cost_estimate.total_tokens == 60

    @pytest.mark.asyncio
    async def test_per_entity_when_batching_disabled(self, completion, script_store, fast_config, sample_script_text):
        """Test one call per entity with prefer_batch off."""
        config = fast_config.updated(prefer_batch=False)
        pipeline = ScriptPipeline(completion, script_store, config=config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("character") == 2
        assert completion.count("scene") == 2
        assert completion.count("shots") == 2
        assert completion.count("character_batch") == 0
        assert state.stage == ParseStage.COMPLETED

    @pytest.mark.asyncio
    async def test_fenced_scene_response(self, completion, script_store, fast_config, sample_script_text):
        """Test a chatty, fenced scene response becomes a complete scene."""
        completion.metadata["sceneNames"] = ["X"]
        completion.queue("scene", "X", 'Here you go:\n```json\n{"name":"X","description":"A dark alley"}\n```')
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.scene_names() == ["X"]
        scene = state.scenes[0]
        assert scene.description == "A dark alley"
        assert scene.location_type == "unknown"
        assert scene.time_of_day == "Daytime"
        assert scene.environment.lighting == "Natural light"


class TestResume:
    """Tests for resuming saved sessions."""

    @pytest.mark.asyncio
    async def test_resume_dispatches_only_remaining_character(self, completion, script_store, fast_config, sample_script_text):
        """Test that metadata is skipped and only character C is extracted."""
        manager = ParseStateManager(script_store)
        manager.initialize("s1", "p1")
        manager.set_metadata(validate_metadata({
            "title": "The Harbor",
            "characterNames": ["A", "B", "C"],
            "sceneNames": ["Dock"],
        }))
        for name in ("A", "B"):
            task = manager.create_sub_task(SubTaskType.CHARACTER, name)
            manager.start_sub_task(task.id)
            manager.record_character(validate_character({}, name))
            manager.complete_sub_task(task.id)
        manager.create_sub_task(SubTaskType.CHARACTER, "C")
        manager.update_stage(ParseStage.CHARACTERS)
        await manager.save()

        pipeline = ScriptPipeline(completion, script_store, config=fast_config)
        state = await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("metadata") == 0
        character_calls = [call for call in completion.calls if call[0].startswith("character")]
        assert character_calls == [("character", "C")]
        assert state.character_names() == ["A", "B", "C"]
        assert state.stage == ParseStage.COMPLETED

    @pytest.mark.asyncio
    async def test_error_session_resumes(self, completion, script_store, fast_config, sample_script_text):
        """Test an unexpected failure is recorded, re-raised and resumable."""
        completion.queue("scene_batch", None, RuntimeError("boom"))
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        with pytest.raises(RuntimeError, match="boom"):
            await pipeline.run("s1", "p1", sample_script_text)

        saved = await script_store.get_parse_state("s1", "p1")
        assert saved["stage"] == "error"
        assert saved["error"] == "boom"
        assert [c["name"] for c in saved["characters"]] == ["A", "B"]

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.stage == ParseStage.COMPLETED
        assert state.error is None
        assert completion.count("metadata") == 1
        assert completion.count("character_batch") == 1
        assert completion.count("scene_batch") == 2

    @pytest.mark.asyncio
    async def test_completed_session_starts_fresh(self, completion, script_store, fast_config, sample_script_text):
        """Test that running a completed session again redoes the work."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)
        await pipeline.run("s1", "p1", sample_script_text)

        await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("metadata") == 2


class TestSubTaskFailures:
    """Tests for failed and fallback extraction."""

    @pytest.mark.asyncio
    async def test_batch_failure_falls_back_to_single_calls(self, completion, script_store, fast_config, sample_script_text):
        """Test a rejected batch call is replaced by per-character calls."""
        completion.queue("character_batch", None, rejected())
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("character_batch") == 1
        assert completion.count("character", "A") == 1
        assert completion.count("character", "B") == 1
        assert state.character_names() == ["A", "B"]
        assert all(t.status == SubTaskStatus.COMPLETED for t in state.sub_tasks.values())

    @pytest.mark.asyncio
    async def test_entity_missing_from_batch_is_extracted_alone(self, completion, script_store, fast_config, sample_script_text):
        """Test a character the batch response left out gets its own call."""
        completion.queue("character_batch", None, '[{"name": "A", "gender": "male"}]')
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("character", "A") == 0
        assert completion.count("character", "B") == 1
        assert state.characters[0].gender == "male"
        assert state.character_names() == ["A", "B"]

    @pytest.mark.asyncio
    async def test_failed_character_gets_placeholder(self, completion, script_store, fast_config, sample_script_text):
        """Test a failed character is filled with defaults and the run continues."""
        completion.queue("character", "B", rejected())
        config = fast_config.updated(prefer_batch=False)
        pipeline = ScriptPipeline(completion, script_store, config=config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.stage == ParseStage.COMPLETED
        placeholder = state.characters[1]
        assert placeholder.name == "B"
        assert placeholder.identity == "Unknown identity"
        task = state.sub_tasks["character_B"]
        assert task.status == SubTaskStatus.FAILED
        assert task.retry_count == 1

    @pytest.mark.asyncio
    async def test_failed_character_retried_on_next_run(self, completion, script_store, fast_config, sample_script_text):
        """Test a later run replaces the placeholder with the real record."""
        completion.queue("character", "B", rejected())
        config = fast_config.updated(prefer_batch=False)
        pipeline = ScriptPipeline(completion, script_store, config=config)
        await pipeline.run("s1", "p1", sample_script_text)

        state = await pipeline.run_stage("s1", "p1", sample_script_text, ParseStage.CHARACTERS)

        assert state.character_names() == ["A", "B"]
        assert state.characters[1].identity == "B the sailor"
        assert state.sub_tasks["character_B"].status == SubTaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_third_failure_needs_intervention(self, completion, script_store, fast_config, sample_script_text):
        """Test that a character failing three times is no longer retried."""
        completion.queue("character", "B", rejected(), rejected(), rejected())
        config = fast_config.updated(prefer_batch=False)
        pipeline = ScriptPipeline(completion, script_store, config=config)
        await pipeline.run("s1", "p1", sample_script_text)
        await pipeline.run_stage("s1", "p1", sample_script_text, ParseStage.CHARACTERS)

        state = await pipeline.run_stage("s1", "p1", sample_script_text, ParseStage.CHARACTERS)
        assert state.sub_tasks["character_B"].needs_intervention

        await pipeline.run_stage("s1", "p1", sample_script_text, ParseStage.CHARACTERS)
        assert completion.count("character", "B") == 3

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, completion, script_store, fast_config, sample_script_text):
        """Test 5xx responses are retried and reported."""
        overloaded = CompletionResult.failure("overloaded", status_code=503)
        completion.queue("metadata", None, overloaded, overloaded)
        messages = []
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run(
            "s1", "p1", sample_script_text,
            on_progress=lambda stage, progress, message: messages.append(message)
        )

        assert completion.count("metadata") == 3
        assert state.metadata.title == "The Harbor"
        assert sum(1 for m in messages if "retrying" in m) == 2

    @pytest.mark.asyncio
    async def test_metadata_failure_is_fatal(self, completion, script_store, fast_config, sample_script_text):
        """Test that metadata which cannot be parsed stops the run."""
        completion.queue("metadata", None, rejected())
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        with pytest.raises(CompletionRejectedError):
            await pipeline.run("s1", "p1", sample_script_text)

        saved = await script_store.get_parse_state("s1", "p1")
        assert saved["stage"] == "error"


class TestShots:
    """Tests for the shot stage."""

    @pytest.mark.asyncio
    async def test_empty_shot_list_retried_then_abandoned(self, completion, script_store, fast_config, sample_script_text):
        """Test a scene is tried three times and the rest of the run continues."""
        completion.shots["Dock"] = []
        config = fast_config.updated(prefer_batch=False)
        pipeline = ScriptPipeline(completion, script_store, config=config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("shots", "Dock") == 3
        assert state.shots_for("Dock") == []
        assert len(state.shots_for("Lighthouse")) == 3
        assert state.sub_tasks["shot_Dock"].status == SubTaskStatus.FAILED
        assert state.stage == ParseStage.COMPLETED

    @pytest.mark.asyncio
    async def test_shots_get_ids_and_sequence(self, completion, script_store, fast_config, sample_script_text):
        """Test generated identifiers, scene association and numbering."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        shots = state.shots_for("Dock")
        assert [s.sequence for s in shots] == [1, 2, 3]
        assert len({s.id for s in state.shots}) == len(state.shots)
        assert all(s.scene_name == "Dock" for s in shots)
        assert shots[2].dialogue == "Who's there?"

    @pytest.mark.asyncio
    async def test_shot_validator_report_is_stored(self, completion, script_store, fast_config, sample_script_text):
        """Test the validator hook result lands in the quality reports."""
        pipeline = ScriptPipeline(
            completion, script_store, config=fast_config,
            shot_validator=lambda scene, shots: {"shots": len(shots)}
        )

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.quality_reports == {"Dock": {"shots": 3}, "Lighthouse": {"shots": 3}}

    @pytest.mark.asyncio
    async def test_shots_stage_requires_scenes(self, completion, script_store, fast_config, sample_script_text):
        """Test requesting shots on an empty session is fatal."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        with pytest.raises(StagePreconditionError):
            await pipeline.run_stage("s1", "p1", sample_script_text, ParseStage.SHOTS)

        saved = await script_store.get_parse_state("s1", "p1")
        assert saved["stage"] == "error"
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_no_scenes_skips_shots(self, completion, script_store, fast_config, sample_script_text):
        """Test a script without scenes still completes."""
        completion.metadata["sceneNames"] = []
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.stage == ParseStage.COMPLETED
        assert state.shots == []


class TestOptionalFeatures:
    """Tests for caching, props and the story bible."""

    @pytest.mark.asyncio
    async def test_cache_short_circuits_extraction(self, completion_factory, fast_config, sample_script_text):
        """Test a second session over the same text reuses cached records."""
        cache = MultiLevelCache()
        config = fast_config.updated(use_cache=True)
        first = completion_factory()
        await ScriptPipeline(first, InMemoryScriptStore(), cache=cache, config=config).run("s1", "p1", sample_script_text)

        second = completion_factory()
        state = await ScriptPipeline(second, InMemoryScriptStore(), cache=cache, config=config).run(
            "s1", "p1", sample_script_text
        )

        assert second.count("character_batch") == 0
        assert second.count("character") == 0
        assert second.count("scene_batch") == 0
        assert state.character_names() == ["A", "B"]
        assert state.sub_tasks["character_A"].model_used == "cache"

    @pytest.mark.asyncio
    async def test_items_stage(self, completion, script_store, fast_config, sample_script_text):
        """Test prop extraction when enabled."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config.updated(extract_items=True))

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert [item.name for item in state.items] == ["Lantern"]
        assert state.items[0].owner == "A"
        assert state.sub_tasks["prop_items"].status == SubTaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_items_skipped_by_default(self, completion, script_store, fast_config, sample_script_text):
        """Test no prop call is made unless enabled."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("items") == 0

    @pytest.mark.asyncio
    async def test_items_on_finished_session_keep_it_finished(self, completion, script_store, fast_config, sample_script_text):
        """Test adding props afterwards leaves the session completed, so the next run starts over."""
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)
        await pipeline.run("s1", "p1", sample_script_text)

        state = await pipeline.run_stage("s1", "p1", sample_script_text, ParseStage.ITEMS)

        assert [item.name for item in state.items] == ["Lantern"]
        assert state.stage == ParseStage.COMPLETED
        saved = await script_store.get_parse_state("s1", "p1")
        assert saved["stage"] == "completed"

        await pipeline.run("s1", "p1", sample_script_text)

        assert completion.count("metadata") == 2

    @pytest.mark.asyncio
    async def test_story_bible_locked_after_scenes(self, completion, script_store, fast_config, sample_script_text):
        """Test the story bible snapshot."""
        config = fast_config.updated(lock_story_bible=True, visual_style="noir")
        pipeline = ScriptPipeline(completion, script_store, config=config)

        state = await pipeline.run("s1", "p1", sample_script_text)

        assert state.story_bible is not None
        assert state.story_bible.visual_style == "noir"
        assert [c.name for c in state.story_bible.characters] == ["A", "B"]
        assert [s.name for s in state.story_bible.scenes] == ["Dock", "Lighthouse"]


class TestProgressAndControl:
    """Tests for progress reporting, cancellation and configuration."""

    @pytest.mark.asyncio
    async def test_progress_is_reported_in_order(self, completion, script_store, fast_config, sample_script_text):
        """Test progress callbacks run from start to completion."""
        events = []
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        await pipeline.run(
            "s1", "p1", sample_script_text,
            on_progress=lambda stage, progress, message: events.append((stage, progress, message))
        )

        progresses = [progress for _, progress, _ in events]
        assert progresses == sorted(progresses)
        assert events[-1] == (ParseStage.COMPLETED, 100.0, "Parsing completed")
        assert {stage for stage, _, _ in events} >= {
            ParseStage.METADATA, ParseStage.CHARACTERS, ParseStage.SCENES, ParseStage.SHOTS
        }

    @pytest.mark.asyncio
    async def test_cancellation_keeps_finished_work(self, completion, script_store, fast_config, sample_script_text):
        """Test cancelling mid-stage persists state without marking an error."""
        completion.hold.add("character_batch")
        token = CancellationToken()
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        run = asyncio.create_task(pipeline.run("s1", "p1", sample_script_text, cancel_token=token))
        await asyncio.wait_for(completion.held.wait(), timeout=5)
        assert pipeline.is_running
        token.cancel("user stop")

        with pytest.raises(PipelineCancelledError):
            await run
        assert not pipeline.is_running

        manager = ParseStateManager(script_store)
        state = await manager.load("s1", "p1")
        assert state.stage == ParseStage.CHARACTERS
        assert state.metadata.title == "The Harbor"
        assert state.error is None
        assert all(t.status == SubTaskStatus.PENDING for t in state.sub_tasks.values())

    @pytest.mark.asyncio
    async def test_pipeline_cancel_method(self, completion, script_store, fast_config, sample_script_text):
        """Test cancel() aborts the active run."""
        completion.hold.add("metadata")
        pipeline = ScriptPipeline(completion, script_store, config=fast_config)

        run = asyncio.create_task(pipeline.run("s1", "p1", sample_script_text))
        await asyncio.wait_for(completion.held.wait(), timeout=5)

        assert pipeline.cancel("stop") is True
        with pytest.raises(PipelineCancelledError):
            await run

    def test_cancel_without_run(self, completion, script_store):
        """Test cancel() with nothing running."""
        pipeline = ScriptPipeline(completion, script_store)

        assert pipeline.cancel() is False

    def test_get_config_returns_copy(self, completion, script_store):
        """Test that changing the returned config does not affect the pipeline."""
        pipeline = ScriptPipeline(completion, script_store)

        config = pipeline.get_config()
        config.max_shots = 4

        assert pipeline.get_config().max_shots == 15

    def test_update_config(self, completion, script_store):
        """Test validated configuration updates."""
        pipeline = ScriptPipeline(completion, script_store)

        updated = pipeline.update_config(max_shots=10, prefer_batch=False)

        assert updated.max_shots == 10
        assert pipeline.get_config().prefer_batch is False
        with pytest.raises(InvalidConfigError):
            pipeline.update_config(no_such_setting=1)
        with pytest.raises(InvalidConfigError):
            pipeline.update_config(concurrency=0)
