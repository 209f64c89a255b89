"""
Scriptflow Main Entry Point

Run the structuring pipeline from the command line.

    python -m scriptflow parse novel.txt --script-id s1 --project-id p1
    python -m scriptflow status --script-id s1 --project-id p1
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from scriptflow.core.config import ScriptflowConfig, load_config
from scriptflow.core.constants import ParseStage
from scriptflow.core.env_loader import ensure_env_loaded
from scriptflow.core.exceptions import PipelineCancelledError, ScriptflowError
from scriptflow.core.logging_config import LogLevel, create_session_log, get_logger, setup_logging
from scriptflow.llm.api_clients import OpenAICompatibleClient
from scriptflow.models.parse_state import ExtendedParseState
from scriptflow.parsing.multi_level_cache import MultiLevelCache
from scriptflow.parsing.parse_state_manager import ParseStateManager
from scriptflow.pipelines.script_pipeline import ScriptPipeline
from scriptflow.storage.stores import JSONFileCacheStore, JSONFileScriptStore
from scriptflow.utils.file_utils import read_text, safe_filename

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scriptflow",
        description="Scriptflow - turn screenplays and novels into structured production data"
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to configuration file"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Structure a script file")
    parse_cmd.add_argument("file", type=str, help="Script or novel text file")
    _add_session_args(parse_cmd)
    parse_cmd.add_argument(
        "--stage",
        choices=[s.value for s in (ParseStage.METADATA, ParseStage.CHARACTERS, ParseStage.SCENES, ParseStage.ITEMS, ParseStage.SHOTS)],
        help="Run only this stage on the saved session"
    )
    parse_cmd.add_argument(
        "--no-cache",
        action="store_true",
        help="Do not consult or fill the extraction cache"
    )
    parse_cmd.add_argument(
        "--save-log",
        action="store_true",
        help="Also write the log to a session file under the logs directory"
    )

    status_cmd = subparsers.add_parser("status", help="Show the saved session progress")
    _add_session_args(status_cmd)

    return parser


def _add_session_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--script-id", required=True, help="Script identifier")
    parser.add_argument("--project-id", required=True, help="Project identifier")
    parser.add_argument("--data-dir", type=str, help="Directory for sessions and cache (default: from config)")


def summarize(state: ExtendedParseState) -> Dict[str, Any]:
    """Short JSON-ready view of a session."""
    return {
        "scriptId": state.script_id,
        "projectId": state.project_id,
        "stage": state.stage.value,
        "progress": state.progress,
        "title": state.metadata.title if state.metadata else None,
        "characters": state.character_names(),
        "scenes": state.scene_names(),
        "shots": len(state.shots),
        "items": len(state.items),
        "subTasks": state.progress_detail.to_dict(),
        "needsIntervention": sorted(t.id for t in state.sub_tasks.values() if t.needs_intervention),
        "storyBibleLocked": state.story_bible is not None,
        "costEstimate": state.cost_estimate.to_dict(),
        "error": state.error,
    }


def _print_progress(stage: ParseStage, progress: float, message: str) -> None:
    print(f"[{progress:5.1f}%] {stage.value:<10} {message}", file=sys.stderr)


async def run_parse(args: argparse.Namespace, config: ScriptflowConfig, data_dir: Path) -> Dict[str, Any]:
    logger = get_logger("main")
    content = read_text(args.file)
    logger.info(f"Read {len(content)} characters from {args.file}")

    ensure_env_loaded()
    pipeline_config = config.pipeline
    if args.no_cache:
        pipeline_config = pipeline_config.updated(use_cache=False)

    cache = None
    if pipeline_config.use_cache:
        cache = MultiLevelCache(l2_store=JSONFileCacheStore(data_dir / "cache"), config=config.cache)

    async with OpenAICompatibleClient.from_config(config.llm) as client:
        pipeline = ScriptPipeline(
            client,
            JSONFileScriptStore(data_dir),
            cache=cache,
            config=pipeline_config,
        )

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, pipeline.cancel, "Interrupted")
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C aborts instead
            pass

        try:
            if args.stage:
                state = await pipeline.run_stage(
                    args.script_id, args.project_id, content, ParseStage(args.stage), on_progress=_print_progress
                )
            else:
                state = await pipeline.run(args.script_id, args.project_id, content, on_progress=_print_progress)
        finally:
            if cache is not None:
                await cache.close()

    return summarize(state)


async def run_status(args: argparse.Namespace, data_dir: Path) -> Optional[Dict[str, Any]]:
    manager = ParseStateManager(JSONFileScriptStore(data_dir))
    state = await manager.load(args.script_id, args.project_id)
    return summarize(state) if state else None


def main(argv=None) -> int:
    """Main entry point for the Scriptflow CLI."""
    args = build_parser().parse_args(argv)

    # Setup logging
    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.verbose:
        log_level = LogLevel.INFO
    else:
        log_level = LogLevel.WARNING
    setup_logging(level=log_level, verbose=args.verbose or args.debug)
    logger = get_logger("main")

    try:
        config = load_config(args.config)
        if config.verbose_logging and log_level == LogLevel.WARNING:
            log_level = LogLevel.INFO
            setup_logging(level=log_level, verbose=True)
        if args.command == "parse" and args.save_log:
            session_level = LogLevel.DEBUG if args.debug else LogLevel.INFO
            log_file = create_session_log(config.logs_dir, prefix=f"parse_{safe_filename(args.script_id)}", level=session_level)
            logger.info(f"Writing session log to {log_file}")
        data_dir = Path(args.data_dir) if args.data_dir else config.data_dir

        if args.command == "status":
            summary = asyncio.run(run_status(args, data_dir))
            if summary is None:
                print(f"No saved session for {args.project_id}/{args.script_id}", file=sys.stderr)
                return EXIT_ERROR
        else:
            summary = asyncio.run(run_parse(args, config, data_dir))
    except PipelineCancelledError as e:
        logger.warning(f"Cancelled: {e}")
        print("Cancelled. Run the same command again to resume.", file=sys.stderr)
        return EXIT_CANCELLED
    except ScriptflowError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
