"""Command-line interface for the Subtitle Translator.

This module translates subtitle files and manages persisted translation tasks.
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.services.base import BaseTranslationTransport
from src.services.config_manager import API_KEY_ENV, ConfigurationManager
from src.services.error_handler import ConfigurationError, ErrorHandler, TranslationPipelineError
from src.services.gemini_client import GeminiClient
from src.services.pipeline import TranslationPipeline
from src.services.subtitle_exporter import SubtitleExporter
from src.services.task_store import InMemoryTaskStore, SQLiteTaskStore
from src.models.core import (
    InvalidTransitionError,
    PipelineConfig,
    StylePreference,
    TaskAction,
    TaskStatus,
    TranslationConfig,
)


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class UnconfiguredTransport(BaseTranslationTransport):
    """Stands in for the Gemini transport when only managing stored tasks."""

    def translate(self, entries, keywords, config):
        raise ConfigurationError(f"{API_KEY_ENV} is not set; translation is unavailable")


class SubtitleTranslatorCLI:
    """Command-line interface for subtitle translation."""

    def __init__(self, config: PipelineConfig, db_path: Optional[str] = None, transport=None):
        self.config = config
        self.error_handler = ErrorHandler()
        self.subtitle_exporter = SubtitleExporter(self.error_handler)
        store = SQLiteTaskStore(db_path) if db_path else InMemoryTaskStore()

        if transport is None and config.gemini_api_key:
            transport = GeminiClient(config.gemini_api_key)
        elif transport is None:
            transport = UnconfiguredTransport()
        style_service = transport if config.style.enable_style_rewrite else None
        self.pipeline = TranslationPipeline(
            transport,
            store=store,
            config=config,
            style_service=style_service,
            keyword_generator=transport if isinstance(transport, GeminiClient) else None,
            error_handler=self.error_handler,
        )

    def translate_file(
        self,
        input_path: str,
        output_path: str,
        title: str = "",
        keywords: Optional[List[str]] = None,
        translation_config: Optional[TranslationConfig] = None
    ) -> bool:
        """Translate a subtitle file.

        Args:
            input_path: Path to an .srt or .vtt file
            output_path: Path of the translated file; the extension picks the format
            title: Video title used for keyword generation
            keywords: User-supplied terms to translate consistently
            translation_config: Translation settings

        Returns:
            True if the task completed, False otherwise
        """
        try:
            logger.info(f"Translating subtitles: {input_path}")

            if not Path(input_path).exists():
                logger.error(f"Input file not found: {input_path}")
                return False

            entries = self.subtitle_exporter.load(input_path)
            result = self.pipeline.translate(
                video_id=Path(input_path).stem,
                entries=entries,
                title=title or Path(input_path).stem,
                user_keywords=keywords,
                translation_config=translation_config,
            )

            task = result.task
            if result.entries:
                Path(output_path).parent.mkdir(parents=True, exist_ok=True)
                self.subtitle_exporter.export(result.entries, output_path)
                logger.info(f"Translated subtitles saved: {output_path}")

            if result.missing_segments:
                logger.warning(f"Missing segments: {result.missing_segments}")
            if task.status != TaskStatus.COMPLETED:
                logger.error(f"Task {task.id} ended as {task.status.value}: {task.error_message}")
                return False

            logger.info(
                f"Processing complete! {len(entries)} -> {len(result.entries)} entries, "
                f"{result.cache_hits} cached segments, {len(result.merge_operations)} merges"
            )
            return True

        except (TranslationPipelineError, ValueError, OSError) as e:
            logger.error(f"Processing failed: {e}")
            self.error_handler.log_error(e)
            return False

    def list_tasks(self) -> List[Dict[str, Any]]:
        return [
            self.pipeline.get_progress(task.id).to_dict()
            for task in self.pipeline.store.list_tasks()
        ]

    def apply_action(self, task_id: str, action: TaskAction) -> bool:
        try:
            task = self.pipeline.perform_action(task_id, action)
            if task is not None:
                self.pipeline.wait(task.id)
                logger.info(f"Task {task.id} is now {self.pipeline.manager.get_task(task.id).status.value}")
            return True
        except (TranslationPipelineError, InvalidTransitionError) as e:
            logger.error(f"Action {action.value} failed: {e}")
            return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Subtitle Translator - Translate subtitle tracks with an LLM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Translate an SRT file to Traditional Chinese
  python -m src.cli input.srt -o output.srt

  # Use the video title and extra terms for consistent terminology
  python -m src.cli input.srt -o output.srt --title "Rowing 101" -k coxswain stroke

  # Keep the original line breaks
  python -m src.cli input.vtt -o output.vtt --no-merge

  # Persist tasks so they can be resumed after a crash
  python -m src.cli input.srt -o output.srt --db tasks.db
  python -m src.cli --db tasks.db --resume
        """
    )

    parser.add_argument(
        "input",
        nargs="?",
        help="Input subtitle file (.srt or .vtt)"
    )

    parser.add_argument(
        "-o", "--output",
        help="Output subtitle file (.srt or .vtt)"
    )

    # Terminology
    parser.add_argument(
        "--title",
        default="",
        help="Video title used to generate keywords"
    )

    parser.add_argument(
        "-k", "--keywords",
        nargs="+",
        default=[],
        help="Terms to translate consistently (space-separated)"
    )

    # Translation options
    parser.add_argument(
        "--model",
        default=TranslationConfig().model,
        help=f"Gemini model (default: {TranslationConfig().model})"
    )

    parser.add_argument(
        "--target-lang",
        default=TranslationConfig().target_language,
        help=f"Target language (default: {TranslationConfig().target_language})"
    )

    parser.add_argument(
        "--style",
        choices=[style.value for style in StylePreference],
        help="Rewrite the translation in the given style"
    )

    parser.add_argument(
        "--no-merge",
        action="store_true",
        help="Disable subtitle and complete-sentence merging"
    )

    # Scheduling options
    parser.add_argument(
        "--parallel",
        type=int,
        help="Segments translated in parallel"
    )

    parser.add_argument(
        "--max-entries",
        type=int,
        help="Maximum subtitle entries per segment"
    )

    parser.add_argument(
        "--max-chars",
        type=int,
        help="Maximum characters per segment"
    )

    parser.add_argument(
        "--allow-partial",
        action="store_true",
        help="Finish with missing segments instead of failing"
    )

    # Task management
    parser.add_argument(
        "--db",
        help="SQLite file for persisted tasks and cache"
    )

    parser.add_argument(
        "--list",
        action="store_true",
        help="List persisted tasks"
    )

    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume tasks interrupted by a crash"
    )

    parser.add_argument(
        "--action",
        nargs=2,
        metavar=("TASK_ID", "ACTION"),
        help=f"Apply a task action ({', '.join(a.value for a in TaskAction)})"
    )

    # Verbosity
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        'max_parallel_segments': args.parallel,
        'max_segment_entries': args.max_entries,
        'max_segment_characters': args.max_chars,
    }
    if args.allow_partial:
        overrides['allow_partial_results'] = True
    if args.no_merge:
        overrides['style.enable_subtitle_merging'] = False
        overrides['style.enable_complete_sentence_merging'] = False
    if args.style:
        overrides['style.enable_style_rewrite'] = True
        overrides['style.style_preference'] = args.style
    return overrides


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    managing = args.list or args.resume or args.action
    if not managing and (not args.input or not args.output):
        parser.error("input and --output are required to translate a file")

    action = None
    if args.action:
        task_id, action_name = args.action
        try:
            action = TaskAction(action_name)
        except ValueError:
            parser.error(f"Unknown action: {action_name}")

    # Listing, pausing, cancelling and deleting stored tasks work without an API key.
    translates = not managing or args.resume or action in (TaskAction.CONTINUE, TaskAction.RESTART)

    try:
        config = ConfigurationManager().load_pipeline_config(
            config_overrides(args), require_api_key=translates
        )
        cli = SubtitleTranslatorCLI(config, db_path=args.db)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(2)

    if args.list:
        for task in cli.list_tasks():
            print(f"{task['taskId']}  {task['status']:<12} {task['progressPercentage']:>3}%  {task['videoId']}")
        sys.exit(0)

    if args.resume:
        resumed = cli.pipeline.resume_incomplete_tasks()
        for task_id in resumed:
            cli.pipeline.wait(task_id)
        logger.info(f"Resumed {len(resumed)} task(s)")
        sys.exit(0)

    if action is not None:
        sys.exit(0 if cli.apply_action(args.action[0], action) else 1)

    translation_config = TranslationConfig(model=args.model, target_language=args.target_lang)
    success = cli.translate_file(
        input_path=args.input,
        output_path=args.output,
        title=args.title,
        keywords=args.keywords,
        translation_config=translation_config,
    )

    # Exit with appropriate code
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
