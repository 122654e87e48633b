"""Tests for the command-line interface."""

from pathlib import Path

import pytest

from src.cli import SubtitleTranslatorCLI, UnconfiguredTransport, build_parser, config_overrides, main
from src.models.core import TaskAction, TaskStatus
from src.services.config_manager import ConfigurationManager
from src.services.error_handler import ConfigurationError, TransportError
from tests.fakes import FakeTransport, fast_config, translated


class TestArgumentParsing:
    """Unit tests for argument parsing and config overrides."""

    def test_defaults(self):
        args = build_parser().parse_args(["in.srt", "-o", "out.srt"])

        assert args.input == "in.srt"
        assert args.output == "out.srt"
        assert args.keywords == []
        assert args.target_lang == "zh-TW"
        assert config_overrides(args)['max_parallel_segments'] is None

    def test_overrides_from_flags(self):
        args = build_parser().parse_args([
            "in.srt", "-o", "out.vtt", "--parallel", "4", "--max-entries", "20",
            "--allow-partial", "--no-merge", "--style", "formal", "-k", "coxswain", "stroke",
        ])

        overrides = config_overrides(args)

        assert args.keywords == ["coxswain", "stroke"]
        assert overrides['max_parallel_segments'] == 4
        assert overrides['max_segment_entries'] == 20
        assert overrides['allow_partial_results'] is True
        assert overrides['style.enable_subtitle_merging'] is False
        assert overrides['style.enable_complete_sentence_merging'] is False
        assert overrides['style.enable_style_rewrite'] is True
        assert overrides['style.style_preference'] == "formal"

    def test_overrides_build_a_valid_config(self):
        args = build_parser().parse_args(["in.srt", "-o", "out.srt", "--parallel", "2", "--style", "academic"])

        config = ConfigurationManager(environ={}).load_pipeline_config(config_overrides(args))

        assert config.max_parallel_segments == 2
        assert config.style.enable_style_rewrite is True

    def test_unknown_style_is_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["in.srt", "-o", "out.srt", "--style", "pirate"])


class TestSubtitleTranslatorCLI:
    """Tests for translating files through the CLI wrapper."""

    def test_translate_file_writes_output(self, sample_srt, temp_dir):
        output = str(Path(temp_dir) / "out" / "translated.srt")
        transport = FakeTransport()
        cli = SubtitleTranslatorCLI(fast_config(), transport=transport)

        assert cli.translate_file(sample_srt, output, keywords=["hello"])

        content = Path(output).read_text(encoding="utf-8")
        assert "[zh] Hello there." in content
        assert "[zh] See you tomorrow." in content
        assert transport.keywords_seen == [["hello"]]

    def test_missing_input_returns_false(self, temp_dir):
        cli = SubtitleTranslatorCLI(fast_config(), transport=FakeTransport())

        assert not cli.translate_file(str(Path(temp_dir) / "absent.srt"), str(Path(temp_dir) / "out.srt"))

    def test_failed_task_returns_false(self, sample_srt, temp_dir):
        def down(entries):
            raise TransportError("down")

        cli = SubtitleTranslatorCLI(fast_config(), transport=FakeTransport(down))

        assert not cli.translate_file(sample_srt, str(Path(temp_dir) / "out.srt"))
        tasks = cli.list_tasks()
        assert len(tasks) == 1
        assert tasks[0]['status'] == TaskStatus.FAILED.value

    def test_tasks_persist_and_can_be_deleted(self, sample_srt, temp_dir):
        db_path = str(Path(temp_dir) / "tasks.db")
        cli = SubtitleTranslatorCLI(fast_config(), db_path=db_path, transport=FakeTransport(translated))
        assert cli.translate_file(sample_srt, str(Path(temp_dir) / "out.vtt"))

        reopened = SubtitleTranslatorCLI(fast_config(), db_path=db_path, transport=FakeTransport())
        tasks = reopened.list_tasks()
        assert [t['status'] for t in tasks] == [TaskStatus.COMPLETED.value]

        assert reopened.apply_action(tasks[0]['taskId'], TaskAction.DELETE)
        assert reopened.list_tasks() == []

    def test_invalid_action_returns_false(self):
        cli = SubtitleTranslatorCLI(fast_config(), transport=FakeTransport())

        assert not cli.apply_action("no-such-task", TaskAction.PAUSE)


class TestMain:
    """Tests for the entry point's argument checks."""

    def test_missing_output_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["in.srt"])
        assert exc_info.value.code == 2

    def test_missing_api_key_exits(self, monkeypatch, sample_srt, temp_dir):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            main([sample_srt, "-o", str(Path(temp_dir) / "out.srt")])
        assert exc_info.value.code == 2

    def test_managing_stored_tasks_needs_no_api_key(self, monkeypatch, capsys, sample_srt, temp_dir):
        db_path = str(Path(temp_dir) / "tasks.db")
        cli = SubtitleTranslatorCLI(fast_config(), db_path=db_path, transport=FakeTransport())
        assert cli.translate_file(sample_srt, str(Path(temp_dir) / "out.srt"))
        task_id = cli.list_tasks()[0]['taskId']
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        with pytest.raises(SystemExit) as listed:
            main(["--db", db_path, "--list"])
        assert listed.value.code == 0
        assert task_id in capsys.readouterr().out

        with pytest.raises(SystemExit) as deleted:
            main(["--db", db_path, "--action", task_id, "delete"])
        assert deleted.value.code == 0
        assert SubtitleTranslatorCLI(fast_config(), db_path=db_path, transport=FakeTransport()).list_tasks() == []

    def test_translating_actions_still_need_api_key(self, monkeypatch, temp_dir):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        db_path = str(Path(temp_dir) / "tasks.db")

        with pytest.raises(SystemExit) as resumed:
            main(["--db", db_path, "--resume"])
        with pytest.raises(SystemExit) as restarted:
            main(["--db", db_path, "--action", "some-task", "restart"])

        assert resumed.value.code == 2
        assert restarted.value.code == 2

    def test_unconfigured_transport_refuses_to_translate(self):
        with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
            UnconfiguredTransport().translate([], [], None)
