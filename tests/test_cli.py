"""
Tests for the command-line interface.
"""

import logging
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def restore_root_logger():
    """main() reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


class TestParseArgs:
    """Tests for parse_args()."""

    def test_defaults(self):
        from h265split.cli import parse_args

        cfg, args = parse_args([])

        assert cfg.input_dir is None
        assert cfg.output_dir is None
        assert cfg.chunk_minutes == 60
        assert cfg.encoder == "x265"
        assert cfg.compression_ratio == 2
        assert cfg.recursive is True
        assert cfg.progress is True
        assert args.show_dirs is False

    def test_flags(self):
        from h265split.cli import parse_args

        cfg, _ = parse_args(
            [
                "in",
                "-o",
                "out",
                "--chunk-minutes",
                "30",
                "--container",
                "mp4",
                "--encoder",
                "nvh265",
                "--compression-ratio",
                "4",
                "--no-recursive",
                "-j",
                "2",
                "--max-retries",
                "5",
                "--retry-delay",
                "10",
                "--no-progress",
                "--watch",
                "--watch-poll",
            ]
        )

        assert cfg.input_dir == "in"
        assert cfg.output_dir == "out"
        assert cfg.chunk_duration_seconds == 1800
        assert cfg.container == "mp4"
        assert cfg.encoder == "nvh265"
        assert cfg.compression_ratio == 4
        assert cfg.recursive is False
        assert cfg.concurrency == 2
        assert cfg.max_retries == 5
        assert cfg.retry_delay_sec == 10
        assert cfg.progress is False
        assert cfg.watch is True
        assert cfg.watch_poll is True

    def test_invalid_ratio_rejected(self):
        from h265split.cli import parse_args

        with pytest.raises(SystemExit):
            parse_args(["--compression-ratio", "7"])

    def test_unknown_encoder_rejected(self):
        from h265split.cli import parse_args

        with pytest.raises(SystemExit):
            parse_args(["--encoder", "x264"])


class TestCollectTargets:
    """Tests for collect_targets()."""

    def test_single_file(self, temp_dir):
        from h265split.cli import collect_targets
        from h265split.config import Config

        video = temp_dir / "rec.mkv"
        video.write_bytes(b"x")
        text = temp_dir / "notes.txt"
        text.write_text("x")

        assert collect_targets(video, Config()) == [video]
        assert collect_targets(text, Config()) == []
        assert collect_targets(temp_dir / "missing.mkv", Config()) == []

    def test_directory_skips_queue_dirs(self, temp_dir):
        from h265split.cli import collect_targets
        from h265split.config import Config

        for rel in ("a.mkv", "sub/b.mp4", "done/old.mkv", "chunks/a_00.mkv"):
            path = temp_dir / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"x")
        cfg = Config(output_dir=str(temp_dir / "chunks"), processed_dir=str(temp_dir / "done"))

        found = [p.relative_to(temp_dir).as_posix() for p in collect_targets(temp_dir, cfg)]

        assert found == ["a.mkv", "sub/b.mp4"]


class TestMain:
    """Tests for main()."""

    def test_show_dirs(self, mock_xdg_dirs, temp_dir, capsys):
        from h265split.cli import main

        assert main(["--show-dirs"]) == 0
        out = capsys.readouterr().out
        assert str(temp_dir / "config" / "h265split") in out
        assert (temp_dir / "config" / "h265split" / "config.toml").exists()
        assert (temp_dir / "state" / "h265split" / "logs" / "h265split.log").exists()

    def test_check_requirements(self, mock_xdg_dirs, capsys):
        from h265split.cli import main
        from h265split.converter import get_backend

        backends = [(get_backend("x265"), True), (get_backend("nvh265"), False)]
        with patch("h265split.cli._tool_version", return_value="1.24.0"), patch(
            "h265split.cli.detect_backends", return_value=backends
        ):
            assert main(["--check-requirements"]) == 0

        out = capsys.readouterr().out
        assert "✓ gst-launch-1.0: 1.24.0" in out
        assert "All requirements satisfied" in out

    def test_check_requirements_missing_tools(self, mock_xdg_dirs, capsys):
        from h265split.cli import main

        with patch("h265split.cli._tool_version", return_value=None), patch(
            "h265split.cli.detect_backends", return_value=[]
        ):
            assert main(["--check-requirements"]) == 1

        assert "Some requirements missing" in capsys.readouterr().out

    def test_missing_input(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        assert main([str(temp_dir / "nope")]) == 2

    def test_invalid_config_values(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        assert main([str(temp_dir), "--chunk-minutes", "0"]) == 2

    def test_no_videos(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        empty = temp_dir / "empty"
        empty.mkdir()
        assert main([str(empty)]) == 0

    def test_watch_requires_output(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        incoming = temp_dir / "incoming"
        incoming.mkdir()
        with patch("h265split.cli.run_watch_mode") as run_watch:
            assert main([str(incoming), "--watch"]) == 2
        run_watch.assert_not_called()

    def test_watch_requires_directory(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        video = temp_dir / "rec.mkv"
        video.write_bytes(b"x")
        assert main([str(video), "--watch", "-o", str(temp_dir / "out")]) == 2

    def test_watch_mode_dispatch(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        incoming = temp_dir / "incoming"
        incoming.mkdir()
        with patch("h265split.cli.run_watch_mode", return_value=0) as run_watch:
            assert main([str(incoming), "--watch", "-o", str(temp_dir / "out")]) == 0

        root, cfg, backend = run_watch.call_args[0][:3]
        assert root == incoming
        assert backend == "x265"
        assert cfg.input_dir == str(incoming)

    def test_batch_dispatch(self, mock_xdg_dirs, temp_dir):
        from h265split.cli import main

        incoming = temp_dir / "incoming"
        incoming.mkdir()
        (incoming / "a.mkv").write_bytes(b"x")
        (incoming / "b.mp4").write_bytes(b"x")

        with patch("h265split.cli.run_batch", return_value=1) as run_batch:
            assert main([str(incoming), "-o", str(temp_dir / "out")]) == 1

        targets = run_batch.call_args[0][0]
        assert [p.name for p in targets] == ["a.mkv", "b.mp4"]

    def test_dryrun(self, mock_xdg_dirs, temp_dir, capsys):
        from h265split.cli import main

        video = temp_dir / "rec.mkv"
        video.write_bytes(b"\0" * 1_000_000)

        with patch("h265split.probe.discover_duration", return_value=(8.0, "gst-discoverer")):
            assert main([str(video), "-o", str(temp_dir / "out"), "--dryrun"]) == 0

        out = capsys.readouterr().out
        assert "rec.mkv" in out
        assert "gst-discoverer" in out
        assert "DRYRUN:" in out
        assert not (temp_dir / "out").exists()


class TestRunBatch:
    """Tests for run_batch() with a stubbed encoder."""

    def test_all_files_processed(self, temp_dir, capsys):
        from rich.console import Console

        from h265split.cli import run_batch
        from h265split.config import Config

        incoming = temp_dir / "in"
        incoming.mkdir()
        targets = []
        for name in ("a.mkv", "b.mkv"):
            path = incoming / name
            path.write_bytes(b"x" * 10)
            targets.append(path)

        class StubRunner:
            def __init__(self, request, *args, **kwargs):
                self.request = request

            def run(self):
                chunk = self.request.output_dir / f"{self.request.input_path.stem}_00.mkv"
                return SimpleNamespace(chunks=[chunk], output_bytes=5)

            def cancel(self):
                pass

        cfg = Config(
            input_dir=str(incoming),
            output_dir=str(temp_dir / "out"),
            processed_dir=str(temp_dir / "done"),
            progress=False,
        )
        console = Console(record=True, width=140)
        with patch("h265split.pipeline.JobRunner", StubRunner):
            assert run_batch(targets, cfg, "x265", None, console) == 0

        assert sorted(p.name for p in (temp_dir / "done").iterdir()) == ["a.mkv", "b.mkv"]
        assert "2 completed, 0 failed, 0 cancelled" in console.export_text()
        assert "OK a.mkv: 1 chunk(s)" in capsys.readouterr().out


class TestBuildQueue:
    """Tests for build_queue()."""

    @pytest.mark.parametrize("watch,keep", [(True, False), (False, True)])
    def test_history_dropped_in_watch_mode(self, watch, keep):
        from h265split.cli import PlainProgressUI, build_queue
        from h265split.config import Config

        queue = build_queue(Config(watch=watch), "x265", PlainProgressUI(progress=False), None)
        assert queue.keep_history is keep
