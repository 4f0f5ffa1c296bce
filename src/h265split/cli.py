"""
Command-line interface for h265split.

This is the main entry point for the application.
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.logging import RichHandler

from h265split import __version__
from h265split.config import (
    TOML_AVAILABLE,
    Config,
    apply_config_to_args,
    get_app_dirs,
    load_config_file,
    save_default_config,
)
from h265split.converter import BACKENDS, CONTAINERS, detect_backends, gst_env, gst_tool, pick_backend
from h265split.errors import TranscodeError
from h265split.json_progress import JSONProgressOutput
from h265split.pipeline import ProcessingQueue
from h265split.planner import COMPRESSION_RATIOS, SPEED_PRESETS
from h265split.runner import JobRunner, terminate_all_processes
from h265split.ui import PlainProgressUI, RichProgressUI, print_summary
from h265split.watcher import is_under, is_video_file, queue_output_dirs, scan_directory, watch_directory

logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error")


def parse_args(args: Optional[List[str]] = None) -> Tuple[Config, argparse.Namespace]:
    """Parse command-line arguments and return config + raw namespace."""
    defaults = Config()
    parser = argparse.ArgumentParser(
        prog="h265split",
        description="Transcode video files to H.265 in fixed-duration chunks using GStreamer.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /srv/incoming -o /srv/chunks             # Encode every video in a directory
  %(prog)s rec.mkv -o out --compression-ratio 4     # Single file, 4x smaller
  %(prog)s in -o out --encoder auto -j 2            # Best available encoder, 2 parallel jobs
  %(prog)s in -o out --watch --processed-dir done   # Keep watching for new files
  %(prog)s rec.mkv -o out --dryrun                  # Show plan and pipeline only
  %(prog)s --check-requirements                     # Check GStreamer installation
        """,
    )

    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("input", nargs="?", help="Input video file or directory (default: config or current directory)")
    parser.add_argument("--config", type=Path, metavar="FILE", help="Additional TOML/INI config file")

    out_group = parser.add_argument_group("Output settings")
    out_group.add_argument("-o", "--output", dest="output_dir", default=defaults.output_dir, help="Output directory")
    out_group.add_argument(
        "--chunk-minutes", type=float, default=defaults.chunk_minutes, help="Chunk duration in minutes (default: 60)"
    )
    out_group.add_argument("--container", choices=sorted(CONTAINERS), default=defaults.container)
    out_group.add_argument("--processed-dir", default=defaults.processed_dir, help="Move finished sources here")
    out_group.add_argument("--failed-dir", default=defaults.failed_dir, help="Move failed sources here")

    enc_group = parser.add_argument_group("Encoding")
    enc_group.add_argument(
        "--encoder",
        choices=["auto", *sorted(BACKENDS)],
        default=defaults.encoder,
        help="Encoding backend (default: x265)",
    )
    enc_group.add_argument(
        "--compression-ratio",
        type=int,
        choices=COMPRESSION_RATIOS,
        default=defaults.compression_ratio,
        help="Target output size = input size / ratio (default: 2)",
    )
    enc_group.add_argument("--speed-preset", choices=SPEED_PRESETS, default=defaults.speed_preset)
    enc_group.add_argument("--gstreamer-path", dest="gstreamer_path", default=defaults.gstreamer_path)

    scan_group = parser.add_argument_group("Scan settings")
    scan_group.add_argument("--recursive", action="store_true", default=defaults.recursive)
    scan_group.add_argument("--no-recursive", action="store_false", dest="recursive")

    watch_group = parser.add_argument_group("Watch mode")
    watch_group.add_argument("-w", "--watch", action="store_true", default=defaults.watch)
    watch_group.add_argument("--watch-poll", action="store_true", default=defaults.watch_poll, help="Use polling")
    watch_group.add_argument("--watch-interval", type=float, default=defaults.watch_interval)
    watch_group.add_argument(
        "--stable-wait", type=float, default=defaults.stable_wait, help="Seconds a new file must stop growing"
    )

    queue_group = parser.add_argument_group("Queue")
    queue_group.add_argument("-j", "--concurrency", type=int, default=defaults.concurrency, metavar="N")
    queue_group.add_argument("--max-retries", type=int, default=defaults.max_retries, metavar="N")
    queue_group.add_argument(
        "--retry-delay", dest="retry_delay_sec", type=float, default=defaults.retry_delay_sec, metavar="SEC"
    )

    ui_group = parser.add_argument_group("UI settings")
    ui_group.add_argument("--no-progress", action="store_false", dest="progress", default=defaults.progress)
    ui_group.add_argument("--json-progress", action="store_true", default=defaults.json_progress)
    ui_group.add_argument("--log-level", choices=LOG_LEVELS, default=defaults.log_level)

    debug_group = parser.add_argument_group("Debug/test")
    debug_group.add_argument("--debug", action="store_true", default=defaults.debug)
    debug_group.add_argument("--dryrun", action="store_true", default=defaults.dryrun)

    util_group = parser.add_argument_group("Utility commands")
    util_group.add_argument("--show-dirs", action="store_true")
    util_group.add_argument("--check-requirements", action="store_true")

    parsed = parser.parse_args(args)

    cfg = Config(
        input_dir=parsed.input,
        output_dir=parsed.output_dir,
        processed_dir=parsed.processed_dir,
        failed_dir=parsed.failed_dir,
        chunk_minutes=parsed.chunk_minutes,
        container=parsed.container,
        encoder=parsed.encoder,
        compression_ratio=parsed.compression_ratio,
        speed_preset=parsed.speed_preset,
        gstreamer_path=parsed.gstreamer_path,
        recursive=parsed.recursive,
        watch=parsed.watch,
        watch_poll=parsed.watch_poll,
        watch_interval=parsed.watch_interval,
        stable_wait=parsed.stable_wait,
        concurrency=parsed.concurrency,
        max_retries=parsed.max_retries,
        retry_delay_sec=parsed.retry_delay_sec,
        progress=parsed.progress,
        json_progress=parsed.json_progress,
        debug=parsed.debug,
        dryrun=parsed.dryrun,
        log_level=parsed.log_level,
    )
    return cfg, parsed


# -------------------- LOGGING --------------------


def setup_logging(cfg: Config, logs_dir: Optional[Path], console: Optional[Console] = None) -> Optional[Path]:
    """
    Configure the root logger: rich console handler plus a debug log file.

    Returns the log file path (overwritten on every run).
    """
    level_name = "debug" if cfg.debug else cfg.log_level
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.DEBUG)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=cfg.debug,
    )
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if logs_dir is None:
        return None
    log_path = logs_dir / "h265split.log"
    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root.addHandler(file_handler)
    return log_path


# -------------------- FILE COLLECTION --------------------


def collect_targets(root: Path, cfg: Config) -> List[Path]:
    """Return the video files to process for a file or directory argument."""
    if root.is_file():
        return [root] if is_video_file(root) else []
    if root.is_dir():
        skip = queue_output_dirs(cfg)
        return [p for p in scan_directory(root, cfg.recursive) if not is_under(p, skip)]
    return []


# -------------------- UTILITY COMMANDS --------------------


def _tool_version(cmd: List[str], env: Optional[Dict[str, str]] = None) -> Optional[str]:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=5, env=env)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    lines = (result.stdout or result.stderr).splitlines()
    return lines[0].strip() if lines else "found"


def check_requirements(cfg: Config) -> int:
    """Check system requirements."""
    print(f"h265split v{__version__} - Requirements Check")
    print("=" * 50)
    print()

    all_ok = True
    env = gst_env(cfg.gstreamer_path)

    print("GStreamer tools (mandatory):")
    print("-" * 40)
    for tool in ("gst-launch-1.0", "gst-inspect-1.0", "gst-discoverer-1.0"):
        path = gst_tool(tool, cfg.gstreamer_path)
        version = _tool_version([path, "--version"], env)
        if version:
            print(f"  ✓ {tool}: {version}")
        else:
            print(f"  ✗ {tool}: NOT FOUND ({path})")
            all_ok = False

    print()
    print("Optional tools:")
    print("-" * 40)
    ffprobe = _tool_version(["ffprobe", "-version"])
    print(f"  {'✓' if ffprobe else '○'} ffprobe: {ffprobe or 'not found (secondary duration discovery)'}")
    print(f"  {'✓' if TOML_AVAILABLE else '○'} TOML support: {'available' if TOML_AVAILABLE else 'not available'}")

    print()
    print("H.265 encoders:")
    print("-" * 40)
    any_encoder = False
    for backend, available in detect_backends(cfg.gstreamer_path):
        any_encoder = any_encoder or available
        mark = "✓" if available else "○"
        print(f"  {mark} {backend.id:10} {backend.element:14} {backend.name}")
    if not any_encoder:
        all_ok = False

    print()
    if all_ok:
        print("✓ All requirements satisfied")
        return 0
    print("✗ Some requirements missing")
    return 1


def show_dirs(dirs: Dict[str, Path]) -> int:
    print("h265split directories:")
    print()
    print("User directories (XDG):")
    print(f"  Config:  {dirs['config']}")
    print(f"  State:   {dirs['state']}")
    print(f"  Logs:    {dirs['logs']}")
    return 0


def run_dryrun(targets: List[Path], cfg: Config, backend: str, console: Console) -> int:
    """Resolve, plan and print the pipeline of every target without encoding."""
    failed = 0
    input_root = Path(cfg.input_dir).resolve() if cfg.input_dir else None
    for path in targets:
        out_dir = Path(cfg.output_dir) if cfg.output_dir else path.parent
        if input_root is not None and path.resolve().is_relative_to(input_root):
            out_dir = out_dir / path.resolve().relative_to(input_root).parent
        runner = JobRunner(cfg.to_request(path, out_dir, backend), cfg)
        try:
            estimate, rc_plan, args = runner.prepare()
        except TranscodeError as e:
            console.print(f"[red]✗[/red] {path.name}: {e}")
            failed += 1
            continue
        console.print(f"[bold blue]▶[/bold blue] [cyan]{path.name}[/cyan]")
        console.print(
            f"  duration {estimate.duration_seconds:.1f}s"
            f"{' (estimated)' if estimate.is_estimated else ''} via {estimate.source}, "
            f"bitrate {estimate.source_bitrate_kbps or 0:.0f} kbps"
        )
        target = (
            f"{rc_plan.target_bitrate_kbps} kbps" if rc_plan.target_bitrate_kbps is not None else f"q={rc_plan.quality}"
        )
        console.print(f"  {rc_plan.mode.value} mode, {rc_plan.element} {target}")
        console.print(f"  [dim]DRYRUN: {' '.join(runner.command(args))}[/dim]", highlight=False)
    return 1 if failed else 0


# -------------------- MAIN --------------------


def make_ui(cfg: Config) -> Any:
    """Pick the progress front-end: JSON lines, rich Live table or plain text."""
    if cfg.json_progress:
        return JSONProgressOutput()
    if cfg.progress and sys.stdout.isatty():
        return RichProgressUI()
    return PlainProgressUI(progress=cfg.progress)


def build_queue(cfg: Config, backend: str, ui: Any, logs_dir: Optional[Path]) -> ProcessingQueue:
    """Create the queue; in watch mode finished jobs are dropped from its history."""
    return ProcessingQueue(
        cfg,
        backend=backend,
        on_event=ui.handle_event,
        on_progress=ui.handle_progress,
        log_dir=logs_dir,
        keep_history=not cfg.watch,
    )


def _finish(queue: ProcessingQueue, ui: Any, console: Console) -> int:
    status = queue.get_status()
    if isinstance(ui, JSONProgressOutput):
        ui.complete()
    else:
        ui.stop()
        print_summary(console, status, queue.jobs)
    return 1 if status["failed"] else 0


def run_batch(targets: List[Path], cfg: Config, backend: str, logs_dir: Optional[Path], console: Console) -> int:
    """Process a fixed list of files and return the exit code."""
    ui = make_ui(cfg)
    queue = build_queue(cfg, backend, ui, logs_dir)
    if isinstance(ui, JSONProgressOutput):
        ui.start(len(targets), backend, cfg.concurrency)
    else:
        ui.start()

    try:
        for path in targets:
            queue.enqueue(path)
        queue.wait_for_completion()
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling active jobs")
        queue.cancel_all()
        queue.shutdown(wait=True)
        terminate_all_processes()
        _finish(queue, ui, console)
        return 130

    queue.shutdown(wait=True)
    return _finish(queue, ui, console)


def run_watch_mode(root: Path, cfg: Config, backend: str, logs_dir: Optional[Path], console: Console) -> int:
    """Run in watch mode, monitoring a directory for new video files."""
    ui = make_ui(cfg)
    queue = build_queue(cfg, backend, ui, logs_dir)
    if isinstance(ui, JSONProgressOutput):
        ui.start(0, backend, cfg.concurrency)
        print_fn = logger.info
    else:
        ui.start()
        print_fn = ui.log

    try:
        if not watch_directory(root, queue.enqueue, cfg, print_fn=print_fn):
            ui_stop = getattr(ui, "stop", None)
            if ui_stop is not None:
                ui_stop()
            return 1
    finally:
        queue.cancel_all()
        queue.shutdown(wait=True)
        terminate_all_processes()

    return _finish(queue, ui, console)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    cfg, args = parse_args(argv)

    dirs = get_app_dirs()
    save_default_config(dirs["config"])

    try:
        file_config = load_config_file(dirs["config"], args.config)
    except (OSError, RuntimeError, ValueError) as e:
        print(f"Error: cannot load config: {e}", file=sys.stderr)
        return 2
    if file_config:
        apply_config_to_args(file_config, cfg)

    console = Console()
    setup_logging(cfg, dirs["logs"])

    if args.check_requirements:
        return check_requirements(cfg)
    if args.show_dirs:
        return show_dirs(dirs)

    try:
        cfg.validate()
    except ValueError as e:
        logger.error("%s", e)
        return 2

    root = Path(cfg.input_dir).expanduser() if cfg.input_dir else Path.cwd()
    if not root.exists():
        logger.error("Input not found: %s", root)
        return 2
    cfg.input_dir = str(root if root.is_dir() else root.parent)

    backend = pick_backend(cfg.encoder, cfg.gstreamer_path)
    logger.info("h265split v%s, encoder %s, compression %sx", __version__, backend, cfg.compression_ratio)

    if cfg.watch:
        if not root.is_dir():
            logger.error("Watch mode needs a directory: %s", root)
            return 2
        if not cfg.output_dir:
            logger.error("Watch mode needs an output directory (-o), chunks would be picked up as new files")
            return 2
        return run_watch_mode(root, cfg, backend, dirs["logs"], console)

    targets = collect_targets(root, cfg)
    if not targets:
        logger.warning("No video files found in %s", root)
        return 0

    if cfg.dryrun:
        return run_dryrun(targets, cfg, backend, console)

    return run_batch(targets, cfg, backend, dirs["logs"], console)


if __name__ == "__main__":
    sys.exit(main())
