from __future__ import annotations

import argparse
import logging
import signal
import sys
import tempfile
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .batch import BatchSummary, Optimizer, RunState, run_locked
from .discovery import TimeMarker, check_dir, check_dir_writable, describe_period, find_images, parse_period
from .errors import FatalError
from .lock import DirectoryLock
from .report import build_report, save_report
from .resmush import ResmushClient
from .results import Outcome, ProcessResult
from .settings import (
    APP_VERSION,
    DEFAULT_BINARY_PATHS,
    RESMUSH_MAX_FILESIZE,
    RESMUSH_QUALITY,
    RunSettings,
    parse_exclude,
    validate_settings,
)
from .sizes import readable_size, readable_time
from .tools import ALL_BINARIES, ToolSelector


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="zio",
        description="Simple image optimizer for JPEG, PNG and GIF images.",
    )

    p.add_argument("-v", "--version", action="version", version=APP_VERSION)
    p.add_argument("-p", "--path", help="Directory with images to optimize (processed recursively)")

    # Output
    p.add_argument("-q", "--quiet", action="store_true", help="Only print results and errors")
    p.add_argument("-l", "--less", action="store_true", help="Don't show the optimizing process")
    p.add_argument("-d", "--verbose", action="store_true", help="Print debugging information")
    p.add_argument("-c", "--check-only", action="store_true", help="Check which tools are available and exit")

    # Discovery
    p.add_argument(
        "-t",
        "--time",
        dest="period",
        default=None,
        help="Only images modified within the period: minutes (10m), hours (1h) or days (30d). "
        "Can't be combined with --new-only",
    )
    p.add_argument(
        "-n",
        "--new-only",
        action="store_true",
        help="Only images newer than the time marker file, which is created/updated by the run",
    )
    p.add_argument(
        "-m",
        "--time-marker",
        default=None,
        help="Time marker file name, or full path to it (requires --new-only)",
    )
    p.add_argument("--time-marker-dir", default=None, help="Directory for the time marker (default: --path)")
    p.add_argument(
        "-e",
        "--exclude",
        default=None,
        help="Comma separated list; files whose full path contains any item are skipped",
    )

    # Environment
    p.add_argument(
        "--tmp-path",
        default=tempfile.gettempdir(),
        help="Directory for temporary files (default: %(default)s)",
    )
    p.add_argument(
        "--bin-path",
        action="append",
        default=[],
        help="Extra directory to search for optimizer binaries (repeatable)",
    )
    p.add_argument(
        "--unlock",
        action="store_true",
        help="Remove --path from the lock file first (after an interrupted or killed run)",
    )

    # Safety net
    p.add_argument("--no-backup", action="store_true", help="Don't keep backups while optimizing")
    p.add_argument(
        "--no-restore",
        action="store_true",
        help="Keep the tool's output even if it isn't smaller than the original",
    )

    # reSmush.it
    p.add_argument(
        "--resmush",
        action="store_true",
        help="Use the reSmush.it API instead of local tools (overrides tool options)",
    )
    p.add_argument("--resmush-quality", type=int, default=RESMUSH_QUALITY, help="0-100, default %(default)s")
    p.add_argument(
        "--resmush-maxfilesize",
        type=int,
        default=RESMUSH_MAX_FILESIZE,
        help="Skip files larger than this many bytes (default %(default)s)",
    )
    p.add_argument("--resmush-preserve-exif", action="store_true", help="Ask reSmush.it to keep EXIF data")

    # Reports
    p.add_argument("--report", default=None, help="Write a JSON (or .csv) report of the run to this file")

    return p


def settings_from_args(args: argparse.Namespace) -> RunSettings:
    if not args.path:
        raise FatalError("Path to files not set in -p(--path) option!")

    return RunSettings(
        target_dir=Path(args.path).expanduser().resolve(),
        tmp_dir=Path(args.tmp_path).expanduser(),
        quiet=bool(args.quiet),
        verbose=bool(args.verbose),
        less=bool(args.less),
        backup=not bool(args.no_backup),
        restore_on_regression=not bool(args.no_restore),
        period=args.period,
        new_only=bool(args.new_only),
        time_marker=args.time_marker,
        time_marker_dir=Path(args.time_marker_dir).expanduser() if args.time_marker_dir else None,
        exclude=parse_exclude(args.exclude),
        binary_paths=DEFAULT_BINARY_PATHS + tuple(args.bin_path),
        resmush=bool(args.resmush),
        resmush_quality=int(args.resmush_quality),
        resmush_max_filesize=int(args.resmush_maxfilesize),
        resmush_preserve_exif=bool(args.resmush_preserve_exif),
        report_path=Path(args.report) if args.report else None,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _setup_logging(bool(args.verbose))

    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        if args.check_only:
            selector = ToolSelector.probe(DEFAULT_BINARY_PATHS + tuple(args.bin_path), Path(args.tmp_path))
            print_tools(selector, verbose=bool(args.verbose))
            return 0

        settings = settings_from_args(args)
        return run(settings, unlock=bool(args.unlock))

    except FatalError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nInterrupted by user. Temporary files removed, directory unlocked.", file=sys.stderr)
        return 1

    finally:
        signal.signal(signal.SIGTERM, previous)


def run(s: RunSettings, unlock: bool = False, optimizer: Optional[Optimizer] = None) -> int:
    """
    Check the environment, find the images and optimize them.

    Every check that can fail fatally runs before any image is touched.
    """
    validate_settings(s)

    check_dir(s.target_dir)
    check_dir_writable(s.target_dir)
    check_dir(s.tmp_dir, "Directory for temporary files not found!")
    check_dir_writable(s.tmp_dir, "Current user have no permissions to directory for temporary files!")

    marker: Optional[TimeMarker] = None
    time_filter = None

    if s.period is not None:
        time_filter = parse_period(s.period)
        _info(s, f"Searching images changed for the last {describe_period(s.period)}.")

    elif s.new_only:
        marker = TimeMarker.resolve(s)
        marker.check()
        time_filter = marker.time_filter()
        if marker.existed:
            _info(s, "Searching images newer than time marker. Time marker found.")
        else:
            _info(s, "Time marker not found. It will be created after optimizing.")
        logger.debug("Time marker: %s", marker.path)

    if optimizer is None:
        optimizer = build_optimizer(s)

    images = find_images(s.target_dir, time_filter=time_filter, exclude=s.exclude)

    lock = DirectoryLock(s.tmp_dir)
    if unlock and lock.force_unlock(s.target_dir):
        _info(s, f"Directory {s.target_dir} removed from lock file.")

    if not images:
        optimizer.cleanup()
        print("No input images found.")
        return 0

    state = RunState.create(s, optimizer, marker=marker)

    _info(s, "Optimizing...")
    bar = None
    if not s.less:
        bar = tqdm(
            total=len(images),
            ascii="-#",
            bar_format="[{bar:50}] {percentage:3.0f}% ({n_fmt}/{total_fmt})",
            file=sys.stderr,
        )

    def on_result(r: ProcessResult) -> None:
        if bar is not None:
            tqdm.write(format_result(r), file=sys.stdout)

    def on_progress(current: int, total: int) -> None:
        if bar is not None:
            bar.update(1)

    try:
        results, summary = run_locked(
            images,
            state,
            lock,
            progress_callback=on_progress,
            result_callback=on_result,
        )
    finally:
        if bar is not None:
            bar.close()
        optimizer.cleanup()

    if marker is not None:
        _info(s, "Time marker updated." if marker.existed else "Time marker created.")

    print_summary(summary)

    if s.report_path:
        save_report(build_report(results, summary), s.report_path)
        _info(s, f"Report written: {s.report_path}")

    return 0


def build_optimizer(s: RunSettings) -> Optimizer:
    if s.resmush:
        _info(s, f"Using reSmush.it API (quality {s.resmush_quality}).")
        return ResmushClient(
            quality=s.resmush_quality,
            preserve_exif=s.resmush_preserve_exif,
            max_filesize=s.resmush_max_filesize,
        )

    selector = ToolSelector.probe(s.binary_paths, s.tmp_dir)
    if not s.quiet:
        print_tools(selector, verbose=s.verbose)
    return selector


def print_tools(selector: ToolSelector, verbose: bool = False) -> None:
    print("Checking tools...")
    for name in ALL_BINARIES:
        path = selector.binaries.get(name)
        if path is None:
            print(f"{name}...[NOT FOUND]")
        elif verbose:
            print(f"{name}...[FOUND] {path}")
        else:
            print(f"{name}...[FOUND]")

    print()
    print("All tools found" if selector.all_found else "One or more tools not found")

    for image_format, chain in selector.capabilities.items():
        if not chain:
            print(f"No {image_format} optimizer found: {image_format} images will fail")
    print()


def format_result(r: ProcessResult) -> str:
    label = r.outcome.label
    if r.outcome is Outcome.SKIPPED:
        reason = (r.reason or "").replace("_", " ").upper()
        return f"{r.path} [{label} - {reason}]"
    if r.outcome is Outcome.FAILED:
        return f"{r.path} [{label}] {r.reason or ''}".rstrip()
    if r.outcome is Outcome.OPTIMIZED:
        return f"{r.path} [{label}] {readable_size(r.size_before)} -> {readable_size(r.size_after)}"
    return f"{r.path} [{label}] {readable_size(r.size_before)}"


def print_summary(summary: BatchSummary) -> None:
    print()
    print("Optimization Summary:")
    print("----------------------")
    print(f"Input: {readable_size(summary.bytes_in)}")
    print(f"Output: {readable_size(summary.bytes_out)}")
    print(f"Saved: {readable_size(summary.bytes_saved)} ({summary.saved_percent:.2f}%)")
    print(f"Files Optimized: {summary.optimized} / {summary.total_files}")
    if summary.skipped:
        print(f"Skipped: {summary.skipped}")
    if summary.failed:
        print(f"Failed: {summary.failed}")
    print(f"Total Time: {readable_time(summary.elapsed)}")


def _info(s: RunSettings, msg: str) -> None:
    if not s.quiet:
        print(msg)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # Only our own loggers get chatty with --verbose.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt
