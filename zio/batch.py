from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from .backup import BackupManager, FilePerms
from .discovery import TimeMarker, image_format
from .errors import ImageSkipped, OptimizeError
from .lock import DirectoryLock
from .results import Outcome, ProcessResult
from .settings import RunSettings
from .sizes import saved_percent


logger = logging.getLogger(__name__)


class Optimizer(Protocol):
    def optimize(self, path: Path, image_format: str) -> str: ...

    def cleanup(self) -> None: ...


@dataclass
class RunTotals:
    """
    Running byte and file counters for one run.

    Only record() touches the byte counters, once per attempted file, which
    keeps bytes_saved == bytes_in - bytes_out at every step.
    """
    bytes_in: int = 0
    bytes_out: int = 0
    bytes_saved: int = 0
    optimized: int = 0
    total: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, size_before: int, size_after: int) -> bool:
        """Add one file. Returns True if it got smaller."""
        self.bytes_in += size_before

        if size_before <= size_after:
            self.bytes_out += size_before
            return False

        self.bytes_out += size_after
        self.bytes_saved += size_before - size_after
        self.optimized += 1
        return True


@dataclass(frozen=True)
class BatchSummary:
    total_files: int
    optimized: int
    skipped: int
    failed: int
    bytes_in: int
    bytes_out: int
    bytes_saved: int
    elapsed: float

    @property
    def saved_percent(self) -> float:
        return saved_percent(self.bytes_in, self.bytes_out)


class StatusFile:
    """
    Live progress for outside observers, e.g. a supervisor polling a run.

    Two small files in the tmp directory, named after the target directory
    so runs against different directories do not overwrite each other:
      zio-<key>.progress : "<current> <total>"
      zio-<key>.stats    : "<bytes_in> <bytes_out> <bytes_saved> <optimized>"
    The in-memory RunTotals are the source of truth; these are copies.
    """

    def __init__(self, tmp_dir: Path, target_dir: Path) -> None:
        key = hashlib.sha1(str(Path(target_dir).resolve()).encode("utf-8")).hexdigest()[:12]
        tmp_dir = Path(tmp_dir)
        self.progress_path = tmp_dir / f"zio-{key}.progress"
        self.stats_path = tmp_dir / f"zio-{key}.stats"

    def write(self, current: int, totals: RunTotals) -> None:
        _write_atomic(self.progress_path, f"{current} {totals.total}\n")
        _write_atomic(
            self.stats_path,
            f"{totals.bytes_in} {totals.bytes_out} {totals.bytes_saved} {totals.optimized}\n",
        )

    def remove(self) -> None:
        self.progress_path.unlink(missing_ok=True)
        self.stats_path.unlink(missing_ok=True)


@dataclass
class RunState:
    """Everything shared across the files of one run, passed explicitly."""
    settings: RunSettings
    optimizer: Optimizer
    backups: BackupManager
    totals: RunTotals = field(default_factory=RunTotals)
    marker: Optional[TimeMarker] = None
    status: Optional[StatusFile] = None
    started: float = field(default_factory=time.monotonic)

    @classmethod
    def create(
        cls,
        settings: RunSettings,
        optimizer: Optimizer,
        marker: Optional[TimeMarker] = None,
    ) -> "RunState":
        return cls(
            settings=settings,
            optimizer=optimizer,
            backups=BackupManager(
                settings.tmp_dir,
                enabled=settings.backup,
                restore_on_regression=settings.restore_on_regression,
            ),
            marker=marker,
            status=StatusFile(settings.tmp_dir, settings.target_dir),
        )


def process_image(path: Path, state: RunState) -> ProcessResult:
    """
    Optimize one file in place and fold the outcome into state.totals.

    Discovered -> missing (skipped)
               -> backed up -> optimized -> kept / not optimized / restored / failed
    """
    path = Path(path)
    fmt = image_format(path)
    totals = state.totals

    if not path.is_file():
        totals.skipped += 1
        return ProcessResult(path=path, image_format=fmt, outcome=Outcome.SKIPPED, reason="not_exists")

    size_before = _file_size(path)
    perms = FilePerms.capture(path)
    state.backups.snapshot(path, perms)

    tool: Optional[str] = None
    error: Optional[OptimizeError] = None
    try:
        tool = state.optimizer.optimize(path, fmt or "")
    except ImageSkipped as e:
        state.backups.discard(path)
        totals.skipped += 1
        return ProcessResult(
            path=path,
            image_format=fmt,
            outcome=Outcome.SKIPPED,
            size_before=size_before,
            size_after=size_before,
            reason=e.reason,
        )
    except OptimizeError as e:
        logger.debug("Optimizing %s failed: %s", path, e)
        error = e

    size_after = _file_size(path)
    if error is None and size_after == 0 and size_before > 0:
        error = OptimizeError("optimizer left an empty file")

    if error is not None:
        restored = state.backups.restore(path)
        # A failed file counts as unchanged, restored or not.
        size_after = size_before
    else:
        restored = state.backups.restore_if_regressed(path, size_before, size_after)

    if not restored:
        perms.apply(path)
        _stamp(path, state.marker)

    smaller = totals.record(size_before, size_after)
    counted_after = size_after if smaller else size_before

    if error is not None:
        totals.failed += 1
        outcome = Outcome.FAILED
    elif smaller:
        outcome = Outcome.OPTIMIZED
    elif restored and size_after > size_before:
        outcome = Outcome.RESTORED
    else:
        outcome = Outcome.NOT_OPTIMIZED

    return ProcessResult(
        path=path,
        image_format=fmt,
        outcome=outcome,
        size_before=size_before,
        size_after=counted_after,
        tool=tool,
        reason=str(error) if error is not None else None,
    )


def process_batch(
    images: Sequence[Path],
    state: RunState,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    result_callback: Optional[Callable[[ProcessResult], None]] = None,
) -> tuple[List[ProcessResult], BatchSummary]:
    results: List[ProcessResult] = []
    totals = state.totals
    totals.total = len(images)

    try:
        for idx, img_path in enumerate(images, start=1):
            if state.status:
                state.status.write(idx, totals)

            r = process_image(img_path, state)
            results.append(r)

            if state.status:
                state.status.write(idx, totals)

            if result_callback:
                result_callback(r)
            if progress_callback:
                progress_callback(idx, totals.total)
    finally:
        if state.status:
            state.status.remove()

    return results, summarize(state)


def summarize(state: RunState) -> BatchSummary:
    t = state.totals
    return BatchSummary(
        total_files=t.total,
        optimized=t.optimized,
        skipped=t.skipped,
        failed=t.failed,
        bytes_in=t.bytes_in,
        bytes_out=t.bytes_out,
        bytes_saved=t.bytes_saved,
        elapsed=time.monotonic() - state.started,
    )


def run_locked(
    images: Sequence[Path],
    state: RunState,
    lock: DirectoryLock,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    result_callback: Optional[Callable[[ProcessResult], None]] = None,
) -> tuple[List[ProcessResult], BatchSummary]:
    """
    Lock the target directory, process images, unlock.

    The lock is released on every way out. If the batch is interrupted
    (KeyboardInterrupt or anything else), the file being worked on is put
    back from its backup, the time marker is rolled back, and live backups
    and tool scratch files are removed before the exception continues
    upward. Files that were already finished stay as they are.
    """
    target = state.settings.target_dir
    lock.acquire(target)
    try:
        try:
            if state.marker:
                state.marker.touch()

            results, summary = process_batch(
                images,
                state,
                progress_callback=progress_callback,
                result_callback=result_callback,
            )
        except BaseException:
            restored = state.backups.restore_live()
            removed = state.backups.cleanup()
            state.optimizer.cleanup()
            if state.marker:
                state.marker.rollback()
            logger.debug("Interrupted: restored %d file(s), removed %d backup(s)", restored, removed)
            raise

        if state.marker:
            state.marker.advance()
    finally:
        lock.release(target)

    return results, summary


def _stamp(path: Path, marker: Optional[TimeMarker]) -> None:
    if marker is None or not path.exists():
        return
    try:
        marker.stamp(path)
    except OSError as e:
        logger.warning("Can't update modification time of %s: %s", path, e)


def _file_size(p: Path) -> int:
    try:
        return p.stat().st_size
    except FileNotFoundError:
        return 0


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
