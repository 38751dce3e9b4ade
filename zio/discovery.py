from __future__ import annotations

import logging
import os
import stat
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import FatalError
from .settings import EXT_TO_FORMAT, PERIOD_RE, TIME_MARKER_NAME, RunSettings


logger = logging.getLogger(__name__)

NS = 1_000_000_000


def image_format(path: Path) -> Optional[str]:
    """JPEG / PNG / GIF from the extension (case-insensitive), else None."""
    return EXT_TO_FORMAT.get(Path(path).suffix.lower().lstrip("."))


# ---------------- environment checks ----------------

def check_dir(path: Path, message: Optional[str] = None) -> None:
    if not Path(path).is_dir():
        raise FatalError(message or f"Directory {path} not found!")


def check_dir_writable(path: Path, message: Optional[str] = None) -> None:
    """Prove we can create files in path by creating (and removing) one."""
    probe = Path(path) / f".zio-probe-{uuid.uuid4().hex}"
    try:
        probe.touch()
    except OSError:
        raise FatalError(
            message or f"Current user does not have write permission to the directory {path}!"
        ) from None
    probe.unlink(missing_ok=True)


# ---------------- time filters ----------------

@dataclass(frozen=True)
class PeriodWindow:
    """
    Files modified within the trailing window.

    Only minutes and whole days are expressible (like find's -mmin/-mtime),
    so hours arrive here already converted to minutes. Day ages are
    truncated: a file 1.9 days old is "1 day" old.
    """
    amount: int
    unit: str  # "minutes" or "days"

    def accepts(self, st: os.stat_result, now: float) -> bool:
        age = now - st.st_mtime
        if self.unit == "days":
            return int(age // 86400) < self.amount
        return age < self.amount * 60


@dataclass(frozen=True)
class NewerThan:
    """Files modified strictly after a reference timestamp (find -newer)."""
    mtime_ns: int

    def accepts(self, st: os.stat_result, now: float) -> bool:
        return st.st_mtime_ns > self.mtime_ns


TimeFilter = Union[PeriodWindow, NewerThan]

_UNIT_NAMES = {"m": "minute(s)", "h": "hour(s)", "d": "day(s)"}


def parse_period(period: str) -> PeriodWindow:
    """
    "30m" -> 30 minutes, "2h" -> 120 minutes, "7d" -> 7 days.
    """
    m = PERIOD_RE.match(period.strip())
    if not m:
        raise FatalError("Wrong format of period!")

    value = int(m.group(1))
    unit = m.group(2)

    if unit == "m":
        return PeriodWindow(value, "minutes")
    if unit == "h":
        return PeriodWindow(value * 60, "minutes")
    return PeriodWindow(value, "days")


def describe_period(period: str) -> str:
    m = PERIOD_RE.match(period.strip())
    if not m:
        return period
    return f"{m.group(1)} {_UNIT_NAMES[m.group(2)]}"


# ---------------- time marker ----------------

class TimeMarker:
    """
    A file whose mtime records when the last --new-only run started.

    Lifecycle within a run:
      check()   - before the scan: the directory must be usable and, if the
                  marker exists, we must be able to change its mtime
      touch()   - after the lock is taken: marker mtime = now
      stamp(f)  - per kept file: f gets the marker's mtime
      advance() - after the run: marker mtime + 1s, so the files stamped
                  above are older than the marker next time
      rollback()- instead of advance() when the run is interrupted
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.existed = self.path.exists()
        self._saved: Optional[Tuple[int, int]] = None
        self._touched = False

    @classmethod
    def resolve(cls, s: RunSettings) -> "TimeMarker":
        base = Path(s.time_marker_dir) if s.time_marker_dir else Path(s.target_dir)
        name = s.time_marker

        if not name:
            return cls(base / TIME_MARKER_NAME)
        if name.endswith("/"):
            raise FatalError("Time marker filename not set in given path!")
        if "/" in name:
            return cls(Path(name))
        return cls(base / name)

    def check(self) -> None:
        parent = self.path.parent
        check_dir(parent, "Directory for time marker not found!")
        check_dir_writable(parent, "Current user have no permissions to directory for time marker!")

        self.existed = self.path.exists()
        if self.existed:
            self._probe_writable()

    def _probe_writable(self) -> None:
        # Touch the marker and put its old mtime back: if the mtime did not
        # move we would never be able to advance it after the run.
        st = self.path.stat()
        try:
            os.utime(self.path)
            moved = self.path.stat().st_mtime_ns != st.st_mtime_ns
            os.utime(self.path, ns=(st.st_atime_ns, st.st_mtime_ns))
        except OSError:
            moved = False

        if not moved:
            raise FatalError("Current user have no permissions to modify time marker!")

    def time_filter(self) -> Optional[NewerThan]:
        """No marker yet means no filter: the first run processes everything."""
        if not self.path.exists():
            return None
        return NewerThan(self.path.stat().st_mtime_ns)

    def mtime_ns(self) -> int:
        return self.path.stat().st_mtime_ns

    def touch(self) -> None:
        """Set the marker to now, remembering what it was for rollback()."""
        try:
            st = self.path.stat()
            self._saved = (st.st_atime_ns, st.st_mtime_ns)
        except FileNotFoundError:
            self._saved = None
        self._touched = True
        self.path.touch()

    def rollback(self) -> None:
        """
        Undo touch() after an interrupted run.

        Files the run never reached must still look newer than the marker
        next time, so the marker gets its old mtime back, or disappears
        if this run created it.
        """
        if not self._touched:
            return
        if self._saved is None:
            self.path.unlink(missing_ok=True)
        else:
            os.utime(self.path, ns=self._saved)
        self._touched = False

    def stamp(self, path: Path) -> None:
        """Give path the marker's timestamps (touch -r marker path)."""
        st = self.path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))

    def advance(self, seconds: int = 1) -> None:
        st = self.path.stat()
        os.utime(self.path, ns=(st.st_atime_ns, st.st_mtime_ns + seconds * NS))


# ---------------- discovery ----------------

def is_excluded(path: Path, exclude: Sequence[str]) -> bool:
    p = str(path)
    return any(part in p for part in exclude)


def iter_images(
    root: Path,
    time_filter: Optional[TimeFilter] = None,
    exclude: Sequence[str] = (),
    now: Optional[float] = None,
) -> Iterator[Path]:
    """
    Yield JPEG/PNG/GIF files under root, in a stable (sorted) order.

    Symlinks are not followed, neither for directories nor for files.
    """
    if now is None:
        now = time.time()

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            p = Path(dirpath) / name
            if image_format(p) is None:
                continue

            try:
                st = p.lstat()
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(st.st_mode):
                continue

            if time_filter is not None and not time_filter.accepts(st, now):
                continue

            if exclude and is_excluded(p, exclude):
                logger.debug("Excluded %s", p)
                continue

            yield p


def find_images(
    root: Path,
    time_filter: Optional[TimeFilter] = None,
    exclude: Iterable[str] = (),
) -> List[Path]:
    return list(iter_images(Path(root), time_filter=time_filter, exclude=tuple(exclude)))
