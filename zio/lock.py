from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

from .errors import DirectoryLockedError
from .settings import LOCK_FILE_NAME


logger = logging.getLogger(__name__)

GUARD_SUFFIX = ".guard"


class DirectoryLock:
    """
    Registry of directories currently being optimized, shared by every run
    that uses the same tmp directory.

    The lock file holds one absolute path per line. Every change rewrites
    the whole file through a temp file + rename so a reader never sees a
    half-written registry, and an empty registry is removed rather than
    left behind as an empty file.

    Read-modify-write cycles from different processes are serialized with
    an exclusive flock on a sidecar guard file (<lock>.guard). The guard
    is never removed: unlinking it while another run waits on it would
    hand the two runs different locks.
    """

    def __init__(self, tmp_dir: Path, name: str = LOCK_FILE_NAME) -> None:
        self.path = Path(tmp_dir) / name
        self.guard_path = Path(tmp_dir) / (name + GUARD_SUFFIX)

    def entries(self) -> List[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line.strip() for line in text.splitlines() if line.strip()]

    def is_locked(self, directory: Path) -> bool:
        return _key(directory) in self.entries()

    def acquire(self, directory: Path) -> None:
        key = _key(directory)
        with self._guarded():
            entries = self.entries()
            if key in entries:
                raise DirectoryLockedError(key)

            entries.append(key)
            self._write(entries)
        logger.debug("Locked %s in %s", key, self.path)

    def release(self, directory: Path) -> None:
        """Drop one occurrence of directory. Unknown directories are ignored."""
        if not self.path.exists():
            return

        key = _key(directory)
        with self._guarded():
            entries = self.entries()
            if key in entries:
                entries.remove(key)
                logger.debug("Unlocked %s", key)
            self._write(entries)

    def force_unlock(self, directory: Path) -> bool:
        """
        Remove a stale entry left by a run that died without releasing.

        Unlike release() this drops every occurrence. Returns True if
        anything was removed.
        """
        key = _key(directory)
        with self._guarded():
            entries = self.entries()
            kept = [e for e in entries if e != key]
            if len(kept) == len(entries):
                return False
            self._write(kept)

        logger.info("Removed %s from lock file %s", key, self.path)
        return True

    @contextmanager
    def held(self, directory: Path) -> Iterator[None]:
        self.acquire(directory)
        try:
            yield
        finally:
            self.release(directory)

    @contextmanager
    def _guarded(self) -> Iterator[None]:
        with open(self.guard_path, "a") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _write(self, entries: List[str]) -> None:
        if not entries:
            self.path.unlink(missing_ok=True)
            return

        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("\n".join(entries) + "\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _key(directory: Path) -> str:
    # Same directory, same key, however it was spelled on the command line.
    return str(Path(directory).resolve())
