from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .settings import BACKUP_SUFFIX


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilePerms:
    """Owner, group and mode bits of a file, captured before a tool rewrites it."""
    uid: int
    gid: int
    mode: int

    @classmethod
    def capture(cls, path: Path) -> "FilePerms":
        st = Path(path).stat()
        return cls(uid=st.st_uid, gid=st.st_gid, mode=stat.S_IMODE(st.st_mode))

    def apply(self, path: Path) -> bool:
        """
        Put the saved ownership and mode back on path.

        Best effort: a compressor that recreated the file may leave it owned
        by us, and only a privileged user can hand it back. Failures are
        logged and reported through the return value, never raised.
        """
        path = Path(path)
        ok = True

        try:
            st = path.stat()
        except OSError as e:
            logger.warning("Can't restore permissions of %s: %s", path, e)
            return False

        if (st.st_uid, st.st_gid) != (self.uid, self.gid):
            try:
                os.chown(path, self.uid, self.gid)
            except OSError as e:
                logger.warning("Can't restore owner of %s: %s", path, e)
                ok = False

        if stat.S_IMODE(st.st_mode) != self.mode:
            try:
                os.chmod(path, self.mode)
            except OSError as e:
                logger.warning("Can't restore mode of %s: %s", path, e)
                ok = False

        return ok


@dataclass(frozen=True)
class BackupRecord:
    original: Path
    backup: Path
    perms: FilePerms


class BackupManager:
    """
    Per-file safety copies kept in the run's tmp directory.

    A backup is named after the original's basename (photo.jpg ->
    photo.jpg.bkp), so there is never more than one per basename. Every
    backup this manager creates is tracked until it is either restored or
    discarded, which lets cleanup() remove leftovers after an interrupt.
    """

    def __init__(self, tmp_dir: Path, enabled: bool = True, restore_on_regression: bool = True) -> None:
        self.tmp_dir = Path(tmp_dir)
        self.enabled = enabled
        self.restore_on_regression = restore_on_regression
        self._live: Dict[Path, BackupRecord] = {}

    def backup_path(self, path: Path) -> Path:
        return self.tmp_dir / (Path(path).name + BACKUP_SUFFIX)

    def snapshot(self, path: Path, perms: Optional[FilePerms] = None) -> Optional[BackupRecord]:
        if not self.enabled:
            return None

        path = Path(path)
        if perms is None:
            perms = FilePerms.capture(path)

        dst = self.backup_path(path)
        try:
            shutil.copy2(path, dst)
        except BaseException:
            # A half-copied backup must never be restored over the original.
            dst.unlink(missing_ok=True)
            raise

        record = BackupRecord(original=path, backup=dst, perms=perms)
        self._live[path] = record
        logger.debug("Backed up %s -> %s", path, dst)
        return record

    def restore_if_regressed(self, path: Path, size_before: int, size_after: int) -> bool:
        """
        Put the original back when the optimized file is not smaller.

        Returns True only if the original was restored. In every other case
        the backup is no longer needed and is removed.
        """
        path = Path(path)
        if self.enabled and self.restore_on_regression and size_after >= size_before:
            if self.restore(path):
                return True

        self.discard(path)
        return False

    def restore(self, path: Path) -> bool:
        """Unconditionally copy the backup over path (used when a tool failed)."""
        path = Path(path)
        record = self._live.get(path)
        if record is None or not record.backup.exists():
            return False

        shutil.copy2(record.backup, path)
        record.perms.apply(path)
        self.discard(path)
        logger.debug("Restored %s from backup", path)
        return True

    def discard(self, path: Path) -> None:
        record = self._live.pop(Path(path), None)
        if record is not None:
            record.backup.unlink(missing_ok=True)

    def restore_live(self) -> int:
        """
        Put back every file whose backup is still alive.

        Between snapshot() and restore/discard only the file in flight has
        a live backup, so after an interrupt this rolls back exactly the
        file a killed tool may have left half-written. Errors are logged so
        the interrupt itself keeps propagating.
        """
        restored = 0
        for path in list(self._live):
            try:
                if self.restore(path):
                    restored += 1
            except OSError as e:
                logger.warning("Can't restore %s from backup: %s", path, e)
        return restored

    def cleanup(self) -> int:
        """Remove every backup still alive. Returns how many were removed."""
        removed = 0
        for path in list(self._live):
            self.discard(path)
            removed += 1
        return removed

    @property
    def live_count(self) -> int:
        return len(self._live)
