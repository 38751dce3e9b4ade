import os
import stat
from pathlib import Path

from zio.backup import BackupManager, FilePerms


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def test_snapshot_copies_file_into_tmp(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")

    mgr = BackupManager(scratch_dir)
    record = mgr.snapshot(img)

    assert record is not None
    assert record.backup == scratch_dir / "a.png.bkp"
    assert record.backup.read_bytes() == b"original"
    assert mgr.live_count == 1


def test_snapshot_disabled_is_noop(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")

    mgr = BackupManager(scratch_dir, enabled=False)

    assert mgr.snapshot(img) is None
    assert list(scratch_dir.iterdir()) == []
    assert mgr.restore_if_regressed(img, 10, 20) is False


def test_restore_when_not_smaller(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")
    mgr = BackupManager(scratch_dir)
    mgr.snapshot(img)

    img.write_bytes(b"much bigger output")

    assert mgr.restore_if_regressed(img, 8, 18) is True
    assert img.read_bytes() == b"original"
    assert not (scratch_dir / "a.png.bkp").exists()


def test_equal_size_counts_as_regression(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")
    mgr = BackupManager(scratch_dir)
    mgr.snapshot(img)

    img.write_bytes(b"ORIGINAL")

    assert mgr.restore_if_regressed(img, 8, 8) is True
    assert img.read_bytes() == b"original"


def test_no_restore_when_smaller_and_backup_removed(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")
    mgr = BackupManager(scratch_dir)
    mgr.snapshot(img)

    img.write_bytes(b"tiny")

    assert mgr.restore_if_regressed(img, 8, 4) is False
    assert img.read_bytes() == b"tiny"
    assert list(scratch_dir.iterdir()) == []


def test_restore_on_regression_disabled_keeps_output(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")
    mgr = BackupManager(scratch_dir, restore_on_regression=False)
    mgr.snapshot(img)

    img.write_bytes(b"much bigger output")

    assert mgr.restore_if_regressed(img, 8, 18) is False
    assert img.read_bytes() == b"much bigger output"
    assert list(scratch_dir.iterdir()) == []


def test_cleanup_removes_live_backups(images_dir, scratch_dir):
    mgr = BackupManager(scratch_dir)
    for name in ("a.png", "b.gif"):
        p = images_dir / name
        p.write_bytes(b"x")
        mgr.snapshot(p)

    assert mgr.cleanup() == 2
    assert list(scratch_dir.iterdir()) == []
    assert mgr.live_count == 0


def test_restore_reapplies_mode(images_dir, scratch_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"original")
    os.chmod(img, 0o640)

    mgr = BackupManager(scratch_dir)
    mgr.snapshot(img)

    # A tool that recreates the file loses the original mode.
    img.unlink()
    img.write_bytes(b"recreated and bigger")
    os.chmod(img, 0o600)

    assert mgr.restore(img) is True
    assert _mode(img) == 0o640


def test_file_perms_roundtrip(images_dir):
    img = images_dir / "a.png"
    img.write_bytes(b"x")
    os.chmod(img, 0o644)
    perms = FilePerms.capture(img)

    os.chmod(img, 0o600)
    assert perms.apply(img) is True
    assert _mode(img) == 0o644


def test_file_perms_apply_missing_file_is_not_fatal(images_dir):
    perms = FilePerms(uid=os.getuid(), gid=os.getgid(), mode=0o644)
    assert perms.apply(images_dir / "gone.png") is False
