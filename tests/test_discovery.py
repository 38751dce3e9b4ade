import os
import time
from pathlib import Path

import pytest

from zio.discovery import (
    NewerThan,
    PeriodWindow,
    TimeMarker,
    check_dir,
    describe_period,
    find_images,
    image_format,
    parse_period,
)
from zio.errors import FatalError
from zio.settings import RunSettings

from conftest import write_bytes


def _age(path: Path, seconds: float) -> None:
    t = time.time() - seconds
    os.utime(path, (t, t))


@pytest.mark.parametrize(
    "name, fmt",
    [
        ("a.jpg", "JPEG"),
        ("a.JPEG", "JPEG"),
        ("a.Jpe", "JPEG"),
        ("a.png", "PNG"),
        ("a.GIF", "GIF"),
        ("a.webp", None),
        ("jpg", None),
    ],
)
def test_image_format(name, fmt):
    assert image_format(Path(name)) == fmt


def test_parse_period_units():
    assert parse_period("30m") == PeriodWindow(30, "minutes")
    assert parse_period("2h") == PeriodWindow(120, "minutes")
    assert parse_period("7d") == PeriodWindow(7, "days")
    assert describe_period("2h") == "2 hour(s)"


@pytest.mark.parametrize("bad", ["", "10", "m", "10s", "1.5h", "-3d", "10 m"])
def test_parse_period_rejects_bad_values(bad):
    with pytest.raises(FatalError, match="Wrong format of period"):
        parse_period(bad)


def test_find_images_filters_extensions_and_sorts(images_dir, make_image):
    make_image(images_dir / "b.png")
    make_image(images_dir / "a.JPG")
    make_image(images_dir / "sub" / "c.gif")
    (images_dir / "notes.txt").write_text("hi")
    (images_dir / "d.webp").write_bytes(b"webp")

    found = find_images(images_dir)

    assert found == [images_dir / "a.JPG", images_dir / "b.png", images_dir / "sub" / "c.gif"]


def test_find_images_skips_symlinks(images_dir, make_image):
    real = make_image(images_dir / "real.png")
    (images_dir / "link.png").symlink_to(real)

    assert find_images(images_dir) == [real]


def test_exclusion_by_substring(images_dir):
    write_bytes(images_dir / "keep" / "a.png", 10)
    write_bytes(images_dir / "cache" / "b.png", 10)
    write_bytes(images_dir / "thumbs" / "c.png", 10)

    found = find_images(images_dir, exclude=("cache", "/thumbs/"))

    assert found == [images_dir / "keep" / "a.png"]


def test_period_window_minutes(images_dir):
    fresh = write_bytes(images_dir / "fresh.png", 10)
    old = write_bytes(images_dir / "old.png", 10)
    _age(fresh, 5 * 60)
    _age(old, 3 * 3600)

    assert find_images(images_dir, time_filter=parse_period("10m")) == [fresh]
    assert find_images(images_dir, time_filter=parse_period("2h")) == [fresh]
    assert find_images(images_dir, time_filter=parse_period("4h")) == [fresh, old]


def test_period_window_days_truncates(images_dir):
    f = write_bytes(images_dir / "a.png", 10)
    _age(f, 1.9 * 86400)

    assert find_images(images_dir, time_filter=parse_period("1d")) == []
    assert find_images(images_dir, time_filter=parse_period("2d")) == [f]


def test_newer_than_is_strict(images_dir):
    f = write_bytes(images_dir / "a.png", 10)
    mtime = f.stat().st_mtime_ns

    assert find_images(images_dir, time_filter=NewerThan(mtime)) == []
    assert find_images(images_dir, time_filter=NewerThan(mtime - 1)) == [f]


def test_marker_resolution(images_dir, tmp_path):
    s = RunSettings(target_dir=images_dir, new_only=True)
    assert TimeMarker.resolve(s).path == images_dir / ".timeMarker"

    s = RunSettings(target_dir=images_dir, new_only=True, time_marker="stamp")
    assert TimeMarker.resolve(s).path == images_dir / "stamp"

    s = RunSettings(target_dir=images_dir, new_only=True, time_marker="stamp", time_marker_dir=tmp_path)
    assert TimeMarker.resolve(s).path == tmp_path / "stamp"

    full = tmp_path / "markers" / "site"
    s = RunSettings(target_dir=images_dir, new_only=True, time_marker=str(full))
    assert TimeMarker.resolve(s).path == full


def test_marker_path_without_file_name_is_fatal(images_dir):
    s = RunSettings(target_dir=images_dir, new_only=True, time_marker="/var/markers/")
    with pytest.raises(FatalError, match="filename not set"):
        TimeMarker.resolve(s)


def test_marker_check_missing_directory(tmp_path):
    marker = TimeMarker(tmp_path / "nope" / ".timeMarker")
    with pytest.raises(FatalError, match="Directory for time marker not found"):
        marker.check()


def test_marker_check_keeps_existing_mtime(images_dir):
    path = images_dir / ".timeMarker"
    path.touch()
    _age(path, 3600)
    before = path.stat().st_mtime_ns

    marker = TimeMarker(path)
    marker.check()

    assert marker.existed
    assert path.stat().st_mtime_ns == before


def test_marker_check_fails_when_mtime_cannot_change(images_dir, monkeypatch):
    path = images_dir / ".timeMarker"
    path.touch()
    marker = TimeMarker(path)

    def denied(*args, **kwargs):
        raise PermissionError("read-only")

    monkeypatch.setattr(os, "utime", denied)
    with pytest.raises(FatalError, match="no permissions to modify time marker"):
        marker.check()


def test_missing_marker_means_no_filter(images_dir):
    marker = TimeMarker(images_dir / ".timeMarker")
    marker.check()

    assert not marker.existed
    assert marker.time_filter() is None


def test_marker_stamp_and_advance(images_dir):
    marker = TimeMarker(images_dir / ".timeMarker")
    marker.touch()
    start = marker.mtime_ns()

    f = write_bytes(images_dir / "a.png", 10)
    marker.stamp(f)
    marker.advance()

    assert f.stat().st_mtime_ns == start
    assert marker.mtime_ns() == start + 1_000_000_000
    assert find_images(images_dir, time_filter=marker.time_filter()) == []


def test_check_dir():
    with pytest.raises(FatalError, match="not found"):
        check_dir(Path("/definitely/not/here"))
