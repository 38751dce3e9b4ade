from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple, Union

import pytest
from PIL import Image

from zio.lock import GUARD_SUFFIX
from zio.settings import RunSettings


Action = Union[bytes, BaseException, None]


class FakeOptimizer:
    """
    Stands in for ToolSelector / ResmushClient.

    actions maps a file name to what "the tool" does with it:
      bytes     -> the file is rewritten with these bytes
      exception -> raised from optimize()
      missing   -> file left untouched
    """

    def __init__(self, actions: Dict[str, Action] | None = None) -> None:
        self.actions = actions or {}
        self.calls: List[Tuple[str, str]] = []
        self.cleaned = False

    def optimize(self, path: Path, image_format: str) -> str:
        self.calls.append((path.name, image_format))
        action = self.actions.get(path.name)
        if isinstance(action, BaseException):
            raise action
        if isinstance(action, bytes):
            path.write_bytes(action)
        return "fake"

    def cleanup(self) -> None:
        self.cleaned = True


@pytest.fixture
def images_dir(tmp_path: Path) -> Path:
    d = tmp_path / "images"
    d.mkdir()
    return d


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    d = tmp_path / "tmp"
    d.mkdir()
    return d


@pytest.fixture
def settings(images_dir: Path, scratch_dir: Path) -> RunSettings:
    return RunSettings(target_dir=images_dir, tmp_dir=scratch_dir, quiet=True, less=True)


@pytest.fixture
def make_image():
    """Write a small real image with Pillow; format follows the extension."""

    def _make(path: Path, size=(16, 16), color=(200, 30, 30)) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        im = Image.new("RGB", size, color)
        if path.suffix.lower() == ".gif":
            im = im.convert("P")
        im.save(path)
        return path

    return _make


def leftovers(d: Path) -> List[str]:
    """Names in d, minus the lock guard file which lives as long as tmp does."""
    return sorted(p.name for p in d.iterdir() if not p.name.endswith(GUARD_SUFFIX))


def write_bytes(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x89" * size)
    return path
