from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Tuple

from .errors import FatalError


APP_VERSION = "1.0.0"

ImageFormat = Literal["JPEG", "PNG", "GIF"]

# Lower-case extension (without the dot) -> format.
EXT_TO_FORMAT = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "jpe": "JPEG",
    "png": "PNG",
    "gif": "GIF",
}

DEFAULT_BINARY_PATHS: Tuple[str, ...] = ("/bin", "/usr/bin", "/usr/local/bin")

LOCK_FILE_NAME = "zio.lock"
TIME_MARKER_NAME = ".timeMarker"
BACKUP_SUFFIX = ".bkp"

RESMUSH_API_URL = "http://api.resmush.it"
RESMUSH_QUALITY = 92
RESMUSH_MAX_FILESIZE = 5242880  # 5Mb

PERIOD_RE = re.compile(r"^([0-9]+)([mhd])$")


@dataclass(frozen=True)
class RunSettings:
    """
    Everything a single run needs to know, fixed once the CLI has parsed it.

    Like the rest of the data objects this carries no behaviour; checks
    that depend on more than one field live in validate_settings().
    """

    target_dir: Path
    tmp_dir: Path = Path(tempfile.gettempdir())

    # ----- Output -----
    quiet: bool = False
    verbose: bool = False
    less: bool = False

    # ----- Safety net -----
    backup: bool = True
    restore_on_regression: bool = True

    # ----- Discovery -----
    # period: "<n>m", "<n>h" or "<n>d"; mutually exclusive with new_only.
    period: Optional[str] = None
    new_only: bool = False
    time_marker: Optional[str] = None  # file name or full path
    time_marker_dir: Optional[Path] = None
    exclude: Tuple[str, ...] = ()

    # ----- Local tools -----
    binary_paths: Tuple[str, ...] = DEFAULT_BINARY_PATHS

    # ----- reSmush.it -----
    # When enabled it replaces the local tool chain entirely.
    resmush: bool = False
    resmush_quality: int = RESMUSH_QUALITY
    resmush_max_filesize: int = RESMUSH_MAX_FILESIZE
    resmush_preserve_exif: bool = False

    # ----- Reporting -----
    report_path: Optional[Path] = None


def validate_settings(s: RunSettings) -> None:
    """Reject option combinations that make no sense, before any file I/O."""
    if s.period is not None and s.new_only:
        raise FatalError(
            "It is impossible to use options -t(--time) and -n(--new-only) together! Set only one of it."
        )

    if s.time_marker and not s.new_only:
        raise FatalError("You can't use option -m(--time-marker) without -n(--new-only) option!")

    if s.time_marker and s.time_marker.endswith("/"):
        raise FatalError("Time marker filename not set in given path!")

    if s.period is not None and not PERIOD_RE.match(s.period):
        raise FatalError("Wrong format of period!")

    if not 0 <= s.resmush_quality <= 100:
        raise FatalError("Resmush quality must be an integer between 0 and 100!")

    if s.resmush_max_filesize <= 0:
        raise FatalError("Resmush maxfilesize must be a positive integer!")


def parse_exclude(text: Optional[str]) -> Tuple[str, ...]:
    """
    "cache,/thumbs/,tmp" -> ("cache", "/thumbs/", "tmp")

    Empty items are dropped so a trailing comma does not exclude everything.
    """
    if not text:
        return ()
    return tuple(part for part in (p.strip() for p in text.split(",")) if part)
