from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import NoOptimizerError, OptimizeError


logger = logging.getLogger(__name__)


# Fallback chains: first available compressor wins.
TOOL_CHAINS: Dict[str, Tuple[str, ...]] = {
    "JPEG": ("djpeg+cjpeg", "jpegoptim", "jpegtran"),
    "PNG": ("optipng", "pngcrush", "pngout", "advpng"),
    "GIF": ("gifsicle",),
}

# Compressor id -> binaries it needs (all of them).
TOOL_BINARIES: Dict[str, Tuple[str, ...]] = {
    "djpeg+cjpeg": ("djpeg", "cjpeg"),
    "jpegoptim": ("jpegoptim",),
    "jpegtran": ("jpegtran",),
    "optipng": ("optipng",),
    "pngcrush": ("pngcrush",),
    "pngout": ("pngout",),
    "advpng": ("advpng",),
    "gifsicle": ("gifsicle",),
}

# Every binary we probe for, in the order they are listed to the user.
ALL_BINARIES: Tuple[str, ...] = (
    "jpegoptim",
    "jpegtran",
    "djpeg",
    "cjpeg",
    "pngcrush",
    "optipng",
    "pngout",
    "advpng",
    "gifsicle",
)

CJPEG_QUALITY = 85
OPTIPNG_STRIP_SINCE = (0, 7)

_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")


def find_binaries(names: Iterable[str], search_dirs: Sequence[str]) -> Dict[str, Path]:
    """
    Look for each binary name in search_dirs.

    Directories are scanned in order and a later hit replaces an earlier
    one, so a build in /usr/local/bin beats the distro package in /usr/bin.
    Names that were not found are simply absent from the result.
    """
    found: Dict[str, Path] = {}
    for name in names:
        for d in search_dirs:
            candidate = Path(d) / name
            if candidate.is_file():
                found[name] = candidate
    return found


def build_capabilities(binaries: Mapping[str, Path]) -> Dict[str, List[str]]:
    """format -> ordered list of compressor ids whose binaries are all present."""
    caps: Dict[str, List[str]] = {}
    for image_format, chain in TOOL_CHAINS.items():
        caps[image_format] = [
            tool for tool in chain if all(b in binaries for b in TOOL_BINARIES[tool])
        ]
    return caps


class ToolSelector:
    """
    Runs the best available local compressor for an image, in place.

    Availability is decided once, when the selector is built; the two
    capability probes (optipng version, cjpeg -quality support) run at
    most once per selector as well.
    """

    def __init__(self, binaries: Mapping[str, Path], tmp_dir: Path) -> None:
        self.binaries: Dict[str, Path] = dict(binaries)
        self.tmp_dir = Path(tmp_dir)
        self.capabilities = build_capabilities(self.binaries)

        self._optipng_strip: Optional[bool] = None
        self._cjpeg_quality: Optional[bool] = None
        self._scratch: set[Path] = set()

        self._compressors: Dict[str, Callable[[Path], None]] = {
            "djpeg+cjpeg": self._optim_xjpeg,
            "jpegoptim": self._optim_jpegoptim,
            "jpegtran": self._optim_jpegtran,
            "optipng": self._optim_optipng,
            "pngcrush": self._optim_pngcrush,
            "pngout": self._optim_pngout,
            "advpng": self._optim_advpng,
            "gifsicle": self._optim_gifsicle,
        }

    @classmethod
    def probe(cls, search_dirs: Sequence[str], tmp_dir: Path) -> "ToolSelector":
        binaries = find_binaries(ALL_BINARIES, search_dirs)
        for name, path in binaries.items():
            logger.debug("Found %s at %s", name, path)
        return cls(binaries, tmp_dir)

    @property
    def all_found(self) -> bool:
        return all(name in self.binaries for name in ALL_BINARIES)

    def select(self, image_format: str) -> str:
        chain = self.capabilities.get(image_format) or []
        if not chain:
            raise NoOptimizerError(image_format)
        return chain[0]

    def optimize(self, path: Path, image_format: str) -> str:
        """
        Optimize path in place with the first available tool for its format.

        Returns the compressor id that was used. Raises OptimizeError
        (NoOptimizerError when the chain is empty) on failure.
        """
        tool = self.select(image_format)
        logger.debug("Using: %s for %s", tool, path)
        self._compressors[tool](Path(path))
        return tool

    def cleanup(self) -> None:
        """Remove intermediate files left behind by an interrupted tool."""
        for p in list(self._scratch):
            p.unlink(missing_ok=True)
            self._scratch.discard(p)

    # ---------------- subprocess plumbing ----------------

    def _bin(self, name: str) -> str:
        return str(self.binaries[name])

    def _run(self, cmd: List[str], cwd: Optional[Path] = None, ok_codes: Tuple[int, ...] = (0,)) -> None:
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise OptimizeError(f"{Path(cmd[0]).name} could not be started: {e}") from e

        if proc.returncode not in ok_codes:
            detail = (proc.stderr or "").strip().splitlines()
            msg = f"{Path(cmd[0]).name} exited with status {proc.returncode}"
            if detail:
                msg += f": {detail[-1]}"
            raise OptimizeError(msg)

    def _probe_output(self, cmd: List[str]) -> str:
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except OSError as e:
            logger.debug("Probe %s failed: %s", cmd, e)
            return ""
        return proc.stdout or ""

    def _scratch_path(self, path: Path, suffix: str) -> Path:
        p = self.tmp_dir / (path.name + suffix)
        self._scratch.add(p)
        return p

    def _drop_scratch(self, p: Path) -> None:
        p.unlink(missing_ok=True)
        self._scratch.discard(p)

    # ---------------- capability probes ----------------

    def optipng_strips(self) -> bool:
        if self._optipng_strip is None:
            out = self._probe_output([self._bin("optipng"), "-v"])
            first = out.splitlines()[0] if out else ""
            m = _VERSION_RE.search(first)
            self._optipng_strip = bool(m) and (int(m.group(1)), int(m.group(2))) >= OPTIPNG_STRIP_SINCE
            logger.debug("optipng metadata stripping: %s", self._optipng_strip)
        return self._optipng_strip

    def cjpeg_has_quality(self) -> bool:
        if self._cjpeg_quality is None:
            out = self._probe_output([self._bin("cjpeg"), "-help"])
            self._cjpeg_quality = "-quality" in out
            logger.debug("cjpeg -quality support: %s", self._cjpeg_quality)
        return self._cjpeg_quality

    # ---------------- JPEG ----------------

    def _optim_xjpeg(self, path: Path) -> None:
        ppm = self._scratch_path(path, ".ppm")
        try:
            try:
                self._run([self._bin("djpeg"), "-outfile", str(ppm), str(path)])
            except OptimizeError as e:
                raise OptimizeError(f"djpeg failed to process {path}: {e}") from e

            if not ppm.exists() or ppm.stat().st_size == 0:
                raise OptimizeError(f"djpeg produced no output for {path}")

            cmd = [self._bin("cjpeg")]
            if self.cjpeg_has_quality():
                cmd += ["-quality", str(CJPEG_QUALITY)]
            cmd += ["-optimize", "-progressive", "-outfile", str(path), str(ppm)]
            self._run(cmd)
        finally:
            self._drop_scratch(ppm)

    def _optim_jpegoptim(self, path: Path) -> None:
        self._run([self._bin("jpegoptim"), "--strip-all", str(path)])

    def _optim_jpegtran(self, path: Path) -> None:
        # jpegtran writes to stdout unless told otherwise; go through a
        # scratch file so the source is never read and written at once.
        out = self._scratch_path(path, ".jpegtran")
        try:
            self._run(
                [self._bin("jpegtran"), "-progressive", "-copy", "none", "-optimize", "-outfile", str(out), str(path)]
            )
            if out.exists() and out.stat().st_size > 0:
                shutil.copyfile(out, path)
            else:
                raise OptimizeError(f"jpegtran produced no output for {path}")
        finally:
            self._drop_scratch(out)

    # ---------------- PNG ----------------

    def _optim_optipng(self, path: Path) -> None:
        cmd = [self._bin("optipng")]
        if self.optipng_strips():
            cmd += ["-strip", "all"]
        cmd += ["-o7", "-q", str(path)]
        self._run(cmd)

    def _optim_pngcrush(self, path: Path) -> None:
        # pngcrush trips over directories in the file name, so it runs from
        # the image's own directory and only sees the basename.
        self._run(
            [
                self._bin("pngcrush"),
                "-rem", "gAMA",
                "-rem", "cHRM",
                "-rem", "iCCP",
                "-rem", "sRGB",
                "-brute",
                "-l", "9",
                "-reduce",
                "-q",
                "-s",
                "-ow",
                path.name,
            ],
            cwd=path.parent,
        )

    def _optim_pngout(self, path: Path) -> None:
        # 2 means "unable to compress further", which is not an error.
        self._run([self._bin("pngout"), "-q", "-y", "-k0", "-s0", str(path)], ok_codes=(0, 2))

    def _optim_advpng(self, path: Path) -> None:
        self._run([self._bin("advpng"), "-z", "-4", str(path)])

    # ---------------- GIF ----------------

    def _optim_gifsicle(self, path: Path) -> None:
        self._run([self._bin("gifsicle"), "--optimize=3", "-b", str(path)])
