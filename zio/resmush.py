from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import requests

from .errors import ImageSkipped, OptimizeError
from .settings import APP_VERSION, RESMUSH_API_URL, RESMUSH_MAX_FILESIZE, RESMUSH_QUALITY


logger = logging.getLogger(__name__)

TOOL_NAME = "resmush.it"


class ResmushClient:
    """
    Optimizes images through the reSmush.it web service instead of local tools.

    One upload per file, no retries. The service answers with JSON that
    either points at the optimized image (dest) or carries an error; the
    optimized bytes only replace the original when they are smaller.
    """

    def __init__(
        self,
        quality: int = RESMUSH_QUALITY,
        preserve_exif: bool = False,
        max_filesize: int = RESMUSH_MAX_FILESIZE,
        api_url: str = RESMUSH_API_URL,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.quality = quality
        self.preserve_exif = preserve_exif
        self.max_filesize = max_filesize
        self.endpoint = api_url.rstrip("/") + "/ws.php"
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", f"zio/{APP_VERSION}")

    def optimize(self, path: Path, image_format: str) -> str:
        path = Path(path)
        size = path.stat().st_size

        if size > self.max_filesize:
            raise ImageSkipped("too_large", f"{path} is larger than {self.max_filesize} bytes")

        data = self._upload(path)

        if "error" in data:
            raise OptimizeError(
                f"reSmush.it error {data.get('error')}: {data.get('error_long', 'unknown error')}"
            )

        dest = data.get("dest")
        if not dest:
            raise OptimizeError("reSmush.it answered without an optimized image")

        # The service reports the result size up front; skip the download
        # when it already says there is nothing to gain.
        dest_size = data.get("dest_size")
        if dest_size is not None:
            try:
                dest_size = int(dest_size)
            except (TypeError, ValueError) as e:
                raise OptimizeError(f"reSmush.it answered with a bad dest_size: {dest_size!r}") from e
        if dest_size is not None and dest_size >= size:
            logger.debug("reSmush.it could not shrink %s (%s >= %s)", path, dest_size, size)
            return TOOL_NAME

        content = self._download(dest)
        if not content:
            raise OptimizeError("reSmush.it returned an empty image")

        if len(content) < size:
            _replace_bytes(path, content)
        return TOOL_NAME

    def cleanup(self) -> None:
        self.session.close()

    def _upload(self, path: Path) -> dict:
        params = {
            "qlty": self.quality,
            "exif": "true" if self.preserve_exif else "false",
        }
        try:
            with path.open("rb") as fh:
                resp = self.session.post(
                    self.endpoint,
                    params=params,
                    files={"files": (path.name, fh)},
                    timeout=self.timeout,
                )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise OptimizeError(f"reSmush.it upload failed: {e}") from e
        except ValueError as e:
            raise OptimizeError("reSmush.it answered with invalid JSON") from e

        if not isinstance(data, dict):
            raise OptimizeError("reSmush.it answered with unexpected JSON")
        return data

    def _download(self, url: str) -> bytes:
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise OptimizeError(f"reSmush.it download failed: {e}") from e
        return resp.content


def _replace_bytes(path: Path, content: bytes) -> None:
    # Write next to the original and rename over it, so an interrupted
    # download never leaves a truncated image behind.
    fd, tmp_name = tempfile.mkstemp(prefix=".zio_", suffix=path.suffix, dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
