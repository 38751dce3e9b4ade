from __future__ import annotations


class ZioError(Exception):
    """Base class for everything zio raises on purpose."""


class FatalError(ZioError):
    """
    Configuration or environment problem.

    Raised before any image is touched; the CLI reports it on stderr
    and exits with status 1.
    """


class DirectoryLockedError(FatalError):
    def __init__(self, directory: str) -> None:
        super().__init__(f"The directory {directory} is already locked by another run!")
        self.directory = directory


class OptimizeError(ZioError):
    """A single file could not be optimized. The run carries on."""


class NoOptimizerError(OptimizeError):
    def __init__(self, image_format: str) -> None:
        super().__init__(f"No {image_format} optimizer found")
        self.image_format = image_format


class ImageSkipped(ZioError):
    """A single file was deliberately left alone (reason is a short slug)."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason
