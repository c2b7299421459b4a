from __future__ import annotations
from typing import Optional


class VideoPipelineError(Exception):
    """Base for every failure that aborts a tensor → video request."""


class SourceFetchError(VideoPipelineError):
    def __init__(self, url: str, status_code: Optional[int], reason: str):
        self.url = url
        self.status_code = status_code
        self.reason = reason
        status = f"HTTP {status_code}" if status_code is not None else "transport error"
        super().__init__(f"Failed to fetch tensor data from {url}: {status} {reason}".rstrip())


class MalformedPayloadError(VideoPipelineError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed tensor payload: {reason}")


class EncodeError(VideoPipelineError):
    def __init__(self, reason: str, returncode: Optional[int] = None, stderr: str = ""):
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr
        msg = reason
        if returncode is not None:
            msg += f" (exit {returncode})"
        if stderr:
            msg += f": {stderr.strip()}"
        super().__init__(msg)


class CleanupWarning(UserWarning):
    """Best-effort artifact deletion failed. Logged, never raised."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"could not remove {path}: {reason}")
