from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    def __init__(self, code: str, message: str, fields: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.fields = fields or {}
        super().__init__(message)


class ConfigError(PipelineError):
    """Missing or invalid configuration. Aborts the run before any work starts."""


class FetchError(PipelineError):
    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__("fetch_failed", message, {"url": url, "status_code": status_code})
        self.url = url
        self.status_code = status_code


class ImageDownloadError(PipelineError):
    """A single image candidate could not be cached; the caller moves to the next one."""

    def __init__(self, url: str, reason: str, detail: Optional[str] = None):
        message = f"{reason}: {url}" if not detail else f"{reason}: {url} ({detail})"
        super().__init__("image_download_failed", message, {"url": url, "reason": reason})
        self.url = url
        self.reason = reason
