"""Error taxonomy for video generation.

Every failure surfaced by the pipeline is a ``CardVideoError``. The ``code``
is for logs only; callers outside the process see ``public_message`` and
``status_code``.
"""
from __future__ import annotations

from typing import Dict, Optional

GENERATION_FAILED_MESSAGE = "Failed to generate the video."


class CardVideoError(Exception):
    code = "generation_failed"
    status_code = 500
    public_message = GENERATION_FAILED_MESSAGE

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail
        # Pipeline state the error was raised from, filled in by the orchestrator.
        self.state: Optional[str] = None

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.public_message}


class InvalidRequest(CardVideoError):
    code = "invalid_request"
    status_code = 400
    public_message = "Select at least one card to build a video."


class WorkspaceError(CardVideoError):
    code = "workspace_error"


class RenderError(CardVideoError):
    code = "render_error"

    def __init__(self, message: str, *, ordinal: Optional[int] = None, detail: Optional[str] = None) -> None:
        super().__init__(message, detail=detail)
        self.ordinal = ordinal


class EncodeError(CardVideoError):
    code = "encode_error"

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr_tail: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=stderr_tail)
        self.returncode = returncode
        self.stderr_tail = stderr_tail or ""


class ReadBackError(CardVideoError):
    code = "read_back_error"


__all__ = [
    "CardVideoError",
    "EncodeError",
    "GENERATION_FAILED_MESSAGE",
    "InvalidRequest",
    "ReadBackError",
    "RenderError",
    "WorkspaceError",
]
