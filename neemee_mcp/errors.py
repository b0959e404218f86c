"""Error codes shared by tools, resources and the remote client.

Every failure a caller sees is ``{"code": ..., "message": ..., "details"?: ...}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
CONFIG_ERROR = "CONFIG_ERROR"
BACKEND_ERROR = "BACKEND_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = dict(details)
    return body


@dataclass(slots=True)
class NeemeeError(Exception):
    """Raised for any failure that should reach the caller as a coded error."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)
