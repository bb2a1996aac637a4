from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx


@dataclass
class RequestDescriptor:
    method: str
    target: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    content: bytes | None = None
    params: dict[str, Any] | None = None
    request_id: str | None = None
    issued_at: float | None = None
    skip_auth: bool = False
    retried: bool = False
    retry_count: int = 0


@dataclass
class ResponseEnvelope:
    success: bool
    code: int | str | None = None
    message: str | None = None
    data: Any = None
    errors: list[dict] = field(default_factory=list)
    error_code: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ResponseEnvelope | None":
        """Parse the ``{success, code, message, data, errors}`` wrapper.

        Returns ``None`` for bodies that do not carry a boolean ``success``
        field, so plain JSON APIs pass through unclassified.
        """
        if not isinstance(payload, dict):
            return None
        success = payload.get("success")
        if not isinstance(success, bool):
            return None

        errors = payload.get("errors")
        if not isinstance(errors, list):
            errors = []
        errors = [item for item in errors if isinstance(item, dict)]

        error_code = payload.get("errorCode")
        if not isinstance(error_code, str) and errors:
            error_code = errors[0].get("code")
        if not isinstance(error_code, str):
            error_code = None

        message = payload.get("message")
        if not isinstance(message, str):
            message = None

        return cls(
            success=success,
            code=payload.get("code"),
            message=message,
            data=payload.get("data"),
            errors=errors,
            error_code=error_code,
        )

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ResponseEnvelope | None":
        try:
            payload = response.json()
        except ValueError:
            return None
        return cls.from_payload(payload)
