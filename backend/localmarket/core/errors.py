from typing import Any

from fastapi import HTTPException


class APIError(HTTPException):
    """HTTPException that also carries a machine-readable error code."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        code: str,
        *,
        reasons: list[str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code
        self.reasons = reasons
