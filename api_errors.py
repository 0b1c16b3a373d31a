from __future__ import annotations

from typing import Any

from flask import jsonify

from game_errors import error_kind_for_status


def build_error_payload(
    *,
    code: str,
    message: str,
    kind: str = "",
    details: Any = None,
) -> dict[str, Any]:
    payload = {
        "code": str(code).strip() or "unknown_error",
        "message": str(message).strip() or "Unknown error.",
        "kind": str(kind).strip() or "validation",
        "details": details if details is not None else {},
    }
    # Clients that only understand {error: string} read this field.
    payload["error"] = payload["message"]
    return payload


def error_response(
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
):
    payload = build_error_payload(
        code=code,
        message=message,
        kind=error_kind_for_status(int(status)),
        details=details,
    )
    return jsonify(payload), int(status)
