from __future__ import annotations

from fastapi import Request


def get_request_email(request: Request) -> str:
    email = (
        request.headers.get("X-User-Email")
        or request.headers.get("X-User")
        or "system@local"
    )
    return (email or "").strip().lower() or "system@local"
