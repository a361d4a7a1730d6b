"""Credential cookie transport for access and refresh tokens."""

from __future__ import annotations

from fastapi import Response

from app.config import get_settings

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _secure_cookies() -> bool:
    """Cookies are marked Secure everywhere except local development."""
    return get_settings().app.environment != "development"


def set_access_cookie(response: Response, token: str, max_age_seconds: int) -> None:
    """Attach the access token as an httpOnly same-site cookie."""
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=token,
        max_age=max_age_seconds,
        httponly=True,
        secure=_secure_cookies(),
        samesite="strict",
        path="/",
    )


def set_refresh_cookie(response: Response, token: str, max_age_seconds: int) -> None:
    """Attach the refresh token as an httpOnly same-site cookie."""
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=token,
        max_age=max_age_seconds,
        httponly=True,
        secure=_secure_cookies(),
        samesite="strict",
        path="/",
    )


def clear_auth_cookies(response: Response) -> None:
    """Expire both credential cookies."""
    for key in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            key=key,
            httponly=True,
            secure=_secure_cookies(),
            samesite="strict",
            path="/",
        )
