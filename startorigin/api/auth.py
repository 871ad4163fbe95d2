"""
startorigin.api.auth — Session-provider callback + current user
================================================================

Sign-up and sign-in happen at the session provider.  This router only
finishes the OAuth/PKCE round-trip and exposes the caller's profile.
"""

from __future__ import annotations

import logging
import os
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from startorigin.api.deps import get_config, get_current_user, get_engine, is_admin
from startorigin.api.routes.profiles import profile_to_dict
from startorigin.config import StartOriginConfig
from startorigin.database.engine import run_db
from startorigin.services import profile_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

TOKEN_PATH = "/auth/v1/token"


async def exchange_code(
    cfg: StartOriginConfig, code: str, code_verifier: str | None = None,
) -> dict | None:
    """Trade an authorization code for a session.  ``None`` on failure."""
    anon_key = os.getenv("AUTH_PROVIDER_ANON_KEY", "").strip()
    transport = httpx.AsyncHTTPTransport(retries=1)
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        try:
            resp = await client.post(
                f"{cfg.auth_provider_url}{TOKEN_PATH}",
                params={"grant_type": "pkce"},
                json={"auth_code": code, "code_verifier": code_verifier or ""},
                headers={"apikey": anon_key},
            )
        except httpx.HTTPError:
            logger.exception("Session provider unreachable during code exchange")
            return None
    if resp.status_code != 200:
        logger.warning("Code exchange rejected (%d)", resp.status_code)
        return None
    session = resp.json()
    if not session.get("access_token"):
        return None
    return session


@router.get("/callback")
async def callback(
    code: str | None = None,
    code_verifier: str | None = None,
    cfg: StartOriginConfig = Depends(get_config),
    engine=Depends(get_engine),
):
    """Finish sign-in and land on the problems page."""
    target = f"{cfg.frontend_url}/problems"
    if not code:
        return RedirectResponse(target)

    session = await exchange_code(cfg, code, code_verifier)
    if session is None:
        return RedirectResponse(target)

    user = session.get("user") or {}
    if user.get("id"):
        meta = user.get("user_metadata") or {}
        await run_db(
            profile_service.get_or_create_profile,
            engine, user["id"], display_name=meta.get("full_name") or meta.get("name"),
        )

    fragment = urlencode({
        "access_token": session["access_token"],
        "refresh_token": session.get("refresh_token", ""),
        "expires_in": session.get("expires_in", ""),
    })
    return RedirectResponse(f"{target}#{fragment}")


@router.get("/me")
def me(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    """Return the caller's profile, creating it on first sight."""
    profile = profile_service.get_or_create_profile(engine, user["sub"])
    body = profile_to_dict(profile)
    body["badges"] = profile_service.list_badges(engine, profile.id)
    body["is_admin"] = is_admin(user)
    return body
