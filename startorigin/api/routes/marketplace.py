"""
startorigin.api.routes.marketplace — Premium username lookup
=============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from startorigin.api.deps import get_config, get_engine
from startorigin.config import StartOriginConfig
from startorigin.services import marketplace_service

router = APIRouter(prefix="/marketplace", tags=["marketplace"])


@router.get("/usernames/top")
def top_usernames():
    return {"groups": marketplace_service.top_usernames()}


@router.get("/usernames/{name}")
def check_username(
    name: str,
    engine=Depends(get_engine),
    cfg: StartOriginConfig = Depends(get_config),
):
    return marketplace_service.check_username(engine, name, cfg.static_aliases).to_dict()
