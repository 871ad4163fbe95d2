"""
startorigin.api.routes.admin — Admin endpoints (role-protected)
================================================================

Every mutation goes through ``admin_service`` and lands in ``admin_log``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from startorigin.api.deps import get_current_admin, get_engine
from startorigin.api.routes.problems import problem_to_dict
from startorigin.api.routes.profiles import profile_to_dict
from startorigin.constants import BADGE_TYPES
from startorigin.services import admin_service, reconciliation_service
from startorigin.services.log_buffer import (
    VALID_LEVELS,
    get_current_level,
    get_logs,
    set_capture_level,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class AliasCreate(BaseModel):
    user_id: str
    alias: str


class BadgeCreate(BaseModel):
    user_id: str
    badge_type: str


# ---------------------------------------------------------------------------
# Problems
# ---------------------------------------------------------------------------
@router.get("/problems")
def list_problems(
    limit: int = Query(200, ge=1, le=1000),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    problems = admin_service.list_problems(engine, limit=limit)
    return {"problems": [problem_to_dict(p) for p in problems]}


@router.delete("/problems/{problem_id}")
def delete_problem(
    problem_id: str,
    reason: str | None = Query(None),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_problem(engine, problem_id, actor_id=admin["sub"], reason=reason):
        raise HTTPException(404, "Problem not found")
    return {"deleted": problem_id}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users")
def find_user(
    q: str = Query(..., min_length=1),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    profile = admin_service.find_user(engine, q)
    if profile is None:
        raise HTTPException(404, "User not found")
    return profile_to_dict(profile)


# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------
@router.get("/aliases")
def list_aliases(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return {"aliases": admin_service.list_aliases(engine)}


@router.post("/aliases", status_code=201)
def add_alias(
    body: AliasCreate,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    row = admin_service.add_alias(engine, body.user_id, body.alias, actor_id=admin["sub"])
    return {"id": row.id, "user_id": row.user_id, "alias": row.alias}


@router.delete("/aliases/{alias_id}")
def delete_alias(
    alias_id: str,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_alias(engine, alias_id, actor_id=admin["sub"]):
        raise HTTPException(404, "Alias not found")
    return {"deleted": alias_id}


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
@router.get("/badges")
def list_badges(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return {
        "badges": admin_service.list_user_badges(engine),
        "badge_types": sorted(BADGE_TYPES),
    }


@router.post("/badges", status_code=201)
def add_badge(
    body: BadgeCreate,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    row = admin_service.add_badge(engine, body.user_id, body.badge_type, actor_id=admin["sub"])
    return {"id": row.id, "user_id": row.user_id, "badge_type": row.badge_type}


@router.delete("/badges/{badge_id}")
def delete_badge(
    badge_id: str,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_badge(engine, badge_id, actor_id=admin["sub"]):
        raise HTTPException(404, "Badge not found")
    return {"deleted": badge_id}


# ---------------------------------------------------------------------------
# Points ledger
# ---------------------------------------------------------------------------
@router.post("/reconcile")
def reconcile(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    """Recompute every balance from the ledger, correcting drift."""
    return reconciliation_service.reconcile_balances(engine)


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    limit: int = Query(100, ge=1, le=500),
    table: str | None = Query(None),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    rows = admin_service.list_admin_logs(engine, limit=limit, target_table=table)
    return {
        "entries": [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before_snapshot": r.before_snapshot,
                "after_snapshot": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ],
    }


# ---------------------------------------------------------------------------
# Live Logs
# ---------------------------------------------------------------------------
@router.get("/logs")
def get_live_logs(
    tail: int = Query(200, ge=1, le=5000),
    level: str | None = Query(None),
    logger_filter: str | None = Query(None, alias="logger"),
    admin: dict = Depends(get_current_admin),
):
    """Recent entries from the in-memory buffer."""
    if level is not None and level.upper() not in VALID_LEVELS:
        raise HTTPException(400, f"Invalid level. Must be one of: {', '.join(VALID_LEVELS)}")
    entries = get_logs(tail=tail, level=level, logger_filter=logger_filter)
    return {
        "entries": entries,
        "total": len(entries),
        "capture_level": get_current_level(),
        "valid_levels": list(VALID_LEVELS),
    }


@router.put("/logs/level")
def change_log_level(
    body: dict,
    admin: dict = Depends(get_current_admin),
):
    level_name = str(body.get("level", "")).upper()
    if level_name not in VALID_LEVELS:
        raise HTTPException(400, f"Invalid level. Must be one of: {', '.join(VALID_LEVELS)}")
    return {"level": set_capture_level(level_name)}
