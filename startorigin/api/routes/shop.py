"""
startorigin.api.routes.shop — Customization shop
=================================================

Catalogue is public; buying needs a session.  A purchase the balance can't
cover answers 402 with ``shortfall`` and ``problems_needed``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from startorigin.api.deps import get_current_user, get_engine
from startorigin.constants import RARITY_ORDER
from startorigin.database.models import CustomizationItem, UserCustomization
from startorigin.services import engagement_service

router = APIRouter(prefix="/shop", tags=["shop"])


def item_to_dict(item: CustomizationItem) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "type": item.type,
        "value": item.value,
        "icon": item.icon,
        "price": item.price,
        "rarity": item.rarity,
    }


def owned_to_dict(row: UserCustomization) -> dict:
    return {
        "id": row.id,
        "item_id": row.item_id,
        "is_active": row.is_active,
        "purchased_at": row.purchased_at.isoformat(),
        "item": item_to_dict(row.item),
    }


class ActiveBody(BaseModel):
    is_active: bool


@router.get("/items")
def list_items(engine=Depends(get_engine)):
    items = engagement_service.list_items(engine)
    return {
        "items": [item_to_dict(i) for i in items],
        "rarities": list(RARITY_ORDER),
    }


@router.get("/mine")
def my_items(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    rows = engagement_service.list_user_customizations(engine, user["sub"])
    return {
        "balance": engagement_service.get_balance(engine, user["sub"]),
        "owned": [owned_to_dict(r) for r in rows],
    }


@router.post("/items/{item_id}/purchase", status_code=201)
def purchase(
    item_id: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    row = engagement_service.purchase_item(engine, user["sub"], item_id)
    return {
        **owned_to_dict(row),
        "balance": engagement_service.get_balance(engine, user["sub"]),
    }


@router.patch("/mine/{customization_id}")
def set_active(
    customization_id: str,
    body: ActiveBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    row = engagement_service.set_customization_active(
        engine, user["sub"], customization_id, body.is_active,
    )
    return owned_to_dict(row)
