# routers/users.py
from typing import List

from fastapi import APIRouter, HTTPException

from db import ServicesDep
from schemas import Notification, RewardRead, UserRead, UserStats
from services.gamification import REWARD_CATALOG
from services.store import join_path
from .auth import CurrentUserRoleDep

router = APIRouter(tags=["users"])


@router.get("/me/notifications", response_model=List[Notification])
async def list_notifications(current: CurrentUserRoleDep, services: ServicesDep, unread: bool = False):
    return await services.notifier.list_for(current["user"].id, unread_only=unread)


@router.post("/me/notifications/read-all")
async def mark_all_notifications_read(current: CurrentUserRoleDep, services: ServicesDep):
    updated = await services.notifier.mark_all_read(current["user"].id)
    return {"updated": updated}


@router.post("/me/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    if not await services.notifier.mark_read(current["user"].id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"ok": True}


@router.get("/me/rewards", response_model=List[RewardRead])
def list_rewards(current: CurrentUserRoleDep):
    """
    The reward catalog, marked with what the user has unlocked and equipped.
    """
    user = current["user"]
    return [
        RewardRead(
            id=reward.id,
            name=reward.name,
            min_level=reward.min_level,
            cost=reward.cost,
            preview=reward.preview,
            unlocked=reward.id in user.unlocked_borders,
            equipped=reward.id == user.equipped_border,
        )
        for reward in REWARD_CATALOG.values()
    ]


@router.post("/me/rewards/{reward_id}/redeem")
async def redeem_reward(reward_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.gamification.redeem_reward(current["user"].id, reward_id)


@router.post("/me/rewards/{reward_id}/equip")
async def equip_reward(reward_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    await services.gamification.equip_border(current["user"].id, reward_id)
    return {"equippedBorder": reward_id}


@router.get("/{user_id}", response_model=UserRead)
async def get_user(user_id: str, services: ServicesDep):
    """
    Get a user's public profile and stats.
    """
    raw = await services.store.get(join_path("users", user_id))
    if raw is None:
        raise HTTPException(status_code=404, detail="User not found")
    return UserRead.model_validate(UserStats.from_store(user_id, raw).model_dump())
