import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from models import as_count
from services.errors import NotFound, ValidationFailed
from services.ledger import QuantityLedger
from services.store import join_path

logger = logging.getLogger("ecowaste.gamification")

XP_PER_LEVEL = 100
PROJECT_COMPLETION_XP = 50

SIERRA_MADRE = "sierra_madre"
ECO_WARRIOR = "eco_warrior"
GENEROUS_SOUL = "generous_soul"

CAPSTONE_LEVEL = 5

ACTION_COUNTERS = {
    "recycle": "recyclingCount",
    "donate": "donationCount",
    "project": "projectsCompleted",
}
ACTION_XP = {"recycle": 10, "donate": 20}

# (counter field, threshold, badge) checked after every counter update.
THRESHOLD_BADGES = (
    ("recyclingCount", 10, ECO_WARRIOR),
    ("donationCount", 5, GENEROUS_SOUL),
    ("level", CAPSTONE_LEVEL, SIERRA_MADRE),
)


@dataclass(frozen=True)
class Reward:
    id: str
    name: str
    min_level: int
    cost: int
    preview: str


REWARD_CATALOG: Dict[str, Reward] = {
    r.id: r
    for r in (
        Reward("avatar_lvl10", "Eco Novice", 10, 250, "🌱"),
        Reward("avatar_lvl20", "Green Guardian", 20, 500, "🌿"),
        Reward("avatar_lvl30", "Earth Defender", 30, 1000, "✨"),
        Reward("avatar_lvl50", "Gaia Champion", 50, 2000, "🌟"),
    )
}
DEFAULT_BORDER = "default"


def calculate_level(xp: int) -> int:
    return 1 + max(0, int(xp)) // XP_PER_LEVEL


def next_level_xp(level: int) -> int:
    return level * XP_PER_LEVEL


def badge_list(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, dict):
        raw = [raw[k] for k in sorted(raw, key=str)]
    return [str(b) for b in raw if b]


def has_badge(badges: Any, badge_id: str) -> bool:
    wanted = badge_id.lower()
    return any(b.lower() == wanted for b in badge_list(badges))


def union_badges(badges: Any, *badge_ids: str) -> List[str]:
    """Append any of `badge_ids` not already held, comparing case-insensitively."""
    merged = badge_list(badges)
    held = {b.lower() for b in merged}
    for badge_id in badge_ids:
        if badge_id and badge_id.lower() not in held:
            merged.append(badge_id)
            held.add(badge_id.lower())
    return merged


def without_badge(badges: Any, badge_id: str) -> List[str]:
    wanted = badge_id.lower()
    return [b for b in badge_list(badges) if b.lower() != wanted]


def _credit_xp(user: Dict[str, Any], amount: int) -> bool:
    """Credit XP and eco points in place; returns True if the level went up."""
    user["xp"] = as_count(user.get("xp")) + amount
    user["ecoPoints"] = as_count(user.get("ecoPoints")) + amount
    current_level = max(1, as_count(user.get("level")))
    new_level = calculate_level(user["xp"])
    if new_level > current_level:
        user["level"] = new_level
        return True
    return False


def _earned_badges(user: Dict[str, Any]) -> Iterable[str]:
    for field, threshold, badge in THRESHOLD_BADGES:
        if as_count(user.get(field)) >= threshold:
            yield badge


class GamificationLedger:
    """Per-user XP, level, counters and badges, updated one user record at a time."""

    def __init__(self, ledger: QuantityLedger) -> None:
        self.ledger = ledger

    @staticmethod
    def _path(user_id: str) -> str:
        return join_path("users", user_id)

    async def award_xp(self, user_id: str, amount: int) -> Optional[Dict[str, Any]]:
        leveled = {}

        def apply(user: Any) -> Any:
            if not isinstance(user, dict):
                return None
            leveled["up"] = _credit_xp(user, amount)
            if as_count(user.get("level")) >= CAPSTONE_LEVEL:
                user["badges"] = union_badges(user.get("badges"), SIERRA_MADRE)
            return user

        user = await self.ledger.mutate(self._path(user_id), apply, label="award xp")
        if user is None:
            logger.warning("XP award of %d for %s skipped", amount, user_id)
            return None
        logger.info("User %s awarded %d XP (xp=%s level=%s)", user_id, amount, user["xp"], user.get("level"))
        return {"xp": user["xp"], "level": user.get("level", 1), "leveledUp": leveled.get("up", False)}

    async def increment_action(
        self,
        user_id: str,
        kind: str,
        count: int = 1,
        custom_xp: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Bump the counter for `kind` ("recycle", "donate" or "project").

        Recycling and donating also earn XP (10 and 20 per item); projects
        earn XP only through `custom_xp`, their completion bonus is given via
        `award_xp`. Threshold badges are re-checked afterwards.
        """
        field = ACTION_COUNTERS.get(kind)
        if field is None:
            raise ValueError(f"unknown action {kind!r}")

        def apply(user: Any) -> Any:
            if not isinstance(user, dict):
                return None
            user[field] = as_count(user.get(field)) + count
            if kind != "project" or custom_xp is not None:
                reward = custom_xp if custom_xp is not None else ACTION_XP[kind] * count
                _credit_xp(user, reward)
            user["badges"] = union_badges(user.get("badges"), *_earned_badges(user))
            return user

        user = await self.ledger.mutate(self._path(user_id), apply, label=f"increment {kind}")
        if user is None:
            logger.warning("Action %s x%d for %s skipped", kind, count, user_id)
            return None
        logger.info("User %s %s count now %s", user_id, kind, user[field])
        return user

    async def redeem_reward(self, user_id: str, reward_id: str) -> Dict[str, Any]:
        reward = REWARD_CATALOG.get(reward_id)
        if reward is None:
            raise NotFound("Reward not found.")

        def apply(user: Any) -> Any:
            if not isinstance(user, dict):
                raise NotFound("User not found.")
            unlocked = badge_list(user.get("unlockedBorders"))
            if reward_id in unlocked:
                raise ValidationFailed("Reward already unlocked.")
            if max(1, as_count(user.get("level"))) < reward.min_level:
                raise ValidationFailed(f"Reach level {reward.min_level} to unlock this reward.")
            balance = as_count(user.get("ecoPoints"))
            if balance < reward.cost:
                raise ValidationFailed("Insufficient Eco Points.")
            user["ecoPoints"] = balance - reward.cost
            user["unlockedBorders"] = unlocked + [reward_id]
            return user

        user = await self.ledger.mutate(self._path(user_id), apply, label="redeem reward", strict=True)
        logger.info("User %s redeemed %s for %d points", user_id, reward_id, reward.cost)
        return {"rewardId": reward_id, "newBalance": user["ecoPoints"]}

    async def equip_border(self, user_id: str, reward_id: str) -> None:
        def apply(user: Any) -> Any:
            if not isinstance(user, dict):
                raise NotFound("User not found.")
            if reward_id != DEFAULT_BORDER and reward_id not in badge_list(user.get("unlockedBorders")):
                raise ValidationFailed("Unlock this reward before equipping it.")
            user["equippedBorder"] = reward_id
            return user

        await self.ledger.mutate(self._path(user_id), apply, label="equip border", strict=True)
