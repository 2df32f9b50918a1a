import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from models import as_count
from schemas import TaskCreate, TaskDefinition, TaskProgress, UserStats
from services.errors import InvalidTransition, NotFound, ValidationFailed
from services.gamification import (
    CAPSTONE_LEVEL,
    SIERRA_MADRE,
    GamificationLedger,
    has_badge,
    union_badges,
    without_badge,
)
from services.hub import SubscriptionHub
from services.ledger import QuantityLedger
from services.notifications import Notifier
from services.store import KeyTreeStore, join_path

logger = logging.getLogger("ecowaste.achievements")

PROGRESS_FIELDS = {
    "recycle": "recycling_count",
    "donate": "donation_count",
    "project": "projects_completed",
    "xp": "xp",
}

UNLOCKED = "unlocked"
RELOCKED = "relocked"

DEFAULT_TASKS: List[Dict[str, Any]] = [
    {"title": "Donation Starter", "description": "Donate 1 item", "type": "donate", "target": 1,
     "xpReward": 50, "rewardType": "badge", "badgeId": "donation_starter"},
    {"title": "Donation Hero", "description": "Donate 5+ items", "type": "donate", "target": 5,
     "xpReward": 100, "rewardType": "badge", "badgeId": "donation_hero"},
    {"title": "Donation Champion", "description": "Donate 15+ items", "type": "donate", "target": 15,
     "xpReward": 200, "rewardType": "badge", "badgeId": "donation_champion"},
    {"title": "Recycling Starter", "description": "Recycle 1 item", "type": "recycle", "target": 1,
     "xpReward": 50, "rewardType": "badge", "badgeId": "recycling_starter"},
    {"title": "Recycling Pro", "description": "Recycle 10 items", "type": "recycle", "target": 10,
     "xpReward": 150, "rewardType": "badge", "badgeId": "recycling_pro"},
    {"title": "Recycling Expert", "description": "Recycle 15 items", "type": "recycle", "target": 15,
     "xpReward": 250, "rewardType": "badge", "badgeId": "recycling_expert"},
    {"title": "Eco Star", "description": "Complete your first project", "type": "project", "target": 1,
     "xpReward": 100, "rewardType": "badge", "badgeId": "eco_star"},
    {"title": "Project Master", "description": "Complete 3 projects", "type": "project", "target": 3,
     "xpReward": 200, "rewardType": "badge", "badgeId": "project_master"},
    {"title": "EcoWaste Rookie", "description": "Earn 50 XP", "type": "xp", "target": 50,
     "xpReward": 0, "rewardType": "badge", "badgeId": "ecowaste_rookie"},
    {"title": "EcoWaste Master", "description": "Earn 100 XP", "type": "xp", "target": 100,
     "xpReward": 0, "rewardType": "badge", "badgeId": "ecowaste_master"},
]


def task_progress(task: TaskDefinition, user: UserStats) -> int:
    field = PROGRESS_FIELDS.get(task.type)
    if field is None:
        # "other" tasks have no measurable source and can always be claimed.
        return task.target
    return getattr(user, field)


def reconcile_capstone(user: Dict[str, Any], task_ids: FrozenSet[str]) -> Optional[str]:
    """
    Bring the capstone badge in line with task completion, in place.

    Returns UNLOCKED or RELOCKED when the badge set changed, else None. A
    user who still qualifies through the level path keeps the badge.
    """
    if not task_ids:
        return None
    completed = set(user.get("completedTasks") or [])
    holds = has_badge(user.get("badges"), SIERRA_MADRE)
    if task_ids <= completed:
        if holds:
            return None
        user["badges"] = union_badges(user.get("badges"), SIERRA_MADRE)
        return UNLOCKED
    if holds and max(1, as_count(user.get("level"))) < CAPSTONE_LEVEL:
        user["badges"] = without_badge(user.get("badges"), SIERRA_MADRE)
        return RELOCKED
    return None


class AchievementEvaluator:
    """Task claiming plus the reactive capstone badge check."""

    def __init__(
        self,
        store: KeyTreeStore,
        hub: SubscriptionHub,
        ledger: QuantityLedger,
        gamification: GamificationLedger,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.hub = hub
        self.ledger = ledger
        self.gamification = gamification
        self.notifier = notifier
        self._task_ids: Optional[FrozenSet[str]] = None
        self._detach: Optional[Callable[[], None]] = None

    async def attach(self) -> None:
        if self._detach is None:
            self._detach = await self.hub.watch("tasks", self._on_tasks)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    async def tasks(self) -> Dict[str, TaskDefinition]:
        raw = await self.hub.snapshot("tasks") or {}
        return {key: TaskDefinition.from_store(key, value) for key, value in raw.items()}

    async def progress_for(self, user_id: str) -> List[TaskProgress]:
        user = await self._load_user(user_id)
        rows = []
        for task in (await self.tasks()).values():
            progress = task_progress(task, user)
            claimed = task.id in user.completed_tasks
            rows.append(
                TaskProgress(
                    task=task,
                    progress=progress,
                    claimed=claimed,
                    claimable=not claimed and progress >= task.target,
                )
            )
        return rows

    async def claim_task(self, user_id: str, task_id: str) -> UserStats:
        tasks = await self.tasks()
        task = tasks.get(task_id)
        if task is None:
            raise NotFound("Task not found.")
        user = await self._load_user(user_id)
        if task_id in user.completed_tasks:
            raise InvalidTransition("Task already claimed.")
        progress = task_progress(task, user)
        if progress < task.target:
            raise ValidationFailed(f"Task not complete yet ({progress}/{task.target}).")

        def apply(doc: Any) -> Any:
            if not isinstance(doc, dict):
                return None
            done = list(doc.get("completedTasks") or [])
            if task_id in done:
                return None
            doc["completedTasks"] = done + [task_id]
            if task.reward_type == "badge" and task.badge_id:
                doc["badges"] = union_badges(doc.get("badges"), task.badge_id)
            return doc

        claimed = await self.ledger.mutate(join_path("users", user_id), apply, label="claim task", strict=True)
        if claimed is None:
            raise InvalidTransition("Task already claimed.")
        logger.info("User %s claimed task %s (%s)", user_id, task_id, task.title)

        if task.reward_type == "xp" and task.xp_reward:
            await self.gamification.award_xp(user_id, task.xp_reward)
        await self.evaluate(user_id, frozenset(tasks))
        return await self._load_user(user_id)

    async def evaluate(self, user_id: str, task_ids: Optional[Iterable[str]] = None) -> Optional[str]:
        if task_ids is None:
            task_ids = (await self.hub.snapshot("tasks") or {}).keys()
        ids = frozenset(task_ids)
        if not ids:
            return None
        outcome = {}

        def apply(doc: Any) -> Any:
            if not isinstance(doc, dict):
                return None
            change = reconcile_capstone(doc, ids)
            if change is None:
                return None
            outcome["change"] = change
            return doc

        if await self.ledger.mutate(join_path("users", user_id), apply, label="capstone check") is None:
            return None
        change = outcome["change"]
        logger.info("Capstone badge %s for user %s", change, user_id)
        if change == UNLOCKED:
            await self.notifier.notify(
                user_id,
                "Achievement unlocked",
                "You completed every task and earned the Sierra Madre badge!",
                "success",
                SIERRA_MADRE,
            )
        return change

    async def evaluate_all(self, task_ids: Iterable[str]) -> Dict[str, str]:
        ids = frozenset(task_ids)
        users = await self.store.get("users") or {}
        changes = {}
        for user_id in users:
            change = await self.evaluate(user_id, ids)
            if change:
                changes[user_id] = change
        return changes

    async def create_task(self, task_in: TaskCreate) -> TaskDefinition:
        record = task_in.model_dump(by_alias=True)
        key = await self.store.push("tasks", record)
        logger.info("Task %s (%s) added", key, task_in.title)
        return TaskDefinition.from_store(key, record)

    async def delete_task(self, task_id: str) -> None:
        if await self.store.get(join_path("tasks", task_id)) is None:
            raise NotFound("Task not found.")
        await self.store.remove(join_path("tasks", task_id))
        logger.info("Task %s removed", task_id)

    async def seed_default_tasks(self) -> int:
        await self.store.remove("tasks")
        for task in DEFAULT_TASKS:
            await self.store.push("tasks", dict(task))
        return len(DEFAULT_TASKS)

    async def _on_tasks(self, path: str, value: Any) -> None:
        # An empty or still-loading list would count as "all tasks done".
        if not value:
            return
        ids = frozenset(value)
        if ids == self._task_ids:
            return
        self._task_ids = ids
        await self.evaluate_all(ids)

    async def _load_user(self, user_id: str) -> UserStats:
        raw = await self.store.get(join_path("users", user_id))
        if raw is None:
            raise NotFound("User not found.")
        return UserStats.from_store(user_id, raw)
