import logging

from services.achievements import AchievementEvaluator
from services.backfill import MaterialBackfill
from services.donations import DonationService
from services.gamification import GamificationLedger
from services.hub import SubscriptionHub
from services.ledger import QuantityLedger
from services.notifications import Notifier
from services.project_flow import ProjectWorkflow
from services.request_flow import RequestLifecycle
from services.store import KeyTreeStore

logger = logging.getLogger("ecowaste")


class Services:
    """Every engine component, wired over one store."""

    def __init__(self, store: KeyTreeStore) -> None:
        self.store = store
        self.hub = SubscriptionHub(store)
        self.notifier = Notifier(store)
        self.ledger = QuantityLedger(store)
        self.gamification = GamificationLedger(self.ledger)
        self.achievements = AchievementEvaluator(store, self.hub, self.ledger, self.gamification, self.notifier)
        self.donations = DonationService(store)
        self.requests = RequestLifecycle(store, self.ledger, self.notifier, self.gamification)
        self.projects = ProjectWorkflow(store, self.hub, self.ledger, self.gamification)
        self.backfill = MaterialBackfill(store, self.ledger)

    async def start(self) -> None:
        await self.achievements.attach()
        logger.info("Engine services started")

    async def stop(self) -> None:
        self.achievements.detach()
        self.hub.close()
        logger.info("Engine services stopped")
