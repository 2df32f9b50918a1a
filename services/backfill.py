import logging

from models import RequestStatus
from schemas import BackfillResult, DonationRequest, Project
from services.ledger import QuantityLedger
from services.matcher import match_material
from services.store import KeyTreeStore, join_path, server_timestamp

logger = logging.getLogger("ecowaste.backfill")


class MaterialBackfill:
    """
    Re-applies material credits that approval could not make.

    Approved project requests without `materialBackfilled` are matched
    against their project again; a match credits the material and marks
    the request so it is never credited twice.
    """

    def __init__(self, store: KeyTreeStore, ledger: QuantityLedger) -> None:
        self.store = store
        self.ledger = ledger

    async def run(self) -> BackfillResult:
        result = BackfillResult()
        raw = await self.store.get("requests") or {}
        for key, value in raw.items():
            request = DonationRequest.from_store(key, value)
            if request.status != RequestStatus.APPROVED or not request.project_id:
                continue
            if request.material_backfilled:
                continue
            result.processed += 1

            raw_project = await self.store.get(join_path("projects", request.project_id))
            if raw_project is None:
                result.errors.append(f"project-missing:{request.id}")
                continue
            project = Project.from_store(request.project_id, raw_project)
            material_id = match_material(request.donation_title, project.materials)
            if material_id is None:
                result.errors.append(f"no-match:{request.id}")
                continue

            acquired = await self.ledger.credit_material(project.id, material_id, request.quantity)
            if acquired is None:
                result.errors.append(f"write-dropped:{request.id}")
                continue
            await self.store.update(
                join_path("requests", request.id),
                {"materialBackfilled": True, "materialBackfilledAt": server_timestamp()},
            )
            result.updated += 1

        logger.info(
            "Backfill processed %d approved requests, updated %d, %d errors",
            result.processed,
            result.updated,
            len(result.errors),
        )
        return result
