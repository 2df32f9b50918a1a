import logging
from typing import Any, Dict, List, Optional

from models import DeliveryStatus, ProjectStatus, RequestStatus
from schemas import DeliveryUpdate, Donation, DonationRequest, Project, RequestCreate, RequestEdit
from services.errors import InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from services.gamification import GamificationLedger
from services.ledger import QuantityLedger
from services.matcher import match_material
from services.notifications import Notifier
from services.store import KeyTreeStore, join_path, server_timestamp

logger = logging.getLogger("ecowaste.requests")

TITLE_LENGTH = 50


def donation_title(description: Optional[str]) -> str:
    """Short request title cut from a donation description."""
    if not description:
        return "Donation"
    if len(description) > TITLE_LENGTH:
        return description[:TITLE_LENGTH] + "..."
    return description


class RequestLifecycle:
    """
    pending -> approved | rejected
    approved -> completed | cancelled

    Status writes are authoritative. Quantity and material side effects go
    through the QuantityLedger and never undo a transition when they fail.
    """

    def __init__(
        self,
        store: KeyTreeStore,
        ledger: QuantityLedger,
        notifier: Notifier,
        gamification: GamificationLedger,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.notifier = notifier
        self.gamification = gamification

    @staticmethod
    def _path(request_id: str) -> str:
        return join_path("requests", request_id)

    async def get(self, request_id: str) -> DonationRequest:
        raw = await self.store.get(self._path(request_id))
        if raw is None:
            raise NotFound("Request not found.")
        return DonationRequest.from_store(request_id, raw)

    async def list_for(self, user_id: str, box: str = "sent") -> List[DonationRequest]:
        raw = await self.store.get("requests") or {}
        found = [DonationRequest.from_store(key, value) for key, value in raw.items()]
        if box == "received":
            found = [r for r in found if r.owner_id == user_id]
        else:
            found = [r for r in found if r.requester_id == user_id]
        return list(reversed(found))

    async def list_all(self, status: Optional[str] = None) -> List[DonationRequest]:
        raw = await self.store.get("requests") or {}
        found = [DonationRequest.from_store(key, value) for key, value in raw.items()]
        if status:
            found = [r for r in found if r.status == status]
        return found

    async def _donation(self, donation_id: str) -> Optional[Donation]:
        raw = await self.store.get(join_path("donations", donation_id))
        return Donation.from_store(donation_id, raw) if raw is not None else None

    async def submit(self, requester_id: str, request_in: RequestCreate) -> DonationRequest:
        donation = await self._donation(request_in.donation_id)
        if donation is None:
            raise NotFound("Donation not found.")
        if donation.owner_id == requester_id:
            raise ValidationFailed("You cannot request your own donation.")
        if request_in.quantity > donation.quantity:
            raise ValidationFailed("Requested quantity exceeds available quantity.")
        if request_in.project_id:
            raw_project = await self.store.get(join_path("projects", request_in.project_id))
            if raw_project is None:
                raise NotFound("Project not found.")
            project = Project.from_store(request_in.project_id, raw_project)
            if project.author_id != requester_id:
                raise PermissionDenied("You can only request materials for your own projects.")
            if project.status != ProjectStatus.ACTIVE:
                raise ValidationFailed("Completed projects cannot receive materials.")

        record = {
            "donationId": donation.id,
            "donationTitle": donation_title(donation.description),
            "donationCategory": donation.category,
            "requesterId": requester_id,
            "ownerId": donation.owner_id,
            "status": RequestStatus.PENDING,
            "deliveryStatus": DeliveryStatus.NONE,
            "quantity": request_in.quantity,
            "urgencyLevel": request_in.urgency_level,
            "projectId": request_in.project_id,
            "materialId": request_in.material_id,
            "createdAt": server_timestamp(),
        }
        key = await self.store.push("requests", record)
        logger.info("Request %s: %s asks %d of donation %s", key, requester_id, request_in.quantity, donation.id)
        await self.notifier.notify(
            donation.owner_id,
            "New request",
            f"Someone requested {request_in.quantity} of \"{record['donationTitle']}\".",
            "info",
            key,
        )
        return DonationRequest.from_store(key, record)

    async def edit(self, actor_id: str, request_id: str, changes: RequestEdit) -> DonationRequest:
        request = await self.get(request_id)
        if request.requester_id != actor_id:
            raise PermissionDenied("You can only edit your own requests.")
        if request.status != RequestStatus.PENDING:
            raise InvalidTransition("Only pending requests can be edited.")
        updates: Dict[str, Any] = {}
        if changes.quantity is not None:
            updates["quantity"] = changes.quantity
        if changes.urgency_level is not None:
            updates["urgencyLevel"] = changes.urgency_level
        if updates:
            await self.store.update(self._path(request_id), updates)
        return await self.get(request_id)

    async def approve(self, actor_id: str, request_id: str) -> DonationRequest:
        request = await self.get(request_id)
        if request.owner_id != actor_id:
            raise PermissionDenied("You can only manage requests for your own donations.")
        if request.status != RequestStatus.PENDING:
            raise InvalidTransition("Only pending requests can be approved.")
        donation = await self._donation(request.donation_id)
        if donation is None:
            raise ValidationFailed("Associated donation not found.")

        await self.ledger.adjust(join_path("donations", donation.id), "quantity", -request.quantity)
        credited = await self._credit_material(request)

        updates: Dict[str, Any] = {
            "status": RequestStatus.APPROVED,
            "deliveryStatus": DeliveryStatus.PENDING_ITEM,
            "processingDate": server_timestamp(),
        }
        if credited:
            # Nothing left for the backfill routine to repair.
            updates["materialBackfilled"] = True
        await self.store.update(self._path(request_id), updates)
        logger.info("Request %s approved by %s", request_id, actor_id)

        await self.notifier.notify(
            request.requester_id,
            "Request approved",
            f"Your request for \"{request.donation_title}\" was approved.",
            "success",
            request_id,
        )
        return await self.get(request_id)

    async def _credit_material(self, request: DonationRequest) -> bool:
        """Best effort: add the approved quantity to the matching project material."""
        if not request.project_id:
            return False
        try:
            raw = await self.store.get(join_path("projects", request.project_id))
            if raw is None:
                logger.warning("Request %s: project %s not found, material not credited", request.id, request.project_id)
                return False
            project = Project.from_store(request.project_id, raw)
            material_id = match_material(request.donation_title, project.materials)
            if material_id is None:
                logger.warning("Request %s: no material of project %s matched", request.id, project.id)
                return False
            acquired = await self.ledger.credit_material(project.id, material_id, request.quantity)
            return acquired is not None
        except Exception:
            logger.exception("Request %s: material credit failed", request.id)
            return False

    async def reject(self, actor_id: str, request_id: str) -> DonationRequest:
        request = await self.get(request_id)
        if request.owner_id != actor_id:
            raise PermissionDenied("You can only manage requests for your own donations.")
        if request.status != RequestStatus.PENDING:
            raise InvalidTransition("Only pending requests can be rejected.")
        await self.store.update(self._path(request_id), {"status": RequestStatus.REJECTED})
        logger.info("Request %s rejected by %s", request_id, actor_id)
        await self.notifier.notify(
            request.requester_id,
            "Request rejected",
            f"Your request for \"{request.donation_title}\" was declined.",
            "warning",
            request_id,
        )
        return await self.get(request_id)

    async def cancel(self, actor_id: str, request_id: str) -> DonationRequest:
        request = await self.get(request_id)
        if request.requester_id != actor_id:
            raise PermissionDenied("You can only cancel your own requests.")
        if request.status not in (RequestStatus.PENDING, RequestStatus.APPROVED):
            raise InvalidTransition(f"A {request.status} request cannot be cancelled.")
        if request.delivery_status not in DeliveryStatus.CANCELLABLE:
            raise InvalidTransition("The item is already on its way and can no longer be cancelled.")

        if request.status == RequestStatus.APPROVED:
            await self.ledger.adjust(join_path("donations", request.donation_id), "quantity", request.quantity)
        await self.store.update(
            self._path(request_id),
            {
                "status": RequestStatus.CANCELLED,
                "deliveryStatus": DeliveryStatus.CANCELLED,
                "cancelledDate": server_timestamp(),
            },
        )
        logger.info("Request %s cancelled by %s (was %s)", request_id, actor_id, request.status)
        await self.notifier.notify(
            request.owner_id,
            "Request cancelled",
            f"A request for \"{request.donation_title}\" was cancelled.",
            "info",
            request_id,
        )
        return await self.get(request_id)

    async def set_delivery_status(self, request_id: str, update: DeliveryUpdate) -> DonationRequest:
        """Administrative delivery progression; Delivered completes the request."""
        request = await self.get(request_id)
        if request.status != RequestStatus.APPROVED:
            raise InvalidTransition("Only approved requests can move through delivery.")

        updates: Dict[str, Any] = {"deliveryStatus": update.delivery_status}
        if update.pickup_date is not None:
            updates["pickupDate"] = update.pickup_date
        if update.delivery_date is not None:
            updates["deliveryDate"] = update.delivery_date

        completing = update.delivery_status == DeliveryStatus.DELIVERED
        if completing:
            updates["status"] = RequestStatus.COMPLETED
            if not updates.get("deliveryDate") and not request.delivery_date:
                updates["deliveryDate"] = server_timestamp()

        await self.store.update(self._path(request_id), updates)
        logger.info("Request %s delivery status -> %s", request_id, update.delivery_status)

        if completing:
            await self._reward_completion(request)
        return await self.get(request_id)

    async def complete_delivery(self, request_id: str) -> DonationRequest:
        return await self.set_delivery_status(request_id, DeliveryUpdate(deliveryStatus=DeliveryStatus.DELIVERED))

    async def _reward_completion(self, request: DonationRequest) -> None:
        try:
            await self.gamification.increment_action(request.owner_id, "donate", 1)
        except Exception:
            logger.exception("Request %s: donation reward for %s failed", request.id, request.owner_id)
        await self.notifier.notify(
            request.requester_id,
            "Item delivered",
            f"\"{request.donation_title}\" has been delivered.",
            "success",
            request.id,
        )

    async def delete(self, actor_id: str, request_id: str, is_admin: bool = False) -> None:
        request = await self.get(request_id)
        if not is_admin and actor_id not in (request.requester_id, request.owner_id):
            raise PermissionDenied("You can only delete requests you are part of.")
        if request.status not in RequestStatus.DELETABLE:
            raise InvalidTransition("Only rejected or cancelled requests can be deleted.")
        await self.store.remove(self._path(request_id))
        logger.info("Request %s deleted by %s", request_id, actor_id)
