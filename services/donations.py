import logging
from typing import List, Optional

from models import RequestStatus
from schemas import Donation, DonationCreate, DonationRequest
from services.errors import NotFound, PermissionDenied, ValidationFailed
from services.store import KeyTreeStore, join_path, server_timestamp

logger = logging.getLogger("ecowaste.donations")


class DonationService:
    def __init__(self, store: KeyTreeStore) -> None:
        self.store = store

    async def create(self, owner_id: str, donation_in: DonationCreate) -> Donation:
        record = donation_in.model_dump(by_alias=True)
        record.update({"ownerId": owner_id, "createdAt": server_timestamp()})
        key = await self.store.push("donations", record)
        logger.info("Donation %s listed by %s (%d %s)", key, owner_id, donation_in.quantity, donation_in.unit)
        return Donation.from_store(key, record)

    async def get(self, donation_id: str) -> Donation:
        raw = await self.store.get(join_path("donations", donation_id))
        if raw is None:
            raise NotFound("Donation not found.")
        return Donation.from_store(donation_id, raw)

    async def all(self) -> List[Donation]:
        raw = await self.store.get("donations") or {}
        return [Donation.from_store(key, value) for key, value in raw.items()]

    async def discover(self, category: Optional[str] = None, query: Optional[str] = None) -> List[Donation]:
        """Listings still available to request, newest first."""
        found = [d for d in await self.all() if d.quantity > 0]
        if category and category != "All":
            found = [d for d in found if d.category == category]
        if query:
            needle = query.lower()
            found = [
                d
                for d in found
                if needle in d.description.lower()
                or needle in d.category.lower()
                or needle in d.sub_category.lower()
            ]
        return list(reversed(found))

    async def list_for_owner(self, owner_id: str) -> List[Donation]:
        return [d for d in await self.all() if d.owner_id == owner_id]

    async def delete(self, actor_id: str, donation_id: str) -> None:
        donation = await self.get(donation_id)
        if donation.owner_id != actor_id:
            raise PermissionDenied("You can only delete donations you listed.")
        requests = await self.store.get("requests") or {}
        pending = [
            key
            for key, value in requests.items()
            if DonationRequest.from_store(key, value).donation_id == donation_id
            and value.get("status") == RequestStatus.PENDING
        ]
        if pending:
            raise ValidationFailed("Cannot delete a donation with pending requests.")
        await self.store.remove(join_path("donations", donation_id))
        logger.info("Donation %s deleted by %s", donation_id, actor_id)
