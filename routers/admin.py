from typing import List, Optional

from fastapi import APIRouter

from db import ServicesDep
from schemas import BackfillResult, DeliveryUpdate, DonationRequest
from .auth import AdminDep

router = APIRouter(tags=["admin"])


@router.get("/requests", response_model=List[DonationRequest])
async def all_requests(admin: AdminDep, services: ServicesDep, status: Optional[str] = None):
    return await services.requests.list_all(status)


@router.patch("/requests/{request_id}/delivery", response_model=DonationRequest)
async def update_delivery(request_id: str, update: DeliveryUpdate, admin: AdminDep, services: ServicesDep):
    """
    Move an approved request along its delivery route. "Delivered"
    completes the request and credits the donor.
    """
    return await services.requests.set_delivery_status(request_id, update)


@router.post("/backfill/approved-requests", response_model=BackfillResult)
async def backfill_approved_requests(admin: AdminDep, services: ServicesDep):
    return await services.backfill.run()
