from typing import List, Optional

from fastapi import APIRouter, Response

from db import ServicesDep
from schemas import Donation, DonationCreate
from .auth import CurrentUserRoleDep

router = APIRouter(tags=["donations"])


@router.post("/", response_model=Donation, status_code=201)
async def create_donation(donation_in: DonationCreate, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.donations.create(current["user"].id, donation_in)


@router.get("/", response_model=List[Donation])
async def discover_donations(
    services: ServicesDep,
    category: Optional[str] = None,
    q: Optional[str] = None,
):
    """
    Listings that still have quantity left, newest first.
    """
    return await services.donations.discover(category, q)


@router.get("/mine", response_model=List[Donation])
async def my_donations(current: CurrentUserRoleDep, services: ServicesDep):
    return await services.donations.list_for_owner(current["user"].id)


@router.get("/{donation_id}", response_model=Donation)
async def get_donation(donation_id: str, services: ServicesDep):
    return await services.donations.get(donation_id)


@router.delete("/{donation_id}", status_code=204)
async def delete_donation(donation_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    await services.donations.delete(current["user"].id, donation_id)
    return Response(status_code=204)
