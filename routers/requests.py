from typing import List, Literal

from fastapi import APIRouter, HTTPException, Response

from db import ServicesDep
from models import Role
from schemas import DonationRequest, RequestCreate, RequestEdit
from .auth import CurrentUserRoleDep

router = APIRouter(tags=["requests"])


@router.post("/", response_model=DonationRequest, status_code=201)
async def create_request(request_in: RequestCreate, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.requests.submit(current["user"].id, request_in)


@router.get("/", response_model=List[DonationRequest])
async def list_requests(
    current: CurrentUserRoleDep,
    services: ServicesDep,
    box: Literal["sent", "received"] = "sent",
):
    return await services.requests.list_for(current["user"].id, box)


@router.get("/{request_id}", response_model=DonationRequest)
async def get_request(request_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    request = await services.requests.get(request_id)
    user_id = current["user"].id
    if current["role"] != Role.ADMIN and user_id not in (request.requester_id, request.owner_id):
        raise HTTPException(status_code=403, detail="Not your request")
    return request


@router.patch("/{request_id}", response_model=DonationRequest)
async def edit_request(
    request_id: str, changes: RequestEdit, current: CurrentUserRoleDep, services: ServicesDep
):
    return await services.requests.edit(current["user"].id, request_id, changes)


@router.post("/{request_id}/approve", response_model=DonationRequest)
async def approve_request(request_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.requests.approve(current["user"].id, request_id)


@router.post("/{request_id}/reject", response_model=DonationRequest)
async def reject_request(request_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.requests.reject(current["user"].id, request_id)


@router.post("/{request_id}/cancel", response_model=DonationRequest)
async def cancel_request(request_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.requests.cancel(current["user"].id, request_id)


@router.delete("/{request_id}", status_code=204)
async def delete_request(request_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    await services.requests.delete(
        current["user"].id, request_id, is_admin=current["role"] == Role.ADMIN
    )
    return Response(status_code=204)
