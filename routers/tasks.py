from typing import List

from fastapi import APIRouter, Response

from db import ServicesDep
from schemas import TaskCreate, TaskDefinition, TaskProgress, UserRead
from .auth import AdminDep, CurrentUserRoleDep

router = APIRouter(tags=["tasks"])


@router.get("/", response_model=List[TaskProgress])
async def list_tasks(current: CurrentUserRoleDep, services: ServicesDep):
    """
    Every task with the user's progress towards it.
    """
    return await services.achievements.progress_for(current["user"].id)


@router.post("/seed")
async def seed_tasks(admin: AdminDep, services: ServicesDep):
    seeded = await services.achievements.seed_default_tasks()
    return {"seeded": seeded}


@router.post("/", response_model=TaskDefinition, status_code=201)
async def create_task(task_in: TaskCreate, admin: AdminDep, services: ServicesDep):
    return await services.achievements.create_task(task_in)


@router.delete("/{task_id}", status_code=204)
async def delete_task(task_id: str, admin: AdminDep, services: ServicesDep):
    await services.achievements.delete_task(task_id)
    return Response(status_code=204)


@router.post("/{task_id}/claim", response_model=UserRead)
async def claim_task(task_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    user = await services.achievements.claim_task(current["user"].id, task_id)
    return UserRead.model_validate(user.model_dump())
