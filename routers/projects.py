from typing import List

from fastapi import APIRouter, Response

from db import ServicesDep
from models import Role
from schemas import (
    MaterialCreate,
    MaterialProgress,
    Project,
    ProjectCreate,
    ProjectEdit,
    ShareProject,
    StageAdvance,
    StepCreate,
    StepImages,
    VisibilityUpdate,
)
from .auth import CurrentUserRoleDep, OptionalUserRoleDep

router = APIRouter(tags=["projects"])


@router.post("/", response_model=Project, status_code=201)
async def create_project(project_in: ProjectCreate, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.create(current["user"].id, project_in)


@router.get("/", response_model=List[Project])
async def my_projects(current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.list_for_author(current["user"].id)


@router.get("/gallery", response_model=List[Project])
async def gallery(services: ServicesDep):
    """
    Completed public projects with final images, newest first.
    """
    return await services.projects.gallery()


@router.get("/{project_id}", response_model=Project)
async def get_project(project_id: str, current: OptionalUserRoleDep, services: ServicesDep):
    viewer = current["user"].id if current else None
    is_admin = bool(current) and current["role"] == Role.ADMIN
    return await services.projects.load(project_id, viewer, is_admin)


@router.patch("/{project_id}", response_model=Project)
async def edit_project(project_id: str, changes: ProjectEdit, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.edit_details(current["user"].id, project_id, changes)


@router.delete("/{project_id}", status_code=204)
async def delete_project(project_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    await services.projects.delete(current["user"].id, project_id, is_admin=current["role"] == Role.ADMIN)
    return Response(status_code=204)


# Stage 1: materials


@router.post("/{project_id}/materials", response_model=Project)
async def add_material(
    project_id: str, material_in: MaterialCreate, current: CurrentUserRoleDep, services: ServicesDep
):
    return await services.projects.add_material(current["user"].id, project_id, material_in)


@router.delete("/{project_id}/materials/{material_id}", response_model=Project)
async def delete_material(project_id: str, material_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.delete_material(current["user"].id, project_id, material_id)


@router.post("/{project_id}/materials/{material_id}/progress", response_model=Project)
async def update_material(
    project_id: str,
    material_id: str,
    progress: MaterialProgress,
    current: CurrentUserRoleDep,
    services: ServicesDep,
):
    return await services.projects.update_material(current["user"].id, project_id, material_id, progress)


# Stage transitions


@router.post("/{project_id}/advance/construction", response_model=Project)
async def advance_to_construction(
    project_id: str, body: StageAdvance, current: CurrentUserRoleDep, services: ServicesDep
):
    return await services.projects.advance_to_construction(current["user"].id, project_id, body.confirm)


@router.post("/{project_id}/advance/share", response_model=Project)
async def advance_to_share(project_id: str, body: StageAdvance, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.advance_to_share(current["user"].id, project_id, body.confirm)


# Stage 2: steps


@router.post("/{project_id}/steps", response_model=Project)
async def add_step(project_id: str, step_in: StepCreate, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.add_step(current["user"].id, project_id, step_in)


@router.delete("/{project_id}/steps/{step_id}", response_model=Project)
async def delete_step(project_id: str, step_id: str, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.delete_step(current["user"].id, project_id, step_id)


@router.post("/{project_id}/steps/{step_id}/images", response_model=Project)
async def add_step_images(
    project_id: str, step_id: str, upload: StepImages, current: CurrentUserRoleDep, services: ServicesDep
):
    return await services.projects.add_step_images(current["user"].id, project_id, step_id, upload)


@router.delete("/{project_id}/steps/{step_id}/images/{index}", response_model=Project)
async def delete_step_image(
    project_id: str, step_id: str, index: int, current: CurrentUserRoleDep, services: ServicesDep
):
    return await services.projects.delete_step_image(current["user"].id, project_id, step_id, index)


# Stage 3: share


@router.post("/{project_id}/share", response_model=Project)
async def share_project(project_id: str, share_in: ShareProject, current: CurrentUserRoleDep, services: ServicesDep):
    return await services.projects.share(current["user"].id, project_id, share_in)


@router.patch("/{project_id}/visibility", response_model=Project)
async def edit_visibility(
    project_id: str, update: VisibilityUpdate, current: CurrentUserRoleDep, services: ServicesDep
):
    return await services.projects.edit_privacy(current["user"].id, project_id, update.visibility)
