import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models import ProjectStage, ProjectStatus, Visibility
from schemas import (
    Material,
    MaterialCreate,
    MaterialProgress,
    Project,
    ProjectCreate,
    ProjectEdit,
    ShareProject,
    StepCreate,
    StepImages,
)
from services.errors import (
    ConfirmationRequired,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from services.gamification import PROJECT_COMPLETION_XP, GamificationLedger
from services.hub import SubscriptionHub
from services.ledger import QuantityLedger
from services.store import KeyTreeStore, join_path, new_key, server_timestamp

logger = logging.getLogger("ecowaste.projects")


def completion_repairs(project: Project) -> Dict[str, bool]:
    """`is_completed` flags that disagree with `acquired >= needed`, as update paths."""
    repairs = {}
    for material_id, material in project.materials.items():
        complete = material.acquired >= material.needed
        if material.is_completed != complete:
            repairs[f"materials/{material_id}/is_completed"] = complete
    return repairs


def construction_blockers(project: Project) -> List[str]:
    if not project.materials:
        return ["Add at least one material."]
    blockers = []
    for material in project.materials.values():
        if not material.is_completed:
            blockers.append(f"{material.name}: {material.acquired}/{material.needed} acquired.")
        elif not material.evidence_image:
            blockers.append(f"{material.name}: evidence photo missing.")
    return blockers


def share_blockers(project: Project) -> List[str]:
    steps = project.ordered_steps()
    if not steps:
        return ["Add at least one construction step."]
    return [f"Step {step.step_number} ({step.title}) has no images." for step in steps if not step.images]


def recycled_quantity(project: Project) -> int:
    return sum(m.acquired if m.has_acquired else m.needed for m in project.materials.values())


class ProjectWorkflow:
    """
    Three-stage project builds: Preparation -> Construction -> Share.

    Stages only move forward. Materials can be changed during Preparation,
    steps during Construction, and a shared project is read-only apart
    from its visibility.
    """

    def __init__(
        self,
        store: KeyTreeStore,
        hub: SubscriptionHub,
        ledger: QuantityLedger,
        gamification: GamificationLedger,
    ) -> None:
        self.store = store
        self.hub = hub
        self.ledger = ledger
        self.gamification = gamification

    @staticmethod
    def _path(project_id: str, *below: str) -> str:
        return join_path("projects", project_id, *below)

    async def _fetch(self, project_id: str) -> Project:
        raw = await self.store.get(self._path(project_id))
        if raw is None:
            raise NotFound("Project not found.")
        return Project.from_store(project_id, raw)

    async def _authored(self, actor_id: str, project_id: str) -> Project:
        project = await self.auto_complete_scan(project_id)
        if project.author_id != actor_id:
            raise PermissionDenied("Only the author can change this project.")
        return project

    @staticmethod
    def _require_stage(project: Project, stage: int) -> None:
        if project.status != ProjectStatus.ACTIVE:
            raise InvalidTransition("This project is already completed.")
        if project.workflow_stage != stage:
            raise InvalidTransition(
                f"Only possible during {ProjectStage.NAMES[stage]}; "
                f"the project is in {ProjectStage.NAMES[project.workflow_stage]}."
            )

    # -- lifecycle ----------------------------------------------------------

    async def create(self, author_id: str, project_in: ProjectCreate) -> Project:
        materials = {
            new_key(): {"name": m.name, "unit": m.unit, "needed": m.quantity, "is_completed": False}
            for m in project_in.materials
        }
        record = {
            "authorId": author_id,
            "title": project_in.title,
            "description": project_in.description,
            "status": ProjectStatus.ACTIVE,
            "visibility": Visibility.PRIVATE,
            "workflow_stage": ProjectStage.PREPARATION,
            "materials": materials,
            "createdAt": server_timestamp(),
        }
        key = await self.store.push("projects", record)
        logger.info("Project %s created by %s with %d materials", key, author_id, len(materials))
        return Project.from_store(key, record)

    async def load(self, project_id: str, viewer_id: Optional[str] = None, is_admin: bool = False) -> Project:
        project = await self.auto_complete_scan(project_id)
        if project.visibility != Visibility.PUBLIC and not is_admin and project.author_id != viewer_id:
            raise PermissionDenied("This project is private.")
        return project

    async def auto_complete_scan(self, project_id: str) -> Project:
        """Recompute every material's `is_completed` and persist any that drifted."""
        project = await self._fetch(project_id)
        repairs = completion_repairs(project)
        if not repairs:
            return project
        await self.store.update(self._path(project_id), repairs)
        logger.info("Project %s: repaired completion flags %s", project_id, sorted(repairs))
        return await self._fetch(project_id)

    async def watch(self, project_id: str) -> Callable[[], None]:
        """Keep `project_id` repaired on every change seen by the hub; returns a detach callable."""

        async def repair(path: str, value: Any) -> None:
            if value is None:
                return
            if completion_repairs(Project.from_store(project_id, value)):
                await self.auto_complete_scan(project_id)

        return await self.hub.watch(self._path(project_id), repair)

    async def edit_details(self, actor_id: str, project_id: str, changes: ProjectEdit) -> Project:
        project = await self._authored(actor_id, project_id)
        if project.status != ProjectStatus.ACTIVE:
            raise InvalidTransition("Completed projects can no longer be edited.")
        await self.store.update(
            self._path(project_id), {"title": changes.title, "description": changes.description}
        )
        return await self._fetch(project_id)

    async def delete(self, actor_id: str, project_id: str, is_admin: bool = False) -> None:
        project = await self._fetch(project_id)
        if project.author_id != actor_id and not is_admin:
            raise PermissionDenied("Only the author can delete this project.")
        if project.status != ProjectStatus.COMPLETED:
            raise InvalidTransition("Only completed projects can be deleted.")
        await self.store.remove(self._path(project_id))
        logger.info("Project %s deleted by %s", project_id, actor_id)

    async def list_for_author(self, author_id: str) -> List[Project]:
        raw = await self.store.get("projects") or {}
        return [
            Project.from_store(key, value)
            for key, value in raw.items()
            if (value or {}).get("authorId") == author_id
        ]

    async def gallery(self) -> List[Project]:
        raw = await self.store.get("projects") or {}
        shared = [Project.from_store(key, value) for key, value in raw.items()]
        shared = [
            p
            for p in shared
            if p.status == ProjectStatus.COMPLETED and p.visibility == Visibility.PUBLIC and p.final_images
        ]
        return list(reversed(shared))

    # -- stage 1: materials -------------------------------------------------

    async def add_material(self, actor_id: str, project_id: str, material_in: MaterialCreate) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.PREPARATION)
        material_id = new_key()
        await self.store.set(
            self._path(project_id, "materials", material_id),
            {"name": material_in.name, "unit": material_in.unit, "needed": material_in.quantity, "is_completed": False},
        )
        return await self._fetch(project_id)

    async def delete_material(self, actor_id: str, project_id: str, material_id: str) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.PREPARATION)
        if material_id not in project.materials:
            raise NotFound("Material not found.")
        if len(project.materials) == 1:
            raise ValidationFailed("A project needs at least one material.")
        await self.store.remove(self._path(project_id, "materials", material_id))
        return await self._fetch(project_id)

    async def update_material(
        self, actor_id: str, project_id: str, material_id: str, progress: MaterialProgress
    ) -> Project:
        """
        Add `progress.delta` to a material's acquired count, clamped to
        [0, needed]. Reaching the needed amount requires an evidence photo,
        either in this call or already on the material; a new photo replaces
        the old one.
        """
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.PREPARATION)
        if material_id not in project.materials:
            raise NotFound("Material not found.")

        def apply(record: Any) -> Any:
            if not isinstance(record, dict):
                raise NotFound("Material not found.")
            material = Material.model_validate(record)
            acquired = max(0, min(material.needed, material.acquired + progress.delta))
            if acquired >= material.needed and not (progress.evidence or material.evidence_image):
                raise ValidationFailed("Upload an evidence photo to complete this material.")
            record["needed"] = material.needed
            record["acquired"] = acquired
            record["is_completed"] = acquired >= material.needed
            if progress.evidence:
                record["evidence_image"] = progress.evidence
            return record

        await self.ledger.mutate(
            self._path(project_id, "materials", material_id), apply, label="update material", strict=True
        )
        logger.info("Project %s material %s updated by %+d", project_id, material_id, progress.delta)
        return await self._fetch(project_id)

    # -- stage transitions --------------------------------------------------

    async def advance_to_construction(self, actor_id: str, project_id: str, confirm: bool = False) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.PREPARATION)
        blockers = construction_blockers(project)
        if blockers:
            raise ValidationFailed(" ".join(blockers))
        return await self._advance(project, ProjectStage.CONSTRUCTION, confirm)

    async def advance_to_share(self, actor_id: str, project_id: str, confirm: bool = False) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.CONSTRUCTION)
        blockers = share_blockers(project)
        if blockers:
            raise ValidationFailed(" ".join(blockers))
        return await self._advance(project, ProjectStage.SHARE, confirm)

    async def _advance(self, project: Project, stage: int, confirm: bool) -> Project:
        if not confirm:
            raise ConfirmationRequired(
                f"Moving to {ProjectStage.NAMES[stage]} cannot be undone; resend with confirm=true."
            )
        await self.store.update(self._path(project.id), {"workflow_stage": stage})
        logger.info("Project %s advanced to stage %d (%s)", project.id, stage, ProjectStage.NAMES[stage])
        return await self._fetch(project.id)

    # -- stage 2: steps -----------------------------------------------------

    async def add_step(self, actor_id: str, project_id: str, step_in: StepCreate) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.CONSTRUCTION)
        await self.store.set(
            self._path(project_id, "steps", new_key()),
            {
                "step_number": len(project.steps) + 1,
                "title": step_in.title,
                "description": step_in.description,
            },
        )
        return await self._fetch(project_id)

    async def delete_step(self, actor_id: str, project_id: str, step_id: str) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.CONSTRUCTION)
        if step_id not in project.steps:
            raise NotFound("Step not found.")
        updates: Dict[str, Any] = {f"steps/{step_id}": None}
        remaining = [s for s in project.ordered_steps() if s.id != step_id]
        for number, step in enumerate(remaining, start=1):
            if step.step_number != number:
                updates[f"steps/{step.id}/step_number"] = number
        await self.store.update(self._path(project_id), updates)
        return await self._fetch(project_id)

    async def add_step_images(self, actor_id: str, project_id: str, step_id: str, upload: StepImages) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.CONSTRUCTION)
        step = project.steps.get(step_id)
        if step is None:
            raise NotFound("Step not found.")
        await self.store.set(self._path(project_id, "steps", step_id, "images"), step.images + upload.images)
        return await self._fetch(project_id)

    async def delete_step_image(self, actor_id: str, project_id: str, step_id: str, index: int) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.CONSTRUCTION)
        step = project.steps.get(step_id)
        if step is None:
            raise NotFound("Step not found.")
        if not 0 <= index < len(step.images):
            raise NotFound("Image not found.")
        images = step.images[:index] + step.images[index + 1 :]
        await self.store.set(self._path(project_id, "steps", step_id, "images"), images or None)
        return await self._fetch(project_id)

    # -- stage 3: share -----------------------------------------------------

    async def share(self, actor_id: str, project_id: str, share_in: ShareProject) -> Project:
        project = await self._authored(actor_id, project_id)
        self._require_stage(project, ProjectStage.SHARE)
        if share_in.visibility == Visibility.PUBLIC and not share_in.final_images:
            raise ValidationFailed("Public projects need at least one final image.")

        await self.store.update(
            self._path(project_id),
            {
                "status": ProjectStatus.COMPLETED,
                "completedAt": server_timestamp(),
                "visibility": share_in.visibility,
                "final_images": share_in.final_images or None,
            },
        )
        logger.info("Project %s shared (%s) by %s", project_id, share_in.visibility, actor_id)
        await self._reward(project)
        return await self._fetch(project_id)

    async def _reward(self, project: Project) -> None:
        rewards: List[Callable[[], Awaitable[Any]]] = [
            lambda: self.gamification.award_xp(project.author_id, PROJECT_COMPLETION_XP),
            lambda: self.gamification.increment_action(project.author_id, "project", 1),
        ]
        recycled = recycled_quantity(project)
        if recycled > 0:
            rewards.append(lambda: self.gamification.increment_action(project.author_id, "recycle", recycled))
        for reward in rewards:
            try:
                await reward()
            except Exception:
                logger.exception("Project %s: completion reward for %s failed", project.id, project.author_id)

    async def edit_privacy(self, actor_id: str, project_id: str, visibility: str) -> Project:
        project = await self._authored(actor_id, project_id)
        if project.status != ProjectStatus.COMPLETED:
            raise InvalidTransition("Visibility is chosen when the project is shared.")
        if visibility == Visibility.PUBLIC and not project.final_images:
            raise ValidationFailed("Public projects need at least one final image.")
        await self.store.update(self._path(project_id), {"visibility": visibility})
        return await self._fetch(project_id)
