from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

from models import (
    DeliveryStatus,
    ProjectStage,
    ProjectStatus,
    RequestStatus,
    Role,
    Visibility,
    as_count,
)

Timestamp = Optional[Union[int, str]]
Severity = Literal["info", "success", "warning", "error"]
TaskType = Literal["recycle", "donate", "project", "xp", "other"]


def _as_list(value: Any) -> List[Any]:
    # The store may hand back arrays as {index: item} maps.
    if value is None:
        return []
    if isinstance(value, dict):
        return [value[k] for k in sorted(value, key=str)]
    return list(value)


Count = Annotated[int, BeforeValidator(as_count)]
Items = Annotated[List[str], BeforeValidator(_as_list)]


class Document(BaseModel):
    """A record read from the key-tree store; `id` is its key."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""

    @classmethod
    def from_store(cls, key: str, value: Optional[dict]):
        data = dict(value or {})
        data["id"] = key
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Store documents
# ---------------------------------------------------------------------------


class Donation(Document):
    owner_id: str = Field(default="", alias="ownerId")
    category: str = ""
    sub_category: str = Field(default="", alias="subCategory")
    quantity: Count = 0
    unit: str = ""
    description: str = ""
    images: Items = []
    created_at: Timestamp = Field(default=None, alias="createdAt")


class DonationRequest(Document):
    donation_id: str = Field(default="", alias="donationId")
    donation_title: str = Field(default="", alias="donationTitle")
    donation_category: str = Field(default="", alias="donationCategory")
    requester_id: str = Field(default="", alias="requesterId")
    owner_id: str = Field(default="", alias="ownerId")
    status: str = RequestStatus.PENDING
    delivery_status: str = Field(default=DeliveryStatus.NONE, alias="deliveryStatus")
    quantity: Count = 0
    urgency_level: Optional[str] = Field(default=None, alias="urgencyLevel")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    material_id: Optional[str] = Field(default=None, alias="materialId")
    processing_date: Timestamp = Field(default=None, alias="processingDate")
    pickup_date: Timestamp = Field(default=None, alias="pickupDate")
    delivery_date: Timestamp = Field(default=None, alias="deliveryDate")
    cancelled_date: Timestamp = Field(default=None, alias="cancelledDate")
    created_at: Timestamp = Field(default=None, alias="createdAt")
    material_backfilled: bool = Field(default=False, alias="materialBackfilled")

    @field_validator("delivery_status", mode="before")
    @classmethod
    def _blank_delivery(cls, value: Any) -> str:
        return value or DeliveryStatus.NONE


class Material(Document):
    name: str = ""
    unit: str = "units"
    needed: Count = 0
    acquired: Count = 0
    is_completed: bool = False
    evidence_image: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _needed_from_quantity(cls, data: Any) -> Any:
        # Materials created at project start only carry a "quantity" string.
        if isinstance(data, dict) and data.get("needed") is None and "quantity" in data:
            data = dict(data)
            data["needed"] = data["quantity"]
        return data

    @property
    def has_acquired(self) -> bool:
        return "acquired" in self.model_fields_set


class Step(Document):
    step_number: Count = 0
    title: str = ""
    description: str = ""
    images: Items = []


class Project(Document):
    author_id: str = Field(default="", alias="authorId")
    title: str = ""
    description: str = ""
    status: str = ProjectStatus.ACTIVE
    visibility: str = Visibility.PRIVATE
    workflow_stage: int = ProjectStage.PREPARATION
    materials: Dict[str, Material] = {}
    steps: Dict[str, Step] = {}
    final_images: Items = []
    created_at: Timestamp = Field(default=None, alias="createdAt")
    completed_at: Timestamp = Field(default=None, alias="completedAt")

    @field_validator("materials", "steps", mode="before")
    @classmethod
    def _keyed(cls, value: Any) -> Dict[str, Any]:
        if not value:
            return {}
        if isinstance(value, list):
            value = {str(i): v for i, v in enumerate(value) if v}
        return {key: {**(item or {}), "id": key} for key, item in value.items()}

    @field_validator("workflow_stage", mode="before")
    @classmethod
    def _stage(cls, value: Any) -> int:
        return min(max(as_count(value), ProjectStage.PREPARATION), ProjectStage.SHARE)

    def ordered_steps(self) -> List[Step]:
        return sorted(self.steps.values(), key=lambda s: (s.step_number, s.id))


class UserStats(Document):
    name: str = ""
    email: str = ""
    role: str = Role.MEMBER
    xp: Count = 0
    level: int = 1
    eco_points: Count = Field(default=0, alias="ecoPoints")
    recycling_count: Count = Field(default=0, alias="recyclingCount")
    donation_count: Count = Field(default=0, alias="donationCount")
    projects_completed: Count = Field(default=0, alias="projectsCompleted")
    badges: Items = []
    completed_tasks: Items = Field(default=[], alias="completedTasks")
    unlocked_borders: Items = Field(default=[], alias="unlockedBorders")
    equipped_border: str = Field(default="default", alias="equippedBorder")
    created_at: Timestamp = Field(default=None, alias="createdAt")

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value: Any) -> int:
        return max(1, as_count(value))


class TaskDefinition(Document):
    title: str = ""
    description: str = ""
    type: str = "other"
    target: Count = 1
    reward_type: str = Field(default="badge", alias="rewardType")
    badge_id: Optional[str] = Field(default=None, alias="badgeId")
    xp_reward: Count = Field(default=0, alias="xpReward")


class Notification(Document):
    user_id: str = Field(default="", alias="userId")
    title: str = ""
    message: str = ""
    type: str = "info"
    related_id: Optional[str] = Field(default=None, alias="relatedId")
    read: bool = False
    created_at: Timestamp = Field(default=None, alias="createdAt")


# ---------------------------------------------------------------------------
# Request payloads and responses
# ---------------------------------------------------------------------------


class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserCreate(Payload):
    email: EmailStr
    name: str = Field(min_length=1)
    password: str = Field(min_length=6)


class LoginData(Payload):
    email: EmailStr
    password: str


class UserRead(Payload):
    id: str
    name: str
    role: str
    xp: int
    level: int
    eco_points: int = Field(alias="ecoPoints")
    recycling_count: int = Field(alias="recyclingCount")
    donation_count: int = Field(alias="donationCount")
    projects_completed: int = Field(alias="projectsCompleted")
    badges: List[str]
    completed_tasks: List[str] = Field(alias="completedTasks")
    unlocked_borders: List[str] = Field(alias="unlockedBorders")
    equipped_border: str = Field(alias="equippedBorder")


class DonationCreate(Payload):
    category: str = Field(min_length=1)
    sub_category: str = Field(default="", alias="subCategory")
    quantity: int = Field(gt=0)
    unit: str = Field(min_length=1)
    description: str = Field(min_length=1)
    images: List[str] = []


class RequestCreate(Payload):
    donation_id: str = Field(alias="donationId")
    quantity: int = Field(gt=0)
    urgency_level: str = Field(default="High", alias="urgencyLevel")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    material_id: Optional[str] = Field(default=None, alias="materialId")


class RequestEdit(Payload):
    quantity: Optional[int] = Field(default=None, gt=0)
    urgency_level: Optional[str] = Field(default=None, alias="urgencyLevel")


class DeliveryUpdate(Payload):
    delivery_status: Literal[
        "Pending Item", "Ready for Pickup", "At Sorting Facility", "In Transit", "Delivered"
    ] = Field(alias="deliveryStatus")
    pickup_date: Timestamp = Field(default=None, alias="pickupDate")
    delivery_date: Timestamp = Field(default=None, alias="deliveryDate")


class MaterialCreate(Payload):
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit: str = "units"


class ProjectCreate(Payload):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    materials: List[MaterialCreate] = Field(min_length=1)


class ProjectEdit(Payload):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)


class MaterialProgress(Payload):
    delta: int = 0
    evidence: Optional[str] = None


class StepCreate(Payload):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)


class StepImages(Payload):
    images: List[str] = Field(min_length=1)


class StageAdvance(Payload):
    confirm: bool = False


class ShareProject(Payload):
    visibility: Literal["private", "public"]
    final_images: List[str] = Field(default=[], alias="finalImages")


class VisibilityUpdate(Payload):
    visibility: Literal["private", "public"]


class TaskCreate(Payload):
    title: str = Field(min_length=1)
    description: str = ""
    type: TaskType = "other"
    target: int = Field(default=1, ge=0)
    reward_type: Literal["xp", "badge"] = Field(default="badge", alias="rewardType")
    badge_id: Optional[str] = Field(default=None, alias="badgeId")
    xp_reward: int = Field(default=0, ge=0, alias="xpReward")

    @model_validator(mode="after")
    def _badge_needs_id(self):
        if self.reward_type == "badge" and not self.badge_id:
            raise ValueError("badge rewards need a badgeId")
        return self


class TaskProgress(Payload):
    task: TaskDefinition
    progress: int
    claimed: bool
    claimable: bool


class BackfillResult(Payload):
    ok: bool = True
    updated: int = 0
    processed: int = 0
    errors: List[str] = []


class RewardRead(Payload):
    id: str
    name: str
    min_level: int = Field(alias="minLevel")
    cost: int
    preview: str
    unlocked: bool = False
    equipped: bool = False
