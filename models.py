from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class StoreNode(SQLModel, table=True):
    """
    One record of the key-tree store.

    `path` is the record's first two segments ("requests/-Nx3..."), `value`
    holds the whole JSON document below it and `version` is bumped on every
    committed write so transactions can compare-and-swap.
    """

    __tablename__ = "store_node"

    path: str = Field(primary_key=True)
    collection: str = Field(index=True)
    value: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    version: int = 0


class RequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    DELETABLE = (REJECTED, CANCELLED)


class DeliveryStatus:
    NONE = ""
    PENDING_ITEM = "Pending Item"
    READY_FOR_PICKUP = "Ready for Pickup"
    AT_SORTING_FACILITY = "At Sorting Facility"
    IN_TRANSIT = "In Transit"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    # Not yet physically in motion, so the requester may still cancel.
    CANCELLABLE = (NONE, PENDING_ITEM)


class ProjectStage:
    PREPARATION = 1
    CONSTRUCTION = 2
    SHARE = 3

    NAMES = {1: "Preparation", 2: "Construction", 3: "Share"}


class ProjectStatus:
    ACTIVE = "active"
    COMPLETED = "completed"


class Visibility:
    PRIVATE = "private"
    PUBLIC = "public"


class Role:
    MEMBER = "member"
    ADMIN = "admin"


def as_count(value: Any) -> int:
    """
    Read a stored quantity as a non-negative integer.

    Older records keep quantities as decimal strings ("12", "3.0"), and
    missing or garbage values count as zero.
    """
    if value is None or value == "":
        return 0
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0
