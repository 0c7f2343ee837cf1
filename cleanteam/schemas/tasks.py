from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TaskStatus(str, Enum):
    pending = "pending"
    in_progress = "in-progress"
    completed = "completed"


class LiveStatus(str, Enum):
    unknown = "unknown"
    on_site = "on-site"
    away = "away"


class PhotoPhase(str, Enum):
    before = "before"
    after = "after"


def normalize_assignees(value: Any) -> List[str]:
    """
    Collapse the legacy single-id and list shapes of an assignment into one
    ordered list of staff ids without duplicates.
    """
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = [value]
    result: List[str] = []
    for item in items:
        if item is None or item == "":
            continue
        sid = str(item)
        if sid not in result:
            result.append(sid)
    return result


class PositionSample(BaseModel):
    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lng"))
    accuracy: Optional[float] = None


class TaskSnapshot(BaseModel):
    """Read model of a task as seen by the reconciler, tracker and billing engine"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    apartment: Optional[str] = None
    apartment_id: Optional[str] = None
    property_id: Optional[str] = None
    date: Optional[str] = None
    status: TaskStatus = TaskStatus.pending
    assigned_to: List[str] = Field(default_factory=list)
    guest_name: Optional[str] = None
    notes: Optional[str] = None
    checklist: List[str] = Field(default_factory=list)
    live_status: LiveStatus = LiveStatus.unknown
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    auto_left_at: Optional[datetime] = None

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _normalize_assigned(cls, v):
        return normalize_assignees(v)

    @field_validator("checklist", mode="before")
    @classmethod
    def _list_or_empty(cls, v):
        return list(v) if v else []

    @field_validator("live_status", mode="before")
    @classmethod
    def _live_status_default(cls, v):
        return v or LiveStatus.unknown


class PropertySnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    apartment_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    default_staff: List[str] = Field(default_factory=list)
    checklist: List[str] = Field(default_factory=list)

    @field_validator("default_staff", "checklist", mode="before")
    @classmethod
    def _list_or_empty(cls, v):
        return list(v) if v else []

    @field_validator("apartment_id", mode="before")
    @classmethod
    def _apartment_id_str(cls, v):
        return str(v) if v is not None else None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


# Request payloads

class TaskCreate(BaseModel):
    apartment: str
    date: str
    property_id: Optional[str] = None
    guest_name: Optional[str] = None
    notes: Optional[str] = None
    assigned_to: Optional[Any] = None
    checklist: Optional[List[str]] = None


class TaskUpdate(BaseModel):
    assigned_to: Optional[Any] = None
    status: Optional[TaskStatus] = None
    guest_name: Optional[str] = None
    notes: Optional[str] = None
    checklist: Optional[List[str]] = None


class IssueReport(BaseModel):
    text: str = Field(min_length=1)


class PhotoRef(BaseModel):
    phase: PhotoPhase
    ref: str = Field(min_length=1)


class StaffAction(BaseModel):
    """Start/complete body; position is absent when geolocation was unavailable or denied"""
    position: Optional[PositionSample] = None


class PropertyUpdate(BaseModel):
    name: Optional[str] = None
    default_staff: Optional[List[str]] = None
    checklist: Optional[List[str]] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class ResultModel(BaseModel):
    """Structured outcome returned across the core boundary instead of raising"""
    success: bool
    message: str
    stats: Dict[str, Any] = Field(default_factory=dict)
