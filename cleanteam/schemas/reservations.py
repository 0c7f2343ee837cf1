from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .tasks import PropertySnapshot


class ReservationApartment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None
    name: Optional[str] = None


class Reservation(BaseModel):
    """Booking record from the reservation feed; unknown fields are kept"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Union[int, str]
    apartment_id: Optional[Union[int, str]] = Field(
        default=None, validation_alias=AliasChoices("apartmentId", "apartment_id")
    )
    apartment: Optional[ReservationApartment] = None
    arrival: Optional[str] = None
    departure: Optional[str] = None
    guest_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("guestName", "guest-name", "guest_name")
    )
    notice: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _keep_raw(cls, data):
        if isinstance(data, dict) and "raw" not in data:
            data = {**data, "raw": dict(data)}
        return data

    @property
    def resolved_apartment_id(self) -> Optional[str]:
        value = self.apartment_id
        if value is None and self.apartment is not None:
            value = self.apartment.id
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @property
    def apartment_name(self) -> str:
        if self.apartment is not None and self.apartment.name:
            return self.apartment.name
        return f"Apartment ID {self.resolved_apartment_id or 'unknown'}"


class TaskRefresh(BaseModel):
    """Fields refreshed in place on a still-pending task"""
    task_id: str
    values: Dict[str, Any]


class ReconcilePlan(BaseModel):
    created_tasks: List[Dict[str, Any]] = Field(default_factory=list)
    updated_tasks: List[TaskRefresh] = Field(default_factory=list)
    created_properties: List[PropertySnapshot] = Field(default_factory=list)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.created_tasks or self.updated_tasks or self.created_properties)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "created_tasks": len(self.created_tasks),
            "updated_tasks": len(self.updated_tasks),
            "created_properties": len(self.created_properties),
            "skipped": self.skipped,
        }
