from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from slugify import slugify
from sqlalchemy.orm import Session

from ..models.models import Property
from ..schemas.tasks import PropertySnapshot, PropertyUpdate


DEFAULT_CHECKLIST = [
    "Bed linen changed",
    "Trash emptied and new bags",
    "Bathroom and kitchen disinfected",
    "Floors vacuumed and mopped",
    "Surfaces dusted",
]

SLUG_MAX_LENGTH = 60


def make_property_id(apartment_id: Optional[str], apartment_name: Optional[str]) -> str:
    if apartment_id is not None and str(apartment_id).strip():
        return f"apt_{str(apartment_id).strip()}"
    cleaned = slugify(
        apartment_name or "unknown",
        separator="_",
        max_length=SLUG_MAX_LENGTH,
        regex_pattern=r"[^a-z0-9]+",
    )
    return f"name_{cleaned or 'unknown'}"


class PropertyRegistry:
    """
    Resolves upstream apartments to Property snapshots for one reconciliation pass.

    Properties created during the pass are indexed immediately so a second
    reservation for the same apartment resolves to the same record.
    """

    def __init__(self, existing_properties: Iterable[PropertySnapshot] = ()):
        self._by_id: Dict[str, PropertySnapshot] = {}
        self._by_apartment: Dict[str, PropertySnapshot] = {}
        self.created: List[PropertySnapshot] = []
        for prop in existing_properties:
            self._index(prop)

    def _index(self, prop: PropertySnapshot) -> None:
        self._by_id[prop.id] = prop
        if prop.apartment_id is not None:
            self._by_apartment[str(prop.apartment_id)] = prop

    def get(self, property_id: str) -> Optional[PropertySnapshot]:
        return self._by_id.get(property_id)

    def resolve_or_create(self, apartment_id: Optional[str], apartment_name: str) -> PropertySnapshot:
        if apartment_id is not None:
            apartment_id = str(apartment_id).strip() or None
        if apartment_id is not None and apartment_id in self._by_apartment:
            return self._by_apartment[apartment_id]

        property_id = make_property_id(apartment_id, apartment_name)
        existing = self._by_id.get(property_id)
        if existing is not None:
            return existing

        prop = PropertySnapshot(
            id=property_id,
            name=apartment_name,
            apartment_id=apartment_id,
            default_staff=[],
            checklist=list(DEFAULT_CHECKLIST),
        )
        self._index(prop)
        self.created.append(prop)
        return prop


def load_property_snapshots(db: Session, team_id: str) -> List[PropertySnapshot]:
    rows = db.query(Property).filter(Property.team_id == team_id).all()
    return [PropertySnapshot.model_validate(row) for row in rows]


def find_property_for_task(db: Session, team_id: str, task) -> Optional[Property]:
    """Match by property id, then apartment id, then by name."""
    query = db.query(Property).filter(Property.team_id == team_id)
    if getattr(task, "property_id", None):
        prop = query.filter(Property.id == task.property_id).first()
        if prop:
            return prop
    if getattr(task, "apartment_id", None) is not None:
        prop = query.filter(Property.apartment_id == str(task.apartment_id)).first()
        if prop:
            return prop
    if getattr(task, "apartment", None):
        return query.filter(Property.name == task.apartment).first()
    return None


def get_property(db: Session, team_id: str, property_id: str) -> Optional[Property]:
    return (
        db.query(Property)
        .filter(Property.team_id == team_id, Property.id == property_id)
        .first()
    )


def update_property(db: Session, prop: Property, payload: PropertyUpdate) -> Property:
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"]:
        prop.name = changes["name"].strip()
    if "default_staff" in changes:
        prop.default_staff = [str(s) for s in (changes["default_staff"] or [])]
    if "checklist" in changes:
        prop.checklist = [item.strip() for item in (changes["checklist"] or []) if item and item.strip()]
    if "lat" in changes:
        prop.lat = changes["lat"]
    if "lng" in changes:
        prop.lng = changes["lng"]
    prop.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(prop)
    return prop
