from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_team_id
from ..models.models import Property
from ..schemas.tasks import PropertyUpdate
from ..services.property_registry import get_property, update_property


router = APIRouter(prefix="/properties", tags=["properties"])


def _serialize_property(prop: Property) -> Dict[str, Any]:
    return {
        "id": prop.id,
        "name": prop.name,
        "apartment_id": prop.apartment_id,
        "lat": prop.lat,
        "lng": prop.lng,
        "default_staff": list(prop.default_staff or []),
        "checklist": list(prop.checklist or []),
        "created_at": prop.created_at.isoformat() if prop.created_at else None,
        "updated_at": prop.updated_at.isoformat() if prop.updated_at else None,
    }


@router.get("")
def list_properties(db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    rows = db.query(Property).filter(Property.team_id == team_id).order_by(Property.name).all()
    return [_serialize_property(p) for p in rows]


@router.patch("/{property_id}")
def patch_property(
    property_id: str,
    payload: PropertyUpdate,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    prop = get_property(db, team_id, property_id)
    if not prop:
        raise HTTPException(status_code=404, detail="Property not found")
    if (payload.lat is None) != (payload.lng is None) and {"lat", "lng"} & payload.model_fields_set:
        raise HTTPException(status_code=400, detail="lat and lng must be set together")
    return _serialize_property(update_property(db, prop, payload))
