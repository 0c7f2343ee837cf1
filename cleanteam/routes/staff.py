from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_team_id
from ..models.models import StaffMember
from ..services.billing import BillingMode


router = APIRouter(prefix="/staff", tags=["staff"])


class StaffCreate(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    role: str = "staff"
    billing_mode: BillingMode = BillingMode.fixed
    fixed_rate: float = 0
    hourly_rate: float = 0


def _serialize_staff(member: StaffMember) -> Dict[str, Any]:
    return {
        "id": member.id,
        "name": member.name,
        "email": member.email,
        "role": member.role,
        "billing_mode": member.billing_mode,
        "fixed_rate": member.fixed_rate,
        "hourly_rate": member.hourly_rate,
    }


@router.get("")
def list_staff(db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    members = db.query(StaffMember).filter(StaffMember.team_id == team_id).order_by(StaffMember.name).all()
    return [_serialize_staff(m) for m in members]


@router.post("", status_code=201)
def create_staff(payload: StaffCreate, db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    member = StaffMember(
        team_id=team_id,
        name=payload.name.strip(),
        email=payload.email,
        role=payload.role,
        billing_mode=payload.billing_mode.value,
        fixed_rate=payload.fixed_rate,
        hourly_rate=payload.hourly_rate,
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    return _serialize_staff(member)
