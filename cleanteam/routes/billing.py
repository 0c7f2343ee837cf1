from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_optional_team_id, get_team_id
from ..services.billing import (
    BillingFilter,
    BillingProfile,
    build_billing_report,
    export_csv,
    update_billing_profile,
)


router = APIRouter(prefix="/billing", tags=["billing"])


def _filter(
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    staff_id: Optional[str] = None,
    property_name: Optional[str] = None,
) -> BillingFilter:
    return BillingFilter(from_date=from_date, to_date=to_date, staff_id=staff_id, property_name=property_name)


@router.get("")
def get_billing(
    billing_filter: BillingFilter = Depends(_filter),
    db: Session = Depends(get_db),
    team_id: Optional[str] = Depends(get_optional_team_id),
):
    return build_billing_report(db, team_id, billing_filter)


@router.get("/export.csv")
def export_billing_csv(
    billing_filter: BillingFilter = Depends(_filter),
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    report = build_billing_report(db, team_id, billing_filter)
    if not report.success:
        raise HTTPException(status_code=400, detail=report.message)
    filename = f"billing_{billing_filter.from_date or 'all'}_{billing_filter.to_date or 'all'}.csv"
    return Response(
        content=export_csv(report.rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.put("/profiles/{staff_id}")
def put_billing_profile(
    staff_id: str,
    payload: BillingProfile,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
):
    member = update_billing_profile(db, team_id, staff_id, payload)
    if not member:
        raise HTTPException(status_code=404, detail="Staff member not found")
    return {
        "staff_id": member.id,
        "name": member.name,
        "billing_mode": member.billing_mode,
        "fixed_rate": member.fixed_rate,
        "hourly_rate": member.hourly_rate,
    }
