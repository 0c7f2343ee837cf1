import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_optional_team_id, get_scheduler, get_team_id
from ..services.sync import AutoSyncScheduler, get_team_config, sync_reservations, update_team_config


router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger(__name__)


class SyncConfigUpdate(BaseModel):
    api_key: Optional[str] = None
    auto_sync_interval_min: Optional[int] = Field(default=None, ge=0)


@router.post("")
def run_sync(
    dry_run: bool = False,
    db: Session = Depends(get_db),
    team_id: Optional[str] = Depends(get_optional_team_id),
):
    result = sync_reservations(db, team_id, dry_run=dry_run)
    if not result.success:
        logger.warning(f"Manual sync for team {team_id} failed: {result.message}")
    return result


@router.get("/config")
def get_sync_config(db: Session = Depends(get_db), team_id: str = Depends(get_team_id)):
    config = get_team_config(db, team_id)
    if config is None:
        return {"team_id": team_id, "has_api_key": False, "auto_sync_interval_min": 0, "last_sync_at": None}
    return {
        "team_id": team_id,
        "has_api_key": bool(config.smoobu_api_key),
        "auto_sync_interval_min": config.auto_sync_interval_min,
        "last_sync_at": config.last_sync_at.isoformat() if config.last_sync_at else None,
        "last_sync_message": config.last_sync_message,
    }


@router.put("/config")
def put_sync_config(
    payload: SyncConfigUpdate,
    db: Session = Depends(get_db),
    team_id: str = Depends(get_team_id),
    auto_sync: AutoSyncScheduler = Depends(get_scheduler),
):
    config = update_team_config(
        db,
        team_id,
        api_key=payload.api_key,
        auto_sync_interval_min=payload.auto_sync_interval_min,
    )
    auto_sync.configure(team_id, config.auto_sync_interval_min)
    return {
        "team_id": team_id,
        "has_api_key": bool(config.smoobu_api_key),
        "auto_sync_interval_min": config.auto_sync_interval_min,
        "scheduled": auto_sync.is_scheduled(team_id),
    }
