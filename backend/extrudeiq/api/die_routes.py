"""Die estimator routes — admin-tunable settings and budgetary estimates."""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from extrudeiq.db import get_db
from extrudeiq.api.deps import get_current_user, require_admin
from extrudeiq.models.orm_models import DieEstimatorSettings
from extrudeiq.services.die_cost_estimator import DieSettings, evaluate_die_cost
from extrudeiq.services.quote_orchestrator import Caller

router = APIRouter(prefix="/api/die-estimator", tags=["Die Estimator"])
logger = logging.getLogger("extrudeiq-api")


class DieSettingsUpdate(BaseModel):
    a0: Optional[float] = None
    k: Optional[float] = None
    cavity_slope: Optional[float] = None
    low_band: Optional[float] = None
    high_band: Optional[float] = None
    base_solid: Optional[float] = None
    base_hollow: Optional[float] = None
    base_coex: Optional[float] = None


class DieEstimateRequest(BaseModel):
    die_type: str
    area_in2: float
    cavities: float = 1


async def load_die_settings(db: AsyncSession) -> DieSettings:
    """Newest settings row, or defaults when none has been saved. Read on every request."""
    result = await db.execute(
        select(DieEstimatorSettings).order_by(DieEstimatorSettings.updated_at.desc()).limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return DieSettings()
    return DieSettings.from_mapping(
        {f: getattr(row, f) for f in DieSettings.__dataclass_fields__}
    )


@router.get("/settings")
async def get_settings(
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
):
    return (await load_die_settings(db)).to_dict()


@router.put("/settings")
async def update_settings(
    body: DieSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_admin),
):
    """Append a new settings row; fields left out keep their current values."""
    current = await load_die_settings(db)
    merged = {**current.to_dict(), **body.model_dump(exclude_none=True)}
    settings = DieSettings.from_mapping(merged).validate()

    db.add(DieEstimatorSettings(
        **settings.to_dict(),
        updated_by=caller.user_id,
        updated_at=datetime.now(timezone.utc),
    ))
    await db.commit()
    logger.info(f"Die estimator settings updated by {caller.user_id}")
    return settings.to_dict()


@router.post("/estimate")
async def estimate_die_cost(
    body: DieEstimateRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
):
    settings = await load_die_settings(db)
    return evaluate_die_cost(body.die_type, body.area_in2, body.cavities, settings)
