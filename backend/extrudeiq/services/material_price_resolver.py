"""Point-in-time material lookups. Read-only; never cached."""
import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from extrudeiq.models.orm_models import Material, MaterialPrice
from extrudeiq.services.errors import NotFound

logger = logging.getLogger("extrudeiq-quotes")


async def load_material(db: AsyncSession, material_id: str) -> Material:
    result = await db.execute(select(Material).where(Material.id == material_id))
    material = result.scalar_one_or_none()
    if material is None:
        raise NotFound(f"Material {material_id} not found")
    return material


async def resolve_material_price(
    db: AsyncSession,
    material_id: str,
    as_of: Optional[date] = None,
) -> MaterialPrice:
    """
    Price row in force on ``as_of`` (default: today): the greatest
    effective_date that is not after the reference date.

    Future-dated rows are never returned, so a revision can not be priced
    with a price that was not yet effective when it was created.
    """
    as_of = as_of or date.today()
    result = await db.execute(
        select(MaterialPrice)
        .where(
            MaterialPrice.material_id == material_id,
            MaterialPrice.effective_date <= as_of,
        )
        .order_by(MaterialPrice.effective_date.desc(), MaterialPrice.created_at.desc())
        .limit(1)
    )
    price = result.scalar_one_or_none()
    if price is None:
        raise NotFound(
            f"No material price found for {material_id} (effective_date <= {as_of.isoformat()})"
        )
    logger.debug(
        "material price resolved",
        extra={"material_id": material_id, "effective_date": price.effective_date.isoformat()},
    )
    return price
