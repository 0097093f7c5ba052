"""Quote routes — create, recompute, read, delete and repair quotes."""
import os
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from extrudeiq.db import get_db
from extrudeiq.api.deps import get_current_user, require_admin
from extrudeiq.services.pricing_engine import DEFAULT_MULTIPLIER, PricingEngine
from extrudeiq.services.quote_orchestrator import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_MAX_ATTEMPTS,
    MAX_LIST_LIMIT,
    Caller,
    QuoteOrchestrator,
)

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])
logger = logging.getLogger("extrudeiq-api")

_orchestrator = QuoteOrchestrator(
    pricing_engine=PricingEngine(
        multiplier=float(os.getenv("QUOTE_PRICE_MULTIPLIER", str(DEFAULT_MULTIPLIER))),
    ),
    max_attempts=int(os.getenv("QUOTE_NUMBER_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS))),
)


def get_orchestrator() -> QuoteOrchestrator:
    return _orchestrator


# ─── Pydantic schemas ────────────────────────────────────────────────────────

class CreateQuoteRequest(BaseModel):
    customer_id: str
    material_id: str
    finished_length_in: float
    area_in2: Optional[float] = None
    weight_lb_per_ft: Optional[float] = None
    eau_base: Optional[float] = None


class ReconcileRequest(BaseModel):
    quote_id: Optional[str] = None


# ─── Routes ──────────────────────────────────────────────────────────────────

@router.get("")
async def list_quotes(
    q: Optional[str] = None,
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    """Newest quotes first; ``q`` matches quote number or customer name."""
    return await orchestrator.list_quotes(db, q=q, limit=limit)


@router.post("", status_code=201)
async def create_quote(
    body: CreateQuoteRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.create_quote(db, caller, body.model_dump())


@router.post("/reconcile")
async def reconcile_quotes(
    body: Optional[ReconcileRequest] = None,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_admin),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    """Promote the highest revision of any quote left without a current revision."""
    repaired = await orchestrator.reconcile_current_revisions(db, body.quote_id if body else None)
    return {"ok": True, "repaired": repaired}


@router.get("/{quote_id}")
async def get_quote(
    quote_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_quote(db, quote_id)


@router.get("/{quote_id}/revisions")
async def list_revisions(
    quote_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_revisions(db, quote_id)


@router.post("/{quote_id}/revisions")
async def recompute_revision(
    quote_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_current_user),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    """Re-price the current revision's inputs against today's material price."""
    result = await orchestrator.recompute_revision(db, caller, quote_id)
    return {"ok": True, **result}


@router.delete("/{quote_id}")
async def delete_quote(
    quote_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_admin),
    orchestrator: QuoteOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.delete_quote(db, caller, quote_id)
    return {"ok": True}
