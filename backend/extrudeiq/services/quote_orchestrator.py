"""
QuoteOrchestrator — create quotes and supersede their revisions.

Pipeline per revision:
    material + effective price → weight → ceiling price → EAU tiers → MOQ table

Revision state machine (per quote):
    NO_CURRENT ──create──▶ CURRENT_SETTLED ──recompute──▶ TRANSITIONING ──▶ CURRENT_SETTLED

TRANSITIONING only exists inside the recompute transaction: the old current
revision is demoted with a conditional update and the new one inserted before
commit. A failed insert rolls the demote back. Stores that lose the demote
anyway (NO_CURRENT) are repaired by reconcile_current_revisions().
"""
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from extrudeiq.models.orm_models import Customer, Quote, QuoteRevision
from extrudeiq.services.errors import (
    Forbidden,
    InvalidInput,
    NotFound,
    PartialRevisionFailure,
    PersistenceConflict,
)
from extrudeiq.services.material_price_resolver import load_material, resolve_material_price
from extrudeiq.services.pricing_engine import DEFAULT_EAU_BASE, PricingEngine

logger = logging.getLogger("extrudeiq-quotes")

ROLES = ("admin", "estimator", "viewer")
QUOTE_WRITER_ROLES = ("admin", "estimator")
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


class RevisionState(str, Enum):
    NO_CURRENT = "no_current"
    TRANSITIONING = "transitioning"
    CURRENT_SETTLED = "current_settled"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str


def require_quote_writer(caller: Caller) -> None:
    if caller is None or caller.role not in QUOTE_WRITER_ROLES:
        raise Forbidden("Forbidden")


def require_admin_role(caller: Caller) -> None:
    if caller is None or caller.role != "admin":
        raise Forbidden("Admin role required")


def make_quote_number(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """Q-YYYYMMDD-HHMMSS-NNNN. Called fresh on every insert attempt."""
    now = now or datetime.now(timezone.utc)
    suffix = (rng or random).randint(1000, 9999)
    return f"Q-{now:%Y%m%d}-{now:%H%M%S}-{suffix}"


def _optional_positive(data: Mapping[str, Any], key: str) -> Optional[float]:
    # 0 and blank mean "not supplied", matching the quote form
    raw = data.get(key)
    if raw is None or raw == "" or raw == 0:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidInput(f"{key} must be a number")
    if not math.isfinite(value) or value <= 0:
        raise InvalidInput(f"{key} must be > 0")
    return value


@dataclass(frozen=True)
class QuoteInputs:
    """Estimator-entered request parameters. The geometry part is never altered by a recompute."""
    customer_id: str
    material_id: str
    finished_length_in: float
    area_in2: Optional[float] = None
    weight_lb_per_ft: Optional[float] = None
    eau_base: float = DEFAULT_EAU_BASE

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], require_customer: bool = True) -> "QuoteInputs":
        data = data or {}
        try:
            length = float(data.get("finished_length_in"))
        except (TypeError, ValueError):
            raise InvalidInput("Finished length must be > 0")
        eau_raw = data.get("eau_base")
        try:
            eau = float(eau_raw) if eau_raw not in (None, "", 0) else float(DEFAULT_EAU_BASE)
        except (TypeError, ValueError):
            raise InvalidInput("Base EAU must be > 0")
        inputs = cls(
            customer_id=str(data.get("customer_id") or ""),
            material_id=str(data.get("material_id") or ""),
            finished_length_in=length,
            area_in2=_optional_positive(data, "area_in2"),
            weight_lb_per_ft=_optional_positive(data, "weight_lb_per_ft"),
            eau_base=eau,
        )
        return inputs.validate(require_customer=require_customer)

    def validate(self, require_customer: bool = True) -> "QuoteInputs":
        if require_customer and not self.customer_id:
            raise InvalidInput("Customer is required")
        if not self.material_id:
            raise InvalidInput("Material is required")
        if not math.isfinite(self.finished_length_in) or self.finished_length_in <= 0:
            raise InvalidInput("Finished length must be > 0")
        if self.area_in2 is None and self.weight_lb_per_ft is None:
            raise InvalidInput("Provide area (in²) or weight/ft (lb/ft)")
        if self.area_in2 is not None and self.weight_lb_per_ft is not None:
            raise InvalidInput("Provide only one: area OR weight/ft")
        if not math.isfinite(self.eau_base) or self.eau_base <= 0:
            raise InvalidInput("Base EAU must be > 0")
        return self


def revision_to_dict(rev: QuoteRevision) -> Dict[str, Any]:
    return {
        "id": rev.id,
        "quote_id": rev.quote_id,
        "revision_number": rev.revision_number,
        "is_current": rev.is_current,
        "inputs_json": rev.inputs_json,
        "outputs_json": rev.outputs_json,
        "material_price_used": float(rev.material_price_used),
        "multiplier_used": float(rev.multiplier_used),
        "created_by": rev.created_by,
        "created_at": rev.created_at.isoformat() if rev.created_at else None,
    }


def _is_quote_number_conflict(exc: IntegrityError) -> bool:
    msg = str(exc.orig if exc.orig is not None else exc).lower()
    return ("unique" in msg or "duplicate" in msg) and "quote_number" in msg


class QuoteOrchestrator:
    """
    Composes the pricing pipeline with quote/revision persistence.

    The session passed to each operation is committed on success and rolled
    back on any failure; no operation leaves a partially written snapshot.
    """

    def __init__(
        self,
        pricing_engine: Optional[PricingEngine] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None,
        number_factory: Callable[[datetime], str] = make_quote_number,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.pricing = pricing_engine or PricingEngine()
        self.max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._number_factory = number_factory

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    async def _price(self, db: AsyncSession, inputs: QuoteInputs) -> Dict[str, Any]:
        """Resolve material + price as of now and run the pure pipeline."""
        material = await load_material(db, inputs.material_id)
        price = await resolve_material_price(db, inputs.material_id, self._clock().date())
        density = float(material.density_lb_in3)
        price_per_lb = float(price.price_per_lb)

        outputs = self.pricing.price_part(
            finished_length_in=inputs.finished_length_in,
            density_lb_in3=density,
            price_per_lb=price_per_lb,
            eau_base=inputs.eau_base,
            area_in2=inputs.area_in2,
            weight_lb_per_ft=inputs.weight_lb_per_ft,
        )
        context = {
            "eau_base": inputs.eau_base,
            "density_lb_in3": density,
            "material_family": material.family,
            "material_grade": material.grade,
            "price_per_lb": price_per_lb,
            "price_effective_date": price.effective_date.isoformat(),
        }
        return {"outputs": outputs, "context": context, "price_per_lb": price_per_lb}

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def _load_customer(self, db: AsyncSession, customer_id: str) -> Customer:
        result = await db.execute(select(Customer).where(Customer.id == customer_id))
        customer = result.scalar_one_or_none()
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found")
        return customer

    async def _insert_quote(self, db: AsyncSession, customer_id: str, user_id: str) -> Quote:
        """Insert with a fresh quote number, retrying only on a quote-number collision."""
        for attempt in range(1, self.max_attempts + 1):
            quote = Quote(
                quote_number=self._number_factory(self._clock()),
                customer_id=customer_id,
                status="draft",
                created_by=user_id,
                created_at=self._clock(),
            )
            try:
                async with db.begin_nested():
                    db.add(quote)
            except IntegrityError as exc:
                if not _is_quote_number_conflict(exc):
                    raise
                logger.warning(
                    f"Quote number collision on attempt {attempt}/{self.max_attempts}: {quote.quote_number}"
                )
                continue
            return quote
        raise PersistenceConflict("Could not generate unique quote number")

    async def create_quote(
        self,
        db: AsyncSession,
        caller: Caller,
        payload: Mapping[str, Any],
    ) -> Dict[str, str]:
        require_quote_writer(caller)
        inputs = QuoteInputs.from_mapping(payload)

        try:
            await self._load_customer(db, inputs.customer_id)
            priced = await self._price(db, inputs)
            quote = await self._insert_quote(db, inputs.customer_id, caller.user_id)

            inputs_json = {
                "customer_id": inputs.customer_id,
                "material_id": inputs.material_id,
                "finished_length_in": inputs.finished_length_in,
                "area_in2": inputs.area_in2,
                "weight_lb_per_ft": inputs.weight_lb_per_ft,
                **priced["context"],
            }
            revision = await self._insert_revision(
                db,
                quote_id=quote.id,
                revision_number=1,
                inputs_json=inputs_json,
                outputs_json=priced["outputs"],
                material_price_used=priced["price_per_lb"],
                created_by=caller.user_id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Quote {quote.quote_number} created",
            extra={"quote_id": quote.id, "revision_number": revision.revision_number},
        )
        return {"quote_id": quote.id, "quote_number": quote.quote_number}

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    async def _lock_quote(self, db: AsyncSession, quote_id: str) -> None:
        """Serialise recomputes of one quote for the rest of the transaction (PostgreSQL only)."""
        if db.get_bind().dialect.name != "postgresql":
            return
        await db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:qid))"), {"qid": quote_id})

    async def _load_current_revision(self, db: AsyncSession, quote_id: str) -> QuoteRevision:
        result = await db.execute(
            select(QuoteRevision)
            .where(QuoteRevision.quote_id == quote_id, QuoteRevision.is_current.is_(True))
            .order_by(QuoteRevision.revision_number.desc())
            .limit(1)
        )
        current = result.scalar_one_or_none()
        if current is None:
            raise NotFound(f"No current revision found for quote {quote_id}")
        return current

    async def _demote(self, db: AsyncSession, current: QuoteRevision) -> None:
        """Compare-and-swap on the current pointer; loses if another recompute got there first."""
        try:
            result = await db.execute(
                update(QuoteRevision)
                .where(QuoteRevision.id == current.id, QuoteRevision.is_current.is_(True))
                .values(is_current=False)
                .execution_options(synchronize_session=False)
            )
        except OperationalError as exc:
            # SQLite: a writer committed after this transaction took its read snapshot
            if "locked" not in str(exc).lower():
                raise
            raise PersistenceConflict(
                f"Revision {current.revision_number} of quote {current.quote_id} was superseded concurrently"
            ) from exc
        if result.rowcount != 1:
            raise PersistenceConflict(
                f"Revision {current.revision_number} of quote {current.quote_id} is no longer current"
            )

    async def _insert_revision(self, db: AsyncSession, **fields: Any) -> QuoteRevision:
        revision = QuoteRevision(
            is_current=True,
            multiplier_used=self.pricing.multiplier,
            **fields,
        )
        db.add(revision)
        await db.flush()
        return revision

    async def _rollback_after_partial(self, db: AsyncSession, quote_id: str) -> bool:
        try:
            await db.rollback()
            return True
        except SQLAlchemyError as exc:
            logger.error(
                f"Rollback after partial revision failed: {exc}",
                extra={"quote_id": quote_id},
                exc_info=True,
            )
            return False

    async def recompute_revision(
        self,
        db: AsyncSession,
        caller: Caller,
        quote_id: str,
    ) -> Dict[str, Any]:
        require_quote_writer(caller)

        try:
            await self._lock_quote(db, quote_id)
            current = await self._load_current_revision(db, quote_id)
            stored_inputs = dict(current.inputs_json or {})
            inputs = QuoteInputs.from_mapping(stored_inputs, require_customer=False)
            priced = await self._price(db, inputs)
            previous = current.revision_number

            logger.info(
                f"Quote {quote_id} transitioning {previous} -> {previous + 1}",
                extra={"quote_id": quote_id, "revision_number": previous + 1,
                       "revision_state": RevisionState.TRANSITIONING.value},
            )
            await self._demote(db, current)
        except Exception:
            await db.rollback()
            raise

        try:
            revision = await self._insert_revision(
                db,
                quote_id=quote_id,
                revision_number=previous + 1,
                inputs_json={**stored_inputs, **priced["context"]},
                outputs_json=priced["outputs"],
                material_price_used=priced["price_per_lb"],
                created_by=caller.user_id,
            )
            await db.commit()
        except SQLAlchemyError as exc:
            rolled_back = await self._rollback_after_partial(db, quote_id)
            logger.error(
                f"PARTIAL_REVISION_FAILURE: quote {quote_id} revision {previous + 1} not inserted "
                f"(rolled_back={rolled_back})",
                extra={"quote_id": quote_id, "revision_number": previous + 1},
                exc_info=True,
            )
            raise PartialRevisionFailure(quote_id, previous, cause=exc, rolled_back=rolled_back) from exc

        logger.info(
            f"Quote {quote_id} revision {revision.revision_number} is current",
            extra={"quote_id": quote_id, "revision_number": revision.revision_number},
        )
        return {"revision_id": revision.id, "revision_number": revision.revision_number}

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def revision_state(self, db: AsyncSession, quote_id: str) -> RevisionState:
        count = await db.scalar(
            select(func.count(QuoteRevision.id)).where(
                QuoteRevision.quote_id == quote_id, QuoteRevision.is_current.is_(True)
            )
        )
        return RevisionState.CURRENT_SETTLED if count else RevisionState.NO_CURRENT

    async def reconcile_current_revisions(
        self,
        db: AsyncSession,
        quote_id: Optional[str] = None,
    ) -> List[str]:
        """Promote the highest revision of every quote left without a current one. Idempotent."""
        has_current = select(QuoteRevision.quote_id).where(QuoteRevision.is_current.is_(True))
        query = (
            select(QuoteRevision.quote_id, func.max(QuoteRevision.revision_number))
            .where(QuoteRevision.quote_id.not_in(has_current))
            .group_by(QuoteRevision.quote_id)
        )
        if quote_id:
            query = query.where(QuoteRevision.quote_id == quote_id)

        repaired: List[str] = []
        try:
            rows = (await db.execute(query)).all()
            for qid, max_rev in rows:
                await db.execute(
                    update(QuoteRevision)
                    .where(QuoteRevision.quote_id == qid, QuoteRevision.revision_number == max_rev)
                    .values(is_current=True)
                    .execution_options(synchronize_session=False)
                )
                repaired.append(qid)
                logger.warning(
                    f"Reconciled quote {qid}: revision {max_rev} promoted to current",
                    extra={"quote_id": qid, "revision_number": max_rev},
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return repaired

    # ------------------------------------------------------------------
    # Reads / delete
    # ------------------------------------------------------------------

    async def _get_quote_row(self, db: AsyncSession, quote_id: str) -> Quote:
        result = await db.execute(select(Quote).where(Quote.id == quote_id))
        quote = result.scalar_one_or_none()
        if quote is None:
            raise NotFound(f"Quote {quote_id} not found")
        return quote

    async def get_quote(self, db: AsyncSession, quote_id: str) -> Dict[str, Any]:
        quote = await self._get_quote_row(db, quote_id)
        try:
            current = revision_to_dict(await self._load_current_revision(db, quote_id))
        except NotFound:
            current = None
        return {
            "id": quote.id,
            "quote_number": quote.quote_number,
            "customer_id": quote.customer_id,
            "status": quote.status,
            "created_by": quote.created_by,
            "created_at": quote.created_at.isoformat() if quote.created_at else None,
            "current_revision": current,
        }

    async def list_revisions(self, db: AsyncSession, quote_id: str) -> List[Dict[str, Any]]:
        await self._get_quote_row(db, quote_id)
        result = await db.execute(
            select(QuoteRevision)
            .where(QuoteRevision.quote_id == quote_id)
            .order_by(QuoteRevision.revision_number.desc())
        )
        return [revision_to_dict(r) for r in result.scalars().all()]

    async def list_quotes(
        self,
        db: AsyncSession,
        q: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        """Newest quotes first, optionally filtered by quote number or customer name (case-insensitive)."""
        query = (
            select(Quote, Customer.name)
            .outerjoin(Customer, Customer.id == Quote.customer_id)
            .order_by(Quote.created_at.desc(), Quote.quote_number.desc())
            .limit(max(1, min(int(limit), MAX_LIST_LIMIT)))
        )
        term = (q or "").strip()
        if term:
            pattern = f"%{term}%"
            query = query.where(or_(Quote.quote_number.ilike(pattern), Customer.name.ilike(pattern)))

        rows = (await db.execute(query)).all()
        return [
            {
                "id": quote.id,
                "quote_number": quote.quote_number,
                "status": quote.status,
                "customer_id": quote.customer_id,
                "customer_name": customer_name,
                "created_at": quote.created_at.isoformat() if quote.created_at else None,
            }
            for quote, customer_name in rows
        ]

    async def delete_quote(self, db: AsyncSession, caller: Caller, quote_id: str) -> None:
        require_admin_role(caller)
        try:
            await self._get_quote_row(db, quote_id)
            await db.execute(delete(QuoteRevision).where(QuoteRevision.quote_id == quote_id))
            await db.execute(delete(Quote).where(Quote.id == quote_id))
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info(f"Quote {quote_id} deleted", extra={"quote_id": quote_id})
