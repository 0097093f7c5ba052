"""ORM Models for ExtrudeIQ — SQLAlchemy 2.0"""
import uuid
from datetime import datetime, date
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Boolean, Integer, Numeric, DateTime, Date,
    ForeignKey, UniqueConstraint, Index, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from extrudeiq.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JsonDoc = JSON().with_variant(JSONB(), "postgresql")


# ── MATERIALS ─────────────────────────────────────────────────────────────────
class Material(Base):
    __tablename__ = "materials"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    family: Mapped[str] = mapped_column(String(100), nullable=False)     # e.g. "Aluminum"
    grade: Mapped[str] = mapped_column(String(100), nullable=False)      # e.g. "6063-T5"
    density_lb_in3: Mapped[float] = mapped_column(Numeric(10, 6), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    prices: Mapped[list["MaterialPrice"]] = relationship("MaterialPrice", back_populates="material")


class MaterialPrice(Base):
    """Append-only price history. The row in force on day D has the greatest effective_date <= D."""
    __tablename__ = "material_prices"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    material_id: Mapped[str] = mapped_column(String(36), ForeignKey("materials.id"), nullable=False)
    price_per_lb: Mapped[float] = mapped_column(Numeric(12, 4), nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    material: Mapped["Material"] = relationship("Material", back_populates="prices")
    __table_args__ = (
        Index("idx_material_prices_effective", "material_id", "effective_date"),
    )


# ── CUSTOMERS ─────────────────────────────────────────────────────────────────
class Customer(Base):
    __tablename__ = "customers"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── QUOTES & REVISIONS ────────────────────────────────────────────────────────
class Quote(Base):
    __tablename__ = "quotes"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    quote_number: Mapped[str] = mapped_column(String(40), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customers.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="draft")
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    revisions: Mapped[list["QuoteRevision"]] = relationship(
        "QuoteRevision", back_populates="quote", order_by="QuoteRevision.revision_number"
    )
    __table_args__ = (UniqueConstraint("quote_number", name="uq_quotes_quote_number"),)


class QuoteRevision(Base):
    """
    Immutable pricing snapshot. Revisions are superseded, never edited:
    the only column that changes after insert is is_current (true → false).
    """
    __tablename__ = "quote_revisions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    quote_id: Mapped[str] = mapped_column(String(36), ForeignKey("quotes.id"), nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    inputs_json: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    outputs_json: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    material_price_used: Mapped[float] = mapped_column(Numeric(12, 4), nullable=False)
    multiplier_used: Mapped[float] = mapped_column(Numeric(8, 4), nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    quote: Mapped["Quote"] = relationship("Quote", back_populates="revisions")
    __table_args__ = (
        UniqueConstraint("quote_id", "revision_number", name="uq_quote_revision_number"),
        # At most one current revision per quote
        Index(
            "idx_quote_revisions_one_current",
            "quote_id",
            unique=True,
            postgresql_where=text("is_current = true"),
            sqlite_where=text("is_current = 1"),
        ),
    )


# ── DIE ESTIMATOR SETTINGS ────────────────────────────────────────────────────
class DieEstimatorSettings(Base):
    """Append-only; the newest row by updated_at is in force."""
    __tablename__ = "die_estimator_settings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    a0: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False, default=0.2)
    k: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False, default=0.4)
    cavity_slope: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False, default=0.35)
    low_band: Mapped[float] = mapped_column(Numeric(6, 4), nullable=False, default=0.90)
    high_band: Mapped[float] = mapped_column(Numeric(6, 4), nullable=False, default=1.12)
    base_solid: Mapped[int] = mapped_column(Integer, nullable=False, default=6000)
    base_hollow: Mapped[int] = mapped_column(Integer, nullable=False, default=9500)
    base_coex: Mapped[int] = mapped_column(Integer, nullable=False, default=14000)
    updated_by: Mapped[Optional[str]] = mapped_column(String(36))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
