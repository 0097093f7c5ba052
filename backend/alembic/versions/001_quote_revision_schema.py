"""quote_revision_schema

Revision ID: 001_quote_revisions
Revises:
Create Date: 2026-10-17

Creates:
- materials, material_prices (effective-dated, append-only)
- customers
- quotes (unique quote_number)
- quote_revisions (unique (quote_id, revision_number); at most one current per quote)
- die_estimator_settings (append-only)

Tables are only created when missing so the migration is safe to run after
Base.metadata.create_all() already built the schema. The partial unique index
is created with IF NOT EXISTS for the same reason.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import text

revision = '001_quote_revisions'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _id_column() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    conn = op.get_bind()

    # ── materials ─────────────────────────────────────────────────────────────
    if not _table_exists(conn, "materials"):
        op.create_table(
            "materials",
            _id_column(),
            sa.Column("family", sa.String(100), nullable=False),
            sa.Column("grade", sa.String(100), nullable=False),
            sa.Column("density_lb_in3", sa.Numeric(10, 6), nullable=False),
            _created_at(),
        )
        logger.info("Created table: materials")

    if not _table_exists(conn, "material_prices"):
        op.create_table(
            "material_prices",
            _id_column(),
            sa.Column("material_id", sa.String(36), sa.ForeignKey("materials.id"), nullable=False),
            sa.Column("price_per_lb", sa.Numeric(12, 4), nullable=False),
            sa.Column("effective_date", sa.Date, nullable=False),
            sa.Column("source", sa.String(100)),
            _created_at(),
        )
        op.create_index(
            "idx_material_prices_effective", "material_prices", ["material_id", "effective_date"]
        )
        logger.info("Created table: material_prices")

    # ── customers ─────────────────────────────────────────────────────────────
    if not _table_exists(conn, "customers"):
        op.create_table(
            "customers",
            _id_column(),
            sa.Column("name", sa.String(255), nullable=False),
            _created_at(),
        )
        logger.info("Created table: customers")

    # ── quotes / quote_revisions ──────────────────────────────────────────────
    if not _table_exists(conn, "quotes"):
        op.create_table(
            "quotes",
            _id_column(),
            sa.Column("quote_number", sa.String(40), nullable=False),
            sa.Column("customer_id", sa.String(36), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("status", sa.String(30), server_default="draft"),
            sa.Column("created_by", sa.String(36)),
            _created_at(),
            sa.UniqueConstraint("quote_number", name="uq_quotes_quote_number"),
        )
        logger.info("Created table: quotes")

    if not _table_exists(conn, "quote_revisions"):
        op.create_table(
            "quote_revisions",
            _id_column(),
            sa.Column("quote_id", sa.String(36), sa.ForeignKey("quotes.id"), nullable=False),
            sa.Column("revision_number", sa.Integer, nullable=False),
            sa.Column("is_current", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("inputs_json", JSONB, nullable=False),
            sa.Column("outputs_json", JSONB, nullable=False),
            sa.Column("material_price_used", sa.Numeric(12, 4), nullable=False),
            sa.Column("multiplier_used", sa.Numeric(8, 4), nullable=False),
            sa.Column("created_by", sa.String(36)),
            _created_at(),
            sa.UniqueConstraint("quote_id", "revision_number", name="uq_quote_revision_number"),
        )
        logger.info("Created table: quote_revisions")

    conn.execute(text(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_quote_revisions_one_current "
        "ON quote_revisions (quote_id) WHERE is_current = true"
    ))

    # ── die_estimator_settings ────────────────────────────────────────────────
    if not _table_exists(conn, "die_estimator_settings"):
        op.create_table(
            "die_estimator_settings",
            _id_column(),
            sa.Column("a0", sa.Numeric(10, 4), nullable=False, server_default="0.2"),
            sa.Column("k", sa.Numeric(10, 4), nullable=False, server_default="0.4"),
            sa.Column("cavity_slope", sa.Numeric(10, 4), nullable=False, server_default="0.35"),
            sa.Column("low_band", sa.Numeric(6, 4), nullable=False, server_default="0.90"),
            sa.Column("high_band", sa.Numeric(6, 4), nullable=False, server_default="1.12"),
            sa.Column("base_solid", sa.Integer, nullable=False, server_default="6000"),
            sa.Column("base_hollow", sa.Integer, nullable=False, server_default="9500"),
            sa.Column("base_coex", sa.Integer, nullable=False, server_default="14000"),
            sa.Column("updated_by", sa.String(36)),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        logger.info("Created table: die_estimator_settings")


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP INDEX IF EXISTS idx_quote_revisions_one_current"))
    for table in (
        "die_estimator_settings",
        "quote_revisions",
        "quotes",
        "customers",
        "material_prices",
        "materials",
    ):
        if _table_exists(conn, table):
            op.drop_table(table)
