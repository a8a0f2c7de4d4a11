"""order core schema: orders, negotiation ledger, handover codes, payments, notifications

Revision ID: 3c1d2e4f5a6b
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d2e4f5a6b"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    try:
        indexes = sa.inspect(bind).get_indexes(table_name)
        return any((idx.get("name") or "") == index_name for idx in indexes)
    except Exception:
        return False


def _index(bind, table_name: str, column: str, *, unique: bool = False) -> None:
    name = f"ix_{table_name}_{column}"
    if not _index_exists(bind, table_name, name):
        op.create_index(name, table_name, [column], unique=unique)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="user"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _index(bind, "users", "email", unique=True)

    if not _table_exists(bind, "listings"):
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("price_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("price_type", sa.String(length=16), nullable=False, server_default="fixed"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _index(bind, "listings", "seller_id")
    _index(bind, "listings", "status")

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
            sa.Column("original_price_minor", sa.Integer(), nullable=False),
            sa.Column("negotiated_price_minor", sa.Integer(), nullable=True),
            sa.Column("final_amount_minor", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("price_type", sa.String(length=16), nullable=False, server_default="fixed"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("payment_method", sa.String(length=16), nullable=True),
            sa.Column("payment_reference", sa.String(length=120), nullable=True),
            sa.Column("cod_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("cod_verified_at", sa.DateTime(), nullable=True),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_scanned_at", sa.DateTime(), nullable=True),
            sa.Column("return_scanned_at", sa.DateTime(), nullable=True),
            sa.Column("qr_code_data", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
    for column in ("buyer_id", "seller_id", "listing_id", "status", "payment_reference"):
        _index(bind, "orders", column)

    if not _table_exists(bind, "order_negotiations"):
        op.create_table(
            "order_negotiations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("from_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("action", sa.String(length=16), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    for column in ("order_id", "from_user_id", "created_at"):
        _index(bind, "order_negotiations", column)

    if not _table_exists(bind, "handover_codes"):
        op.create_table(
            "handover_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("direction", sa.String(length=16), nullable=False),
            sa.Column("secret_hash", sa.String(length=64), nullable=False),
            sa.Column("issued_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("issued_at", sa.DateTime(), nullable=False),
            sa.Column("consumed_at", sa.DateTime(), nullable=True),
            sa.Column("consumed_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("revoked_at", sa.DateTime(), nullable=True),
        )
    _index(bind, "handover_codes", "order_id")

    if not _table_exists(bind, "order_events"):
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("event", sa.String(length=48), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=True),
            sa.Column("to_status", sa.String(length=16), nullable=True),
            sa.Column("note", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _index(bind, "order_events", "order_id")
    _index(bind, "order_events", "created_at")

    if not _table_exists(bind, "payment_sessions"):
        op.create_table(
            "payment_sessions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="mock"),
            sa.Column("session_id", sa.String(length=255), nullable=False),
            sa.Column("checkout_url", sa.String(length=1024), nullable=False, server_default=""),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("external_ref", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("provider", "session_id", name="uq_payment_session_provider_session"),
        )
    for column in ("order_id", "session_id", "status"):
        _index(bind, "payment_sessions", column)

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("channel", sa.String(length=32), nullable=False, server_default="in_app"),
            sa.Column("event_type", sa.String(length=48), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="delivered"),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("meta", sa.Text(), nullable=True),
        )
    _index(bind, "notifications", "user_id")
    _index(bind, "notifications", "order_id")

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
    for column in ("created_at", "event_type", "actor_user_id", "order_id"):
        _index(bind, "platform_events", column)
    _index(bind, "platform_events", "idempotency_key", unique=True)

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="stripe"),
            sa.Column("event_id", sa.String(length=128), nullable=False, unique=True),
            sa.Column("event_type", sa.String(length=80), nullable=True),
            sa.Column("session_id", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=64), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _index(bind, "webhook_events", "session_id")


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "webhook_events",
        "platform_events",
        "notifications",
        "payment_sessions",
        "order_events",
        "handover_codes",
        "order_negotiations",
        "orders",
        "listings",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
