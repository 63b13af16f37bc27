"""create inbound shipment tables

Revision ID: 3e8a1c5f7b20
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3e8a1c5f7b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column(
            "created_by",
            sa.String(length=255),
            nullable=False,
            server_default=sa.text("'system@local'"),
        ),
        sa.Column(
            "last_changed_by",
            sa.String(length=255),
            nullable=False,
            server_default=sa.text("'system@local'"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "warehouse",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column("address_line1", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("region", sa.String(length=100), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=True),
        sa.Column("country_code", sa.String(length=2), nullable=True),
        sa.Column("contact_name", sa.String(length=120), nullable=True),
        sa.Column("contact_phone", sa.String(length=30), nullable=True),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_audit_columns(),
    )

    op.create_table(
        "shipment",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shipment_number", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("source_warehouse_id", sa.Integer(), sa.ForeignKey("warehouse.id"), nullable=True),
        sa.Column("destination_hint", sa.String(length=10), nullable=True),
        sa.Column("inbound_plan_id", sa.String(length=64), nullable=True),
        sa.Column("packing_option_id", sa.String(length=64), nullable=True),
        sa.Column("placement_option_id", sa.String(length=64), nullable=True),
        sa.Column("workflow_phase", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("last_operation_id", sa.String(length=64), nullable=True),
        sa.Column("workflow_error", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("run_lease_token", sa.String(length=64), nullable=True),
        sa.Column("run_lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("workflow_version", sa.Integer(), nullable=False, server_default="1"),
        *_audit_columns(),
    )
    op.create_index("ix_shipment_shipment_number", "shipment", ["shipment_number"], unique=True)
    op.create_index("ix_shipment_inbound_plan_id", "shipment", ["inbound_plan_id"], unique=False)

    op.create_table(
        "shipment_item",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shipment_id", sa.Integer(), sa.ForeignKey("shipment.id"), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("required_qty", sa.Integer(), nullable=False),
        sa.Column("prep_owner", sa.String(length=10), nullable=False, server_default="NONE"),
        sa.Column("label_owner", sa.String(length=10), nullable=False, server_default="SELLER"),
    )
    op.create_index("ix_shipment_item_shipment_id", "shipment_item", ["shipment_id"], unique=False)

    op.create_table(
        "shipment_box",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shipment_id", sa.Integer(), sa.ForeignKey("shipment.id"), nullable=False),
        sa.Column("box_number", sa.Integer(), nullable=False),
        sa.Column("length_in", sa.Numeric(10, 2), nullable=True),
        sa.Column("width_in", sa.Numeric(10, 2), nullable=True),
        sa.Column("height_in", sa.Numeric(10, 2), nullable=True),
        sa.Column("weight_lb", sa.Numeric(10, 2), nullable=True),
    )
    op.create_index("ix_shipment_box_shipment_id", "shipment_box", ["shipment_id"], unique=False)

    op.create_table(
        "shipment_box_item",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("box_id", sa.Integer(), sa.ForeignKey("shipment_box.id"), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
    )
    op.create_index("ix_shipment_box_item_box_id", "shipment_box_item", ["box_id"], unique=False)

    op.create_table(
        "inbound_shipment_split",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("shipment_id", sa.Integer(), sa.ForeignKey("shipment.id"), nullable=False),
        sa.Column("remote_shipment_id", sa.String(length=64), nullable=False),
        sa.Column("confirmation_id", sa.String(length=64), nullable=True),
        sa.Column("destination_fc", sa.String(length=20), nullable=True),
        sa.Column("destination_address", sa.Text(), nullable=True),
        sa.Column("items_snapshot", sa.Text(), nullable=True),
        sa.Column("transportation_option_id", sa.String(length=64), nullable=True),
        sa.Column("delivery_window_option_id", sa.String(length=64), nullable=True),
        sa.Column("delivery_window_start", sa.DateTime(), nullable=True),
        sa.Column("delivery_window_end", sa.DateTime(), nullable=True),
        sa.Column("carrier", sa.String(length=120), nullable=True),
        sa.Column("label_url", sa.Text(), nullable=True),
        sa.Column("tracking_number", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "ix_inbound_shipment_split_shipment_id",
        "inbound_shipment_split",
        ["shipment_id"],
        unique=False,
    )
    op.create_index(
        "ix_inbound_shipment_split_remote_shipment_id",
        "inbound_shipment_split",
        ["remote_shipment_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_inbound_shipment_split_remote_shipment_id", table_name="inbound_shipment_split")
    op.drop_index("ix_inbound_shipment_split_shipment_id", table_name="inbound_shipment_split")
    op.drop_table("inbound_shipment_split")
    op.drop_index("ix_shipment_box_item_box_id", table_name="shipment_box_item")
    op.drop_table("shipment_box_item")
    op.drop_index("ix_shipment_box_shipment_id", table_name="shipment_box")
    op.drop_table("shipment_box")
    op.drop_index("ix_shipment_item_shipment_id", table_name="shipment_item")
    op.drop_table("shipment_item")
    op.drop_index("ix_shipment_inbound_plan_id", table_name="shipment")
    op.drop_index("ix_shipment_shipment_number", table_name="shipment")
    op.drop_table("shipment")
    op.drop_table("warehouse")
