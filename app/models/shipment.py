from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.mixins import AuditMixin
from app.models.warehouse import Warehouse


class Shipment(AuditMixin, Base):
    """
    Outbound replenishment shipment from one of our warehouses into the
    fulfillment network. Carries the inbound workflow progress.
    """

    __tablename__ = "shipment"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    shipment_number: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    source_warehouse_id: Mapped[int | None] = mapped_column(
        ForeignKey("warehouse.id"), nullable=True
    )
    # Marketplace hint ("US", "CA", "UK", ...); empty means the configured default.
    destination_hint: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Inbound workflow progress
    inbound_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    packing_option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    placement_option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    workflow_phase: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    last_operation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    workflow_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Run lease: one workflow run per shipment at a time.
    run_lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    run_lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Optimistic version check on every flush of this row.
    workflow_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": workflow_version}

    source_warehouse: Mapped[Warehouse | None] = relationship("Warehouse")
    items: Mapped[list["ShipmentItem"]] = relationship(
        "ShipmentItem",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by="ShipmentItem.id",
    )
    boxes: Mapped[list["ShipmentBox"]] = relationship(
        "ShipmentBox",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by="ShipmentBox.box_number",
    )
    splits: Mapped[list["InboundShipmentSplit"]] = relationship(
        "InboundShipmentSplit",
        back_populates="shipment",
        order_by="InboundShipmentSplit.id",
    )

    def __repr__(self) -> str:
        return f"<Shipment(id={self.id}, phase={self.workflow_phase}, status={self.status})>"


class ShipmentItem(Base):
    """Required quantity per SKU for a shipment."""

    __tablename__ = "shipment_item"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipment.id"), nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    required_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    # Who preps / labels the unit: AMAZON, SELLER or NONE
    prep_owner: Mapped[str] = mapped_column(String(10), nullable=False, default="NONE")
    label_owner: Mapped[str] = mapped_column(String(10), nullable=False, default="SELLER")

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="items")


class ShipmentBox(Base):
    """Physical carton. Dimensions in inches, weight in pounds."""

    __tablename__ = "shipment_box"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipment.id"), nullable=False, index=True)
    box_number: Mapped[int] = mapped_column(Integer, nullable=False)
    length_in: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    width_in: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    height_in: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    weight_lb: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="boxes")
    items: Mapped[list["ShipmentBoxItem"]] = relationship(
        "ShipmentBoxItem",
        back_populates="box",
        cascade="all, delete-orphan",
        order_by="ShipmentBoxItem.id",
    )


class ShipmentBoxItem(Base):
    __tablename__ = "shipment_box_item"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    box_id: Mapped[int] = mapped_column(ForeignKey("shipment_box.id"), nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    box: Mapped["ShipmentBox"] = relationship("ShipmentBox", back_populates="items")


class InboundShipmentSplit(Base):
    """
    One destination-bound sub-shipment created by the fulfillment network
    when a placement option is confirmed. Keyed by the remote shipment id.
    """

    __tablename__ = "inbound_shipment_split"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    shipment_id: Mapped[int] = mapped_column(ForeignKey("shipment.id"), nullable=False, index=True)
    remote_shipment_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    confirmation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    destination_fc: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # JSON snapshots as returned by getShipment
    destination_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    items_snapshot: Mapped[str | None] = mapped_column(Text, nullable=True)

    transportation_option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delivery_window_option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delivery_window_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivery_window_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    carrier: Mapped[str | None] = mapped_column(String(120), nullable=True)
    label_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="splits")

    def __repr__(self) -> str:
        return f"<InboundShipmentSplit(remote={self.remote_shipment_id}, status={self.status})>"
