from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.models.shipment import InboundShipmentSplit, Shipment, ShipmentBox
from app.schemas.fba_inbound import ShipmentDetail
from app.services.inbound_errors import InboundShipmentNotFound, InboundWorkflowConflict
from app.services.inbound_workflow_state import WorkflowEvent, next_phase

logger = logging.getLogger(__name__)

SPLIT_PENDING = "pending"
SPLIT_TRANSPORT_CONFIRMED = "transport_confirmed"
SPLIT_LABELS_READY = "labels_ready"


class InboundShipmentStore:
    """
    Persistence for the fields the inbound workflow reads and writes.

    Every write commits immediately so progress survives a crash mid-run.
    Shipment rows carry a version column; a write based on a stale read
    raises InboundWorkflowConflict instead of overwriting.
    """

    def __init__(self, db: Session, *, actor: str | None = None):
        self.db = db
        self.actor = actor

    @staticmethod
    def now() -> datetime:
        return datetime.utcnow()

    @staticmethod
    def _lease_ttl() -> int:
        return max(30, int(settings.INBOUND_RUN_LEASE_TTL_SECONDS))

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            raise InboundWorkflowConflict(
                "Shipment was changed by another workflow run; reload and retry."
            ) from exc

    # ------------------------------------------------------------------
    # shipment
    # ------------------------------------------------------------------

    def load(self, shipment_id: int) -> Shipment:
        shipment = (
            self.db.query(Shipment)
            .options(
                selectinload(Shipment.items),
                selectinload(Shipment.boxes).selectinload(ShipmentBox.items),
                selectinload(Shipment.source_warehouse),
            )
            .filter(Shipment.id == int(shipment_id))
            .first()
        )
        if shipment is None:
            raise InboundShipmentNotFound(shipment_id)
        return shipment

    def acquire_run_lease(self, shipment_id: int) -> str:
        now = self.now()
        token = secrets.token_hex(16)
        claimed = (
            self.db.query(Shipment)
            .filter(Shipment.id == int(shipment_id))
            .filter(
                or_(
                    Shipment.run_lease_token.is_(None),
                    Shipment.run_lease_expires_at.is_(None),
                    Shipment.run_lease_expires_at <= now,
                )
            )
            .update(
                {
                    Shipment.run_lease_token: token,
                    Shipment.run_lease_expires_at: now + timedelta(seconds=self._lease_ttl()),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if claimed:
            return token

        row = (
            self.db.query(Shipment.id, Shipment.run_lease_expires_at)
            .filter(Shipment.id == int(shipment_id))
            .first()
        )
        if row is None:
            raise InboundShipmentNotFound(shipment_id)
        expires_at = row[1]
        raise InboundWorkflowConflict(
            "Another submission run is in progress for this shipment.",
            lease_expires_at=expires_at.isoformat() if expires_at else None,
        )

    def release_run_lease(self, shipment_id: int, token: str) -> None:
        self.db.rollback()
        (
            self.db.query(Shipment)
            .filter(Shipment.id == int(shipment_id))
            .filter(Shipment.run_lease_token == token)
            .update(
                {Shipment.run_lease_token: None, Shipment.run_lease_expires_at: None},
                synchronize_session=False,
            )
        )
        self.db.commit()

    def record_operation(self, shipment: Shipment, operation_id: str) -> None:
        shipment.last_operation_id = operation_id
        self._commit()

    def record_error(self, shipment: Shipment, message: str, operation_id: str | None = None) -> None:
        shipment.workflow_error = message
        if operation_id:
            shipment.last_operation_id = operation_id
        self._commit()

    def update(self, shipment: Shipment, **fields: Any) -> None:
        for key, value in fields.items():
            setattr(shipment, key, value)
        shipment.stamp_change(self.actor)
        self._commit()

    def advance(self, shipment: Shipment, event: WorkflowEvent, **fields: Any) -> None:
        """Persist identifiers and move the marker forward in one versioned write."""
        for key, value in fields.items():
            setattr(shipment, key, value)
        shipment.workflow_phase = next_phase(shipment.workflow_phase, event).value
        shipment.workflow_error = None
        shipment.stamp_change(self.actor)
        self._commit()

    # ------------------------------------------------------------------
    # splits
    # ------------------------------------------------------------------

    def splits(self, shipment: Shipment) -> list[InboundShipmentSplit]:
        return (
            self.db.query(InboundShipmentSplit)
            .filter(InboundShipmentSplit.shipment_id == shipment.id)
            .order_by(InboundShipmentSplit.id.asc())
            .all()
        )

    def pending_splits(self, shipment: Shipment) -> list[InboundShipmentSplit]:
        return [split for split in self.splits(shipment) if split.status == SPLIT_PENDING]

    def upsert_split(self, shipment: Shipment, detail: ShipmentDetail) -> InboundShipmentSplit:
        split = (
            self.db.query(InboundShipmentSplit)
            .filter(InboundShipmentSplit.remote_shipment_id == detail.shipment_id)
            .first()
        )
        if split is None:
            split = InboundShipmentSplit(
                shipment_id=shipment.id,
                remote_shipment_id=detail.shipment_id,
                status=SPLIT_PENDING,
            )
            self.db.add(split)

        destination = detail.destination
        split.confirmation_id = detail.shipment_confirmation_id or split.confirmation_id
        if destination is not None:
            split.destination_fc = destination.warehouse_id or split.destination_fc
            if destination.address:
                split.destination_address = json.dumps(destination.address, default=str)
        if detail.items:
            split.items_snapshot = json.dumps(
                [{"msku": item.msku, "quantity": item.quantity} for item in detail.items]
            )
        self._commit()
        return split

    def save_split(self, split: InboundShipmentSplit, **fields: Any) -> None:
        for key, value in fields.items():
            setattr(split, key, value)
        self._commit()

    def mark_splits(self, splits: Iterable[InboundShipmentSplit], status: str) -> None:
        for split in splits:
            split.status = status
        self._commit()
