from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy.orm import Session

from app.core.flow_logging import flow_info
from app.services.fba_inbound_client import FbaInboundApiError, FbaInboundClient
from app.services.inbound_errors import InboundPreconditionError
from app.services.inbound_shipment_store import (
    SPLIT_LABELS_READY,
    SPLIT_PENDING,
    SPLIT_TRANSPORT_CONFIRMED,
    InboundShipmentStore,
)

logger = logging.getLogger(__name__)

REMOTE_TO_SPLIT_STATUS = {
    "WORKING": SPLIT_PENDING,
    "READY_TO_SHIP": SPLIT_LABELS_READY,
    "SHIPPED": "shipped",
    "IN_TRANSIT": "in_transit",
    "DELIVERED": "receiving",
    "CHECKED_IN": "receiving",
    "RECEIVING": "receiving",
    "CLOSED": "received",
    "CANCELLED": "cancelled",
}

# Once confirmed locally, a WORKING answer from the remote side does not undo it.
_LOCAL_ONLY_STATUSES = {SPLIT_TRANSPORT_CONFIRMED, SPLIT_LABELS_READY}
_SHIPPED_OR_LATER = {"shipped", "in_transit", "receiving", "received"}


def map_remote_status(remote_status: str | None, current: str | None) -> str | None:
    mapped = REMOTE_TO_SPLIT_STATUS.get((remote_status or "").strip().upper())
    if mapped is None:
        return current
    if mapped == SPLIT_PENDING and current in _LOCAL_ONLY_STATUSES:
        return current
    return mapped


def roll_up_status(split_statuses: Iterable[str | None], current: str | None) -> str | None:
    """Overall shipment status from its splits; cancelled splits do not count."""
    statuses = [s for s in split_statuses if s and s != "cancelled"]
    if not statuses:
        return current
    if all(s == "received" for s in statuses):
        return "received"
    if any(s == "receiving" for s in statuses):
        return "receiving"
    if any(s == "in_transit" for s in statuses):
        return "in_transit"
    if all(s in _SHIPPED_OR_LATER for s in statuses):
        return "shipped"
    if any(s == "labels_ready" for s in statuses):
        return "submitted"
    return current


class InboundStatusSync:
    """Refreshes split and shipment status from the remote shipment records."""

    def __init__(self, db: Session, *, client: Any = None) -> None:
        self.store = InboundShipmentStore(db)
        self.client = client or FbaInboundClient()

    def refresh(self, shipment_id: int) -> dict[str, Any]:
        shipment = self.store.load(shipment_id)
        if not shipment.inbound_plan_id:
            raise InboundPreconditionError("Shipment has not been submitted yet.")

        rows: list[dict[str, Any]] = []
        for split in self.store.splits(shipment):
            try:
                detail = self.client.get_shipment(shipment.inbound_plan_id, split.remote_shipment_id)
            except FbaInboundApiError as exc:
                logger.warning(
                    "inbound_status_refresh_failed shipment_id=%s split=%s error=%s",
                    shipment.id,
                    split.remote_shipment_id,
                    exc.message,
                )
                rows.append(
                    {
                        "remote_shipment_id": split.remote_shipment_id,
                        "status": split.status,
                        "error": exc.message,
                    }
                )
                continue

            new_status = map_remote_status(detail.status, split.status)
            fields: dict[str, Any] = {}
            if new_status != split.status:
                fields["status"] = new_status
            if detail.tracking_id and detail.tracking_id != split.tracking_number:
                fields["tracking_number"] = detail.tracking_id
            if detail.shipment_confirmation_id and not split.confirmation_id:
                fields["confirmation_id"] = detail.shipment_confirmation_id
            if fields:
                self.store.save_split(split, **fields)
            rows.append(
                {
                    "remote_shipment_id": split.remote_shipment_id,
                    "remote_status": detail.status,
                    "status": split.status,
                    "tracking_number": split.tracking_number,
                    "destination_fc": split.destination_fc,
                }
            )

        overall = roll_up_status((split.status for split in self.store.splits(shipment)), shipment.status)
        if overall != shipment.status:
            flow_info(
                logger,
                "inbound_status_changed shipment_id=%s from=%s to=%s",
                shipment.id,
                shipment.status,
                overall,
                category="inbound",
            )
            self.store.update(shipment, status=overall)

        return {"shipment_id": shipment.id, "status": shipment.status, "splits": rows}
