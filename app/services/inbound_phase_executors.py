from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable

from app.core.config import settings
from app.core.flow_logging import flow_info
from app.models.shipment import InboundShipmentSplit, Shipment, ShipmentBox
from app.schemas.fba_inbound import (
    DeliveryWindowOption,
    PlacementOption,
    TransportationOption,
)
from app.services.fba_inbound_client import FbaInboundApiError, resolve_marketplace_id
from app.services.inbound_errors import (
    InboundNoOptionError,
    InboundOperationPending,
    InboundPreconditionError,
    InboundRemoteRejection,
    InboundWorkflowError,
    is_already_confirmed,
    parse_rejection_hints,
)
from app.services.inbound_operation_poller import OperationOutcome, OperationPoller
from app.services.inbound_option_policy import AWAIT_CALLER
from app.services.inbound_option_selectors import (
    cheapest_partnered_transport,
    cheapest_placement,
    is_partnered_small_parcel,
    option_is_live,
    placement_total_fee,
    transport_quote,
)
from app.services.inbound_shipment_store import (
    SPLIT_LABELS_READY,
    SPLIT_TRANSPORT_CONFIRMED,
    InboundShipmentStore,
)
from app.services.inbound_workflow_state import WorkflowEvent, WorkflowPhase, has_reached

logger = logging.getLogger(__name__)

ACCEPTED = "ACCEPTED"
LABEL_ELIGIBLE_SPLIT_STATUSES = {SPLIT_TRANSPORT_CONFIRMED, SPLIT_LABELS_READY, "shipped"}
PAGE_TYPES = {"PACKAGE_LABEL", "BILL_OF_LADING", "PALLET_LABEL"}
LABEL_TYPES = {"PLAIN_PAPER", "THERMAL"}
PARTNERED_CARRIER_NAME = "Amazon Partnered Carrier"


@dataclass
class PhaseResult:
    phase: str
    skipped: bool = False
    awaiting_selection: bool = False
    payload: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "skipped": self.skipped,
            "awaiting_selection": self.awaiting_selection,
            **self.payload,
        }


@dataclass
class PhaseContext:
    store: InboundShipmentStore
    client: Any
    poller: OperationPoller
    policy: Any


# ----------------------------------------------------------------------
# candidate views
# ----------------------------------------------------------------------


def _money(value: Decimal) -> float | None:
    if value.is_infinite():
        return None
    return float(value)


def describe_placement(option: PlacementOption) -> dict[str, Any]:
    currency = next((fee.value.code for fee in option.fees if fee.value and fee.value.code), None)
    return {
        "placement_option_id": option.placement_option_id,
        "status": option.status,
        "total_fee": float(placement_total_fee(option)),
        "currency": currency,
        "shipment_ids": list(option.shipment_ids),
        "fees": [
            {
                "type": fee.type,
                "target": fee.target,
                "amount": float(fee.value.amount) if fee.value else 0.0,
            }
            for fee in option.fees
        ],
    }


def describe_transport(option: TransportationOption) -> dict[str, Any]:
    return {
        "transportation_option_id": option.transportation_option_id,
        "shipment_id": option.shipment_id,
        "shipping_mode": option.shipping_mode,
        "shipping_solution": option.shipping_solution,
        "carrier": option.carrier.name if option.carrier else None,
        "price": _money(transport_quote(option)),
        "partnered_small_parcel": is_partnered_small_parcel(option),
    }


def describe_split(split: InboundShipmentSplit) -> dict[str, Any]:
    window = None
    if split.delivery_window_start and split.delivery_window_end:
        window = (
            f"{split.delivery_window_start.date().isoformat()} - "
            f"{split.delivery_window_end.date().isoformat()}"
        )
    return {
        "remote_shipment_id": split.remote_shipment_id,
        "confirmation_id": split.confirmation_id,
        "destination_fc": split.destination_fc,
        "status": split.status,
        "carrier": split.carrier,
        "transportation_option_id": split.transportation_option_id,
        "delivery_window_option_id": split.delivery_window_option_id,
        "delivery_window": window,
        "label_url": split.label_url,
    }


def _carrier_name(option: TransportationOption) -> str | None:
    if option.carrier and option.carrier.name:
        return option.carrier.name
    if is_partnered_small_parcel(option):
        return PARTNERED_CARRIER_NAME
    return option.carrier.alpha_code if option.carrier else None


# ----------------------------------------------------------------------
# pre-flight validation
# ----------------------------------------------------------------------


def validate_for_submission(shipment: Shipment) -> None:
    """Reject shipments the network would refuse, before any remote call."""
    warehouse = shipment.source_warehouse
    if warehouse is None:
        raise InboundPreconditionError(
            "Shipment must have a source warehouse.",
            missing_fields=["source_warehouse"],
        )

    required = {
        "address": warehouse.address_line1,
        "city": warehouse.city,
        "region": warehouse.region,
        "postal code": warehouse.postal_code,
        "contact phone": warehouse.contact_phone,
    }
    missing_fields = [label for label, value in required.items() if not (value or "").strip()]
    if missing_fields:
        raise InboundPreconditionError(
            f'Warehouse "{warehouse.name}" is missing required address fields: {", ".join(missing_fields)}',
            missing_fields=missing_fields,
            hint="Update the warehouse address before submitting.",
        )

    if not shipment.items:
        raise InboundPreconditionError("Shipment must have at least one item.", missing_fields=["items"])

    boxes = [box for box in shipment.boxes if any(item.quantity > 0 for item in box.items)]
    if not boxes:
        raise InboundPreconditionError(
            "Shipment must have at least one box with items.",
            missing_fields=["boxes"],
        )

    assigned: dict[str, int] = defaultdict(int)
    for box in shipment.boxes:
        for box_item in box.items:
            assigned[box_item.sku] += int(box_item.quantity)
    required_qty: dict[str, int] = defaultdict(int)
    for item in shipment.items:
        required_qty[item.sku] += int(item.required_qty)

    mismatches = [
        {"sku": sku, "assigned": assigned.get(sku, 0), "required": required_qty.get(sku, 0)}
        for sku in sorted(set(assigned) | set(required_qty))
        if assigned.get(sku, 0) != required_qty.get(sku, 0)
    ]
    if mismatches:
        first = mismatches[0]
        raise InboundPreconditionError(
            f"Item {first['sku']}: {first['assigned']} assigned to boxes, but {first['required']} required",
            mismatches=mismatches,
        )

    incomplete_boxes = [
        box.box_number
        for box in shipment.boxes
        if not all(
            value is not None and Decimal(str(value)) > 0
            for value in (box.length_in, box.width_in, box.height_in, box.weight_lb)
        )
    ]
    if incomplete_boxes:
        raise InboundPreconditionError(
            f"Box {incomplete_boxes[0]} is missing dimensions or weight",
            boxes=incomplete_boxes,
        )


def assign_boxes_to_groups(
    boxes: list[ShipmentBox],
    group_skus: dict[str, set[str]],
) -> dict[str, list[ShipmentBox]]:
    """
    Each box goes to the first packing group whose SKUs overlap its contents.
    Boxes overlapping no group go to the first group; so do all boxes when no
    overlap exists at all.
    """
    if not group_skus:
        return {}
    group_ids = list(group_skus)
    assignment: dict[str, list[ShipmentBox]] = {gid: [] for gid in group_ids}
    unmatched: list[ShipmentBox] = []
    for box in boxes:
        box_skus = {item.sku for item in box.items if item.quantity > 0}
        target = next((gid for gid in group_ids if group_skus[gid] & box_skus), None)
        if target is None:
            unmatched.append(box)
        else:
            assignment[target].append(box)
    if unmatched:
        assignment[group_ids[0]].extend(unmatched)
    return {gid: assigned for gid, assigned in assignment.items() if assigned}


def _accepted(options):
    return next((o for o in options if (o.status or "").upper() == ACCEPTED), None)


def _live(options):
    return [o for o in options if option_is_live(o)]


# ----------------------------------------------------------------------
# executors
# ----------------------------------------------------------------------


class PhaseExecutor:
    phase: str = ""

    def __init__(self, ctx: PhaseContext, shipment: Shipment):
        self.ctx = ctx
        self.store = ctx.store
        self.client = ctx.client
        self.shipment = shipment

    def _log(self, msg: str, *args) -> None:
        flow_info(logger, "[%s] " + msg, self.shipment.id, *args, category="inbound")

    def _require_plan(self) -> str:
        plan_id = self.shipment.inbound_plan_id
        if not plan_id or not has_reached(self.shipment.workflow_phase, WorkflowPhase.PLAN_CREATED):
            raise InboundPreconditionError(
                "No inbound plan for this shipment. Run create_plan first.",
                missing_fields=["inbound_plan_id"],
            )
        return plan_id

    def _fail(self, message: str, *, operation_id: str | None = None, **details: Any) -> InboundRemoteRejection:
        self.store.record_error(self.shipment, message, operation_id)
        return InboundRemoteRejection(message, operation_id=operation_id, **details)

    def _remote(self, description: str, call: Callable[[], Any], *, tolerate_confirmed: bool = False):
        """
        Run one remote request. Returns None when a tolerated "already
        confirmed" answer came back instead of a result.
        """
        try:
            return call()
        except FbaInboundApiError as exc:
            if tolerate_confirmed and is_already_confirmed(
                [exc.message, *(p.message for p in exc.problems)]
            ):
                logger.info(
                    "[%s] %s already applied remotely; adopting existing state. detail=%s",
                    self.shipment.id,
                    description,
                    exc.message,
                )
                return None
            raise self._fail(
                f"Failed to {description}: {exc.message}",
                problems=exc.problems,
                http_status=exc.status_code,
            ) from exc

    def _await(
        self,
        operation_id: str,
        description: str,
        *,
        tolerate_confirmed: bool = False,
        raise_on_failure: bool = True,
    ) -> OperationOutcome:
        self.store.record_operation(self.shipment, operation_id)
        outcome = self.ctx.poller.wait(operation_id)
        if outcome.still_pending:
            self.store.record_error(
                self.shipment,
                f"Timed out waiting to {description} (operation {operation_id})",
                operation_id,
            )
            raise InboundOperationPending(operation_id, outcome.waited_seconds)
        if outcome.failed:
            if tolerate_confirmed and is_already_confirmed(p.message for p in outcome.problems):
                logger.info(
                    "[%s] %s already applied remotely (operation %s); continuing.",
                    self.shipment.id,
                    description,
                    operation_id,
                )
                return outcome
            if raise_on_failure:
                raise self._fail(
                    f"Failed to {description}: {outcome.problem_summary()}",
                    operation_id=operation_id,
                    problems=outcome.problems,
                )
        return outcome

    def run(self) -> PhaseResult:  # pragma: no cover - interface
        raise NotImplementedError


class PlanPhase(PhaseExecutor):
    phase = "create_plan"

    def _items_payload(self) -> list[dict[str, Any]]:
        return [
            {
                "msku": item.sku,
                "quantity": int(item.required_qty),
                "prepOwner": (item.prep_owner or "NONE").upper(),
                "labelOwner": (item.label_owner or "SELLER").upper(),
            }
            for item in self.shipment.items
        ]

    def _addresses(self) -> tuple[dict[str, Any], dict[str, Any]]:
        warehouse = self.shipment.source_warehouse
        source_address = {
            "name": warehouse.contact_name or warehouse.name,
            "companyName": warehouse.name,
            "addressLine1": warehouse.address_line1.strip(),
            "city": warehouse.city.strip(),
            "stateOrProvinceCode": warehouse.region.strip(),
            "countryCode": (warehouse.country_code or "US").strip().upper(),
            "postalCode": warehouse.postal_code.strip(),
            "phoneNumber": warehouse.contact_phone.strip(),
        }
        contact = {
            "email": warehouse.contact_email or settings.FBA_DEFAULT_CONTACT_EMAIL,
            "phoneNumber": warehouse.contact_phone.strip(),
        }
        if warehouse.contact_name:
            contact["name"] = warehouse.contact_name
        return source_address, contact

    def _settle(self, operation_id: str, item_owners: list[dict[str, str]]) -> None:
        """Poll plan creation; a failed plan is forgotten so the next attempt creates a fresh one."""
        outcome = self._await(operation_id, "create inbound plan", raise_on_failure=False)
        if outcome.failed:
            summary = outcome.problem_summary()
            self.store.update(self.shipment, inbound_plan_id=None)
            raise self._fail(
                f"Failed to create inbound plan: {summary}",
                operation_id=operation_id,
                problems=outcome.problems,
                items=item_owners,
                **parse_rejection_hints(summary),
            )

    def run(self) -> PhaseResult:
        validate_for_submission(self.shipment)
        items = self._items_payload()
        item_owners = [
            {"msku": i["msku"], "prep_owner": i["prepOwner"], "label_owner": i["labelOwner"]}
            for i in items
        ]

        plan_id = self.shipment.inbound_plan_id
        if plan_id and has_reached(self.shipment.workflow_phase, WorkflowPhase.PLAN_CREATED):
            return PhaseResult(self.phase, skipped=True, payload={"inbound_plan_id": plan_id})
        if plan_id:
            # Created by an earlier attempt whose poll did not finish.
            operation_id = self.shipment.last_operation_id
            if operation_id:
                self._log("Resuming inbound plan %s, operation %s", plan_id, operation_id)
                self._settle(operation_id, item_owners)
            self.store.advance(self.shipment, WorkflowEvent.PLAN_CREATED)
            return PhaseResult(
                self.phase,
                payload={"inbound_plan_id": plan_id, "operation_id": operation_id, "resumed": True},
            )

        source_address, contact = self._addresses()
        plan_name = f"{self.shipment.shipment_number or f'SHP-{self.shipment.id}'} - {date.today().isoformat()}"
        self._log("Creating inbound plan with %s items", len(items))

        try:
            operation_id, plan_id = self.client.create_inbound_plan(
                marketplace_id=resolve_marketplace_id(self.shipment.destination_hint),
                source_address=source_address,
                items=items,
                contact_information=contact,
                name=plan_name,
            )
        except FbaInboundApiError as exc:
            raise self._fail(
                "The fulfillment network rejected the inbound plan",
                problems=exc.problems,
                remote_message=exc.message,
                items=item_owners,
                **parse_rejection_hints(exc.message),
            ) from exc

        # Kept before polling so a timed-out attempt resumes this plan instead of creating another.
        self.store.update(self.shipment, inbound_plan_id=plan_id, last_operation_id=operation_id)
        self._settle(operation_id, item_owners)

        self.store.advance(self.shipment, WorkflowEvent.PLAN_CREATED)
        self._log("Inbound plan created: %s", plan_id)
        return PhaseResult(
            self.phase,
            payload={"inbound_plan_id": plan_id, "operation_id": operation_id},
        )


class PackingPhase(PhaseExecutor):
    phase = "set_packing"

    @staticmethod
    def _box_payload(box: ShipmentBox, owners: dict[str, tuple[str, str]]) -> dict[str, Any]:
        return {
            "weight": {"unit": "LB", "value": float(box.weight_lb)},
            "dimensions": {
                "unitOfMeasurement": "IN",
                "length": float(box.length_in),
                "width": float(box.width_in),
                "height": float(box.height_in),
            },
            "quantity": 1,
            "contentInformationSource": "BOX_CONTENT_PROVIDED",
            "items": [
                {
                    "msku": item.sku,
                    "quantity": int(item.quantity),
                    "prepOwner": owners.get(item.sku, ("NONE", "SELLER"))[0],
                    "labelOwner": owners.get(item.sku, ("NONE", "SELLER"))[1],
                }
                for item in box.items
                if item.quantity > 0
            ],
        }

    def _list_options(self, plan_id: str):
        return self._remote("list packing options", lambda: self.client.list_packing_options(plan_id))

    def run(self) -> PhaseResult:
        if has_reached(self.shipment.workflow_phase, WorkflowPhase.PACKING_SET):
            return PhaseResult(
                self.phase,
                skipped=True,
                payload={"packing_option_id": self.shipment.packing_option_id},
            )
        plan_id = self._require_plan()

        options = self._list_options(plan_id)
        chosen = _accepted(options)
        if chosen is None and not _live(options):
            self._log("Generating packing options")
            operation_id = self._remote(
                "generate packing options",
                lambda: self.client.generate_packing_options(plan_id),
                tolerate_confirmed=True,
            )
            if operation_id:
                self._await(operation_id, "generate packing options", tolerate_confirmed=True)
            options = self._list_options(plan_id)
            chosen = _accepted(options)
        if chosen is None:
            options = _live(options)

        if chosen is None:
            if not options:
                raise InboundNoOptionError("No packing options available from the fulfillment network.")
            chosen = options[0]
            operation_id = self._remote(
                "confirm packing option",
                lambda: self.client.confirm_packing_option(plan_id, chosen.packing_option_id),
                tolerate_confirmed=True,
            )
            if operation_id:
                self._await(operation_id, "confirm packing option", tolerate_confirmed=True)
        else:
            self._log("Packing option %s already accepted; adopting it", chosen.packing_option_id)

        if not chosen.packing_groups:
            raise InboundNoOptionError(
                f"Packing option {chosen.packing_option_id} has no packing groups.",
            )

        group_skus: dict[str, set[str]] = {}
        for group_id in chosen.packing_groups:
            items = self._remote(
                "list packing group items",
                lambda gid=group_id: self.client.list_packing_group_items(plan_id, gid),
            )
            group_skus[group_id] = {item.msku for item in items}

        owners = {item.sku: (item.prep_owner or "NONE", item.label_owner or "SELLER") for item in self.shipment.items}
        boxes = [box for box in self.shipment.boxes if box.items]
        assignment = assign_boxes_to_groups(boxes, group_skus)
        package_groupings = [
            {
                "packingGroupId": group_id,
                "boxes": [self._box_payload(box, owners) for box in assigned],
            }
            for group_id, assigned in assignment.items()
        ]
        self._log(
            "Setting packing info with %s boxes across %s groups",
            len(boxes),
            len(package_groupings),
        )
        operation_id = self._remote(
            "set packing information",
            lambda: self.client.set_packing_information(plan_id, package_groupings),
        )
        self._await(operation_id, "set packing information")

        self.store.advance(
            self.shipment,
            WorkflowEvent.PACKING_SET,
            packing_option_id=chosen.packing_option_id,
        )
        return PhaseResult(
            self.phase,
            payload={
                "packing_option_id": chosen.packing_option_id,
                "packing_groups": {gid: [b.box_number for b in assigned] for gid, assigned in assignment.items()},
                "operation_id": operation_id,
            },
        )


class PlacementPhase(PhaseExecutor):
    phase = "confirm_placement"

    def _list_options(self, plan_id: str) -> list[PlacementOption]:
        return self._remote("list placement options", lambda: self.client.list_placement_options(plan_id))

    def run(self) -> PhaseResult:
        if has_reached(self.shipment.workflow_phase, WorkflowPhase.PLACEMENT_CONFIRMED):
            return PhaseResult(
                self.phase,
                skipped=True,
                payload={"placement_option_id": self.shipment.placement_option_id},
            )
        if not has_reached(self.shipment.workflow_phase, WorkflowPhase.PACKING_SET):
            raise InboundPreconditionError(
                "Packing information is not set yet. Run set_packing first.",
                workflow_phase=self.shipment.workflow_phase,
            )
        plan_id = self._require_plan()

        options = self._list_options(plan_id)
        chosen = _accepted(options)
        if chosen is None and not _live(options):
            self._log("Generating placement options")
            operation_id = self._remote(
                "generate placement options",
                lambda: self.client.generate_placement_options(plan_id),
                tolerate_confirmed=True,
            )
            if operation_id:
                self._await(operation_id, "generate placement options", tolerate_confirmed=True)
            options = self._list_options(plan_id)
            chosen = _accepted(options)
        if chosen is None:
            options = _live(options)

        if chosen is None:
            if not options:
                raise InboundNoOptionError("No placement options available.")
            choice = self.ctx.policy.choose_placement(options)
            if choice is AWAIT_CALLER:
                recommended = cheapest_placement(options)
                return PhaseResult(
                    self.phase,
                    awaiting_selection=True,
                    payload={
                        "placement_options": [describe_placement(o) for o in options],
                        "recommended_placement_option_id": (
                            recommended.placement_option_id if recommended else None
                        ),
                    },
                )
            if choice is None:
                raise InboundNoOptionError("Could not select a placement option.")

            self._log(
                "Selected placement %s with %s shipments",
                choice.placement_option_id,
                len(choice.shipment_ids),
            )
            operation_id = self._remote(
                "confirm placement option",
                lambda: self.client.confirm_placement_option(plan_id, choice.placement_option_id),
                tolerate_confirmed=True,
            )
            outcome = None
            if operation_id:
                outcome = self._await(operation_id, "confirm placement option", tolerate_confirmed=True)
            if operation_id is None or (outcome is not None and outcome.failed):
                # Placement was confirmed by an earlier attempt; trust the remote record.
                chosen = _accepted(self._list_options(plan_id)) or choice
            else:
                chosen = choice
        else:
            self._log("Placement option %s already accepted; adopting it", chosen.placement_option_id)

        splits = []
        for remote_shipment_id in chosen.shipment_ids:
            detail = self._remote(
                "get shipment details",
                lambda sid=remote_shipment_id: self.client.get_shipment(plan_id, sid),
            )
            splits.append(self.store.upsert_split(self.shipment, detail))

        self.store.advance(
            self.shipment,
            WorkflowEvent.PLACEMENT_CONFIRMED,
            placement_option_id=chosen.placement_option_id,
        )
        self._log("Placement confirmed, %s shipment splits recorded", len(splits))
        return PhaseResult(
            self.phase,
            payload={
                "placement_option_id": chosen.placement_option_id,
                "total_fee": float(placement_total_fee(chosen)),
                "fees": describe_placement(chosen)["fees"],
                "shipment_splits": [split.remote_shipment_id for split in splits],
            },
        )


class TransportPhase(PhaseExecutor):
    phase = "confirm_transport"

    def _finalize(self) -> None:
        fields: dict[str, Any] = {}
        if self.shipment.status in (None, "", "draft"):
            fields["status"] = "submitted"
        if self.shipment.submitted_at is None:
            fields["submitted_at"] = self.store.now()
        self.store.advance(self.shipment, WorkflowEvent.TRANSPORT_CONFIRMED, **fields)

    def _adopt_remote_selection(self, plan_id: str, split: InboundShipmentSplit) -> bool:
        """List-then-decide: a transport confirmed by an earlier attempt is adopted as-is."""
        detail = self._remote(
            "get shipment details",
            lambda: self.client.get_shipment(plan_id, split.remote_shipment_id),
        )
        if not detail.selected_transportation_option_id:
            return False
        fields: dict[str, Any] = {
            "transportation_option_id": detail.selected_transportation_option_id,
            "status": SPLIT_TRANSPORT_CONFIRMED,
        }
        window = detail.selected_delivery_window
        if window is not None and window.delivery_window_option_id:
            fields["delivery_window_option_id"] = window.delivery_window_option_id
            fields["delivery_window_start"] = window.start_date.replace(tzinfo=None) if window.start_date else None
            fields["delivery_window_end"] = window.end_date.replace(tzinfo=None) if window.end_date else None
        self.store.save_split(split, **fields)
        self._log("Transport for %s already confirmed remotely; adopted", split.remote_shipment_id)
        return True

    def _list_transport(self, plan_id: str, placement_option_id: str, sid: str) -> list[TransportationOption]:
        return self._remote(
            f"list transportation options for {sid}",
            lambda: self.client.list_transportation_options(
                plan_id,
                shipment_id=sid,
                placement_option_id=placement_option_id,
            ),
        )

    def _transport_candidates(self, plan_id: str, placement_option_id: str, split: InboundShipmentSplit):
        sid = split.remote_shipment_id
        wanted = self.ctx.policy.requested_transport(sid)
        if wanted:
            listed = self._list_transport(plan_id, placement_option_id, sid)
            if any(option.transportation_option_id == wanted for option in listed):
                return listed
        operation_id = self._remote(
            f"generate transportation options for {sid}",
            lambda: self.client.generate_transportation_options(
                plan_id,
                shipment_id=sid,
                placement_option_id=placement_option_id,
            ),
        )
        outcome = self._await(
            operation_id,
            f"generate transportation options for {sid}",
            raise_on_failure=False,
        )
        if outcome.failed:
            logger.warning(
                "[%s] transportation generation failed for split=%s problems=%s",
                self.shipment.id,
                sid,
                outcome.problem_summary(),
            )
            return []
        return self._list_transport(plan_id, placement_option_id, sid)

    def _list_windows(self, plan_id: str, sid: str) -> list[DeliveryWindowOption]:
        return self._remote(
            f"list delivery windows for {sid}",
            lambda: self.client.list_delivery_window_options(plan_id, sid),
        )

    def _window_candidates(self, plan_id: str, sid: str) -> list[DeliveryWindowOption] | None:
        wanted = self.ctx.policy.requested_window(sid)
        if wanted:
            listed = self._list_windows(plan_id, sid)
            if any(window.delivery_window_option_id == wanted for window in listed):
                return listed
        operation_id = self._remote(
            f"generate delivery windows for {sid}",
            lambda: self.client.generate_delivery_window_options(plan_id, sid),
        )
        outcome = self._await(operation_id, f"generate delivery windows for {sid}", raise_on_failure=False)
        if outcome.failed:
            logger.warning(
                "[%s] delivery window generation failed for split=%s problems=%s",
                self.shipment.id,
                sid,
                outcome.problem_summary(),
            )
            return None
        return self._list_windows(plan_id, sid)

    def _confirm_window(self, plan_id: str, split: InboundShipmentSplit):
        sid = split.remote_shipment_id
        windows = self._window_candidates(plan_id, sid)
        if windows is None:
            return None
        window = self.ctx.policy.choose_delivery_window(sid, windows)
        if window is None:
            return None
        operation_id = self._remote(
            f"confirm delivery window for {sid}",
            lambda: self.client.confirm_delivery_window_options(plan_id, sid, window.delivery_window_option_id),
            tolerate_confirmed=True,
        )
        if operation_id:
            self._await(operation_id, f"confirm delivery window for {sid}", tolerate_confirmed=True)
        return window

    def run(self) -> PhaseResult:
        if not has_reached(self.shipment.workflow_phase, WorkflowPhase.PLACEMENT_CONFIRMED):
            raise InboundPreconditionError(
                "Placement is not confirmed yet. Run confirm_placement first.",
                workflow_phase=self.shipment.workflow_phase,
            )
        plan_id = self._require_plan()
        placement_option_id = self.shipment.placement_option_id
        if not placement_option_id:
            raise InboundPreconditionError(
                "No placement option recorded for this shipment.",
                missing_fields=["placement_option_id"],
            )

        if not self.store.splits(self.shipment):
            raise InboundPreconditionError("No shipment splits found. Run confirm_placement first.")
        pending = self.store.pending_splits(self.shipment)
        if not pending:
            if not has_reached(self.shipment.workflow_phase, WorkflowPhase.TRANSPORT_CONFIRMED):
                self._finalize()
            return PhaseResult(self.phase, skipped=True, payload={"transport_selections": []})

        adopted: list[str] = []
        skipped: dict[str, str] = {}
        awaiting: list[dict[str, Any]] = []
        chosen: list[tuple[InboundShipmentSplit, TransportationOption]] = []

        for split in pending:
            sid = split.remote_shipment_id
            self._log("Processing transport for split %s", sid)
            if self._adopt_remote_selection(plan_id, split):
                adopted.append(sid)
                continue
            options = self._transport_candidates(plan_id, placement_option_id, split)
            choice = self.ctx.policy.choose_transport(sid, options)
            if choice is AWAIT_CALLER:
                recommended = cheapest_partnered_transport(options, sid)
                awaiting.append(
                    {
                        **describe_split(split),
                        "transportation_options": [describe_transport(o) for o in options if o.shipment_id == sid],
                        "recommended_transportation_option_id": (
                            recommended.transportation_option_id if recommended else None
                        ),
                    }
                )
                continue
            if choice is None:
                logger.warning("[%s] No transportation option available for %s", self.shipment.id, sid)
                skipped[sid] = "no transportation option"
                continue
            chosen.append((split, choice))

        if awaiting:
            return PhaseResult(
                self.phase,
                awaiting_selection=True,
                payload={"splits": awaiting, "adopted": adopted},
            )

        selections: list[dict[str, str]] = []
        confirmed_splits: list[InboundShipmentSplit] = []
        for split, transport in chosen:
            sid = split.remote_shipment_id
            window = self._confirm_window(plan_id, split)
            if window is None:
                logger.warning("[%s] No delivery window available for %s", self.shipment.id, sid)
                skipped[sid] = "no delivery window"
                continue
            self.store.save_split(
                split,
                transportation_option_id=transport.transportation_option_id,
                delivery_window_option_id=window.delivery_window_option_id,
                delivery_window_start=window.start_date.replace(tzinfo=None),
                delivery_window_end=window.end_date.replace(tzinfo=None),
                carrier=_carrier_name(transport),
            )
            selections.append(
                {"shipment_id": sid, "transportation_option_id": transport.transportation_option_id}
            )
            confirmed_splits.append(split)
            self._log(
                "Transport %s and window %s selected for %s",
                transport.transportation_option_id,
                window.delivery_window_option_id,
                sid,
            )

        if not selections and not adopted:
            message = "No transportation options available for any shipment split."
            self.store.record_error(self.shipment, message)
            raise InboundNoOptionError(
                message,
                skipped_splits=skipped,
                hint="Use the interactive transport selection to choose carriers manually.",
            )

        operation_id = None
        if selections:
            operation_id = self._remote(
                "confirm transportation options",
                lambda: self.client.confirm_transportation_options(plan_id, selections),
                tolerate_confirmed=True,
            )
            if operation_id:
                self._await(operation_id, "confirm transportation options", tolerate_confirmed=True)
            self.store.mark_splits(confirmed_splits, SPLIT_TRANSPORT_CONFIRMED)
            self._log("Transportation confirmed for %s shipments", len(selections))

        self._finalize()
        return PhaseResult(
            self.phase,
            payload={
                "transport_selections": selections,
                "adopted_splits": adopted,
                "skipped_splits": skipped,
                "operation_id": operation_id,
            },
        )


class LabelsPhase(PhaseExecutor):
    phase = "labels"

    def run(
        self,
        *,
        split_id: str | None = None,
        page_type: str = "PACKAGE_LABEL",
        label_type: str = "PLAIN_PAPER",
        package_ids: list[str] | None = None,
    ) -> PhaseResult:
        page_type = (page_type or "PACKAGE_LABEL").upper()
        label_type = (label_type or "PLAIN_PAPER").upper()
        if page_type not in PAGE_TYPES:
            raise InboundPreconditionError(f"Unsupported page type {page_type}.", accepted_values=sorted(PAGE_TYPES))
        if label_type not in LABEL_TYPES:
            raise InboundPreconditionError(
                f"Unsupported label type {label_type}.", accepted_values=sorted(LABEL_TYPES)
            )
        if not self.shipment.inbound_plan_id:
            raise InboundPreconditionError("Shipment has not been submitted yet.")

        splits = self.store.splits(self.shipment)
        if split_id:
            splits = [split for split in splits if split.remote_shipment_id == split_id]
        if not splits:
            raise InboundWorkflowError(
                code="SPLIT_NOT_FOUND",
                message=f"Shipment split {split_id} not found" if split_id else "No shipment splits found",
                status_code=404,
            )

        number_of_packages = None if package_ids else len(self.shipment.boxes) or None
        labels: list[dict[str, Any]] = []
        for split in splits:
            sid = split.remote_shipment_id
            if split.status not in LABEL_ELIGIBLE_SPLIT_STATUSES:
                labels.append(
                    {
                        "remote_shipment_id": sid,
                        "error": f"Labels not available while split is '{split.status}'.",
                    }
                )
                continue
            try:
                download_url = self.client.get_labels(
                    sid,
                    page_type=page_type,
                    label_type=label_type,
                    number_of_packages=number_of_packages,
                    package_ids=package_ids,
                )
            except FbaInboundApiError as exc:
                logger.warning(
                    "[%s] label retrieval failed split=%s error=%s",
                    self.shipment.id,
                    sid,
                    exc.message,
                )
                labels.append({"remote_shipment_id": sid, "error": exc.message or "Failed to get labels"})
                continue

            fields: dict[str, Any] = {"label_url": download_url}
            if split.status == SPLIT_TRANSPORT_CONFIRMED:
                fields["status"] = SPLIT_LABELS_READY
            self.store.save_split(split, **fields)
            flow_info(logger, "[%s] Labels ready for %s", self.shipment.id, sid, category="labels")
            labels.append(
                {
                    "remote_shipment_id": sid,
                    "destination_fc": split.destination_fc,
                    "download_url": download_url,
                    "page_type": page_type,
                    "label_type": label_type,
                }
            )

        return PhaseResult(
            self.phase,
            payload={
                "labels": labels,
                "all_ready": all("download_url" in row for row in labels),
                "page_type": page_type,
                "label_type": label_type,
            },
        )
