"""
Drives a shipment through the inbound submission phases.

Progress lives on the shipment row (`workflow_phase` plus the remote ids), so
every entry point re-reads it and resumes at the first phase not yet done. A
run lease on the row keeps two runs from interleaving on one shipment.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.orm import Session

from app.core.flow_logging import flow_info
from app.models.shipment import Shipment
from app.services.fba_inbound_client import FbaInboundApiError, FbaInboundClient
from app.services.inbound_errors import (
    InboundNoOptionError,
    InboundPreconditionError,
    InboundRemoteRejection,
    InboundWorkflowError,
)
from app.services.inbound_operation_poller import OperationPoller
from app.services.inbound_option_policy import AutomaticOptionPolicy, InteractiveOptionPolicy
from app.services.inbound_phase_executors import (
    ACCEPTED,
    LabelsPhase,
    PackingPhase,
    PhaseContext,
    PhaseResult,
    PlacementPhase,
    PlanPhase,
    TransportPhase,
    describe_split,
)
from app.services.inbound_shipment_store import InboundShipmentStore
from app.services.inbound_workflow_state import WorkflowPhase, has_reached

logger = logging.getLogger(__name__)

STEP_ALL = "all"
STEP_CREATE_PLAN = "create_plan"
STEP_SET_PACKING = "set_packing"
STEP_CONFIRM_PLACEMENT = "confirm_placement"
STEP_CONFIRM_TRANSPORT = "confirm_transport"

_STEP_EXECUTORS = {
    STEP_CREATE_PLAN: PlanPhase,
    STEP_SET_PACKING: PackingPhase,
    STEP_CONFIRM_PLACEMENT: PlacementPhase,
    STEP_CONFIRM_TRANSPORT: TransportPhase,
}
STEPS = (STEP_ALL, *_STEP_EXECUTORS)


def shipment_summary(store: InboundShipmentStore, shipment: Shipment) -> dict[str, Any]:
    return {
        "shipment_id": shipment.id,
        "status": shipment.status,
        "workflow_phase": shipment.workflow_phase,
        "inbound_plan_id": shipment.inbound_plan_id,
        "packing_option_id": shipment.packing_option_id,
        "placement_option_id": shipment.placement_option_id,
        "last_operation_id": shipment.last_operation_id,
        "workflow_error": shipment.workflow_error,
        "submitted_at": shipment.submitted_at.isoformat() if shipment.submitted_at else None,
        "splits": [describe_split(split) for split in store.splits(shipment)],
    }


class InboundWorkflowOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        client: Any = None,
        poller: OperationPoller | None = None,
        actor: str | None = None,
    ) -> None:
        self.db = db
        self.store = InboundShipmentStore(db, actor=actor)
        self.client = client or FbaInboundClient()
        self.poller = poller or OperationPoller(self.client)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _context(self, policy: Any) -> PhaseContext:
        return PhaseContext(store=self.store, client=self.client, poller=self.poller, policy=policy)

    @contextmanager
    def _run_lease(self, shipment_id: int) -> Iterator[Shipment]:
        token = self.store.acquire_run_lease(shipment_id)
        try:
            yield self.store.load(shipment_id)
        except InboundWorkflowError:
            raise
        except Exception as exc:
            logger.exception("inbound_workflow_unexpected_error shipment_id=%s", shipment_id)
            self._record_unexpected(shipment_id, exc)
            raise
        finally:
            self.store.release_run_lease(shipment_id, token)

    def _record_unexpected(self, shipment_id: int, exc: Exception) -> None:
        try:
            self.db.rollback()
            shipment = self.db.get(Shipment, int(shipment_id))
            if shipment is not None:
                self.store.record_error(shipment, f"Unexpected error: {exc}")
        except Exception:
            logger.exception("inbound_workflow_error_record_failed shipment_id=%s", shipment_id)

    def _recover_placement_option_id(self, shipment: Shipment) -> str:
        """The marker says placement is done but the id was lost; read it back from the remote listing."""
        if shipment.placement_option_id:
            return shipment.placement_option_id
        try:
            options = self.client.list_placement_options(shipment.inbound_plan_id)
        except FbaInboundApiError as exc:
            raise InboundRemoteRejection(
                f"Failed to list placement options: {exc.message}",
                problems=exc.problems,
            ) from exc
        accepted = next((o for o in options if (o.status or "").upper() == ACCEPTED), None)
        if accepted is None:
            raise InboundPreconditionError(
                "Placement is marked confirmed but no accepted placement option was found remotely.",
                workflow_phase=shipment.workflow_phase,
            )
        self.store.update(shipment, placement_option_id=accepted.placement_option_id)
        logger.info(
            "[%s] recovered placement option %s from remote listing",
            shipment.id,
            accepted.placement_option_id,
        )
        return accepted.placement_option_id

    def _response(self, shipment: Shipment, step: str, results: list[PhaseResult]) -> dict[str, Any]:
        return {
            **shipment_summary(self.store, shipment),
            "step": step,
            "awaiting_selection": any(result.awaiting_selection for result in results),
            "phases": [result.to_payload() for result in results],
        }

    # ------------------------------------------------------------------
    # automatic / single step
    # ------------------------------------------------------------------

    def run(self, shipment_id: int, step: str = STEP_ALL) -> dict[str, Any]:
        step = (step or STEP_ALL).strip().lower()
        if step not in STEPS:
            raise InboundPreconditionError(
                f"Unknown step '{step}'.",
                accepted_values=list(STEPS),
            )
        executors = list(_STEP_EXECUTORS.values()) if step == STEP_ALL else [_STEP_EXECUTORS[step]]
        ctx = self._context(AutomaticOptionPolicy())

        with self._run_lease(shipment_id) as shipment:
            flow_info(
                logger,
                "inbound_run_start shipment_id=%s step=%s phase=%s",
                shipment.id,
                step,
                shipment.workflow_phase,
                category="inbound",
            )
            results: list[PhaseResult] = []
            for executor in executors:
                result = executor(ctx, shipment).run()
                results.append(result)
                if result.awaiting_selection:
                    break
            flow_info(
                logger,
                "inbound_run_done shipment_id=%s step=%s phase=%s",
                shipment.id,
                step,
                shipment.workflow_phase,
                category="inbound",
            )
            return self._response(shipment, step, results)

    # ------------------------------------------------------------------
    # interactive
    # ------------------------------------------------------------------

    def get_placement_options(self, shipment_id: int) -> dict[str, Any]:
        """
        Runs plan and packing as needed and returns the placement candidates.
        When placement is already confirmed the answer says to skip ahead to
        transport selection instead.
        """
        with self._run_lease(shipment_id) as shipment:
            if has_reached(shipment.workflow_phase, WorkflowPhase.PLACEMENT_CONFIRMED):
                placement_option_id = self._recover_placement_option_id(shipment)
                return {
                    **shipment_summary(self.store, shipment),
                    "skip_to_transport": True,
                    "placement_option_id": placement_option_id,
                    "placement_options": [],
                }

            ctx = self._context(InteractiveOptionPolicy())
            results = [PlanPhase(ctx, shipment).run(), PackingPhase(ctx, shipment).run()]
            placement = PlacementPhase(ctx, shipment).run()
            results.append(placement)
            return {
                **self._response(shipment, "placement_options", results),
                "skip_to_transport": not placement.awaiting_selection,
                "placement_options": placement.payload.get("placement_options", []),
                "recommended_placement_option_id": placement.payload.get("recommended_placement_option_id"),
            }

    def select_placement(self, shipment_id: int, placement_option_id: str) -> dict[str, Any]:
        """Confirms the caller's placement and returns per-split transport candidates."""
        if not (placement_option_id or "").strip():
            raise InboundPreconditionError(
                "placement_option_id is required.",
                missing_fields=["placement_option_id"],
            )
        with self._run_lease(shipment_id) as shipment:
            ctx = self._context(InteractiveOptionPolicy(placement_option_id=placement_option_id))
            placement = PlacementPhase(ctx, shipment).run()
            if placement.skipped:
                self._recover_placement_option_id(shipment)
                if shipment.placement_option_id != placement_option_id.strip():
                    logger.warning(
                        "[%s] placement %s requested but %s is already confirmed",
                        shipment.id,
                        placement_option_id,
                        shipment.placement_option_id,
                    )

            transport_ctx = self._context(InteractiveOptionPolicy())
            transport = TransportPhase(transport_ctx, shipment).run()
            return {
                **self._response(shipment, "placement_selection", [placement, transport]),
                "placement_option_id": shipment.placement_option_id,
                "transport_options": transport.payload.get("splits", []),
            }

    def confirm_transport_interactive(
        self,
        shipment_id: int,
        selections: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """
        `selections` rows carry `shipment_id`, `transportation_option_id` and
        optionally `delivery_window_option_id`; splits without a row stay pending.
        """
        transport_choices: dict[str, str] = {}
        window_choices: dict[str, str] = {}
        for row in selections or []:
            split_id = (row.get("shipment_id") or "").strip()
            option_id = (row.get("transportation_option_id") or "").strip()
            if not split_id or not option_id:
                continue
            transport_choices[split_id] = option_id
            window_id = (row.get("delivery_window_option_id") or "").strip()
            if window_id:
                window_choices[split_id] = window_id
        if not transport_choices:
            raise InboundPreconditionError(
                "At least one transportation selection is required.",
                missing_fields=["selections"],
            )

        with self._run_lease(shipment_id) as shipment:
            if has_reached(shipment.workflow_phase, WorkflowPhase.PLACEMENT_CONFIRMED):
                self._recover_placement_option_id(shipment)
            ctx = self._context(
                InteractiveOptionPolicy(transport_choices=transport_choices, window_choices=window_choices)
            )
            try:
                result = TransportPhase(ctx, shipment).run()
            except InboundNoOptionError as exc:
                exc.details["requested"] = transport_choices
                raise
            return self._response(shipment, "transport_selection", [result])

    # ------------------------------------------------------------------
    # labels
    # ------------------------------------------------------------------

    def get_labels(
        self,
        shipment_id: int,
        *,
        split_id: str | None = None,
        page_type: str = "PACKAGE_LABEL",
        label_type: str = "PLAIN_PAPER",
        package_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        shipment = self.store.load(shipment_id)
        ctx = self._context(AutomaticOptionPolicy())
        result = LabelsPhase(ctx, shipment).run(
            split_id=split_id,
            page_type=page_type,
            label_type=label_type,
            package_ids=package_ids,
        )
        return {"shipment_id": shipment.id, **result.payload}
