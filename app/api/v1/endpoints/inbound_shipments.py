from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.api.deps.request_identity import get_request_email
from app.core.flow_logging import flow_info
from app.db.session import get_db
from app.schemas.inbound import (
    AmazonStatusResponse,
    InboundWorkflowResponse,
    LabelsRequest,
    LabelsResponse,
    PlacementSelectionRequest,
    TransportSelectionRequest,
)
from app.services.inbound_errors import InboundWorkflowError
from app.services.inbound_status_sync import InboundStatusSync
from app.services.inbound_workflow_orchestrator import STEP_ALL, InboundWorkflowOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


def get_inbound_orchestrator(
    request: Request,
    db: Session = Depends(get_db),
) -> InboundWorkflowOrchestrator:
    return InboundWorkflowOrchestrator(db, actor=get_request_email(request))


def get_inbound_status_sync(db: Session = Depends(get_db)) -> InboundStatusSync:
    return InboundStatusSync(db)


def _raise_workflow_failure(exc: InboundWorkflowError) -> None:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post("/{shipment_id}/submit-to-amazon", response_model=InboundWorkflowResponse)
def submit_to_amazon(
    shipment_id: int,
    request: Request,
    step: str = Query(default=STEP_ALL),
    orchestrator: InboundWorkflowOrchestrator = Depends(get_inbound_orchestrator),
):
    flow_info(
        logger,
        "submit_to_amazon shipment_id=%s step=%s user=%s",
        shipment_id,
        step,
        get_request_email(request),
        category="inbound",
    )
    try:
        return orchestrator.run(shipment_id, step)
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)


@router.post("/{shipment_id}/inbound/placement-options", response_model=InboundWorkflowResponse)
def get_placement_options(
    shipment_id: int,
    orchestrator: InboundWorkflowOrchestrator = Depends(get_inbound_orchestrator),
):
    try:
        return orchestrator.get_placement_options(shipment_id)
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)


@router.post("/{shipment_id}/inbound/placement-selection", response_model=InboundWorkflowResponse)
def select_placement(
    shipment_id: int,
    payload: PlacementSelectionRequest,
    request: Request,
    orchestrator: InboundWorkflowOrchestrator = Depends(get_inbound_orchestrator),
):
    flow_info(
        logger,
        "placement_selection shipment_id=%s option=%s user=%s",
        shipment_id,
        payload.placement_option_id,
        get_request_email(request),
        category="inbound",
    )
    try:
        return orchestrator.select_placement(shipment_id, payload.placement_option_id)
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)


@router.post("/{shipment_id}/inbound/transport-selection", response_model=InboundWorkflowResponse)
def select_transport(
    shipment_id: int,
    payload: TransportSelectionRequest,
    request: Request,
    orchestrator: InboundWorkflowOrchestrator = Depends(get_inbound_orchestrator),
):
    flow_info(
        logger,
        "transport_selection shipment_id=%s splits=%s user=%s",
        shipment_id,
        len(payload.selections),
        get_request_email(request),
        category="inbound",
    )
    try:
        return orchestrator.confirm_transport_interactive(
            shipment_id,
            [row.model_dump() for row in payload.selections],
        )
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)


@router.get("/{shipment_id}/labels", response_model=LabelsResponse)
def get_labels(
    shipment_id: int,
    split_id: str | None = Query(default=None),
    page_type: str = Query(default="PACKAGE_LABEL"),
    label_type: str = Query(default="PLAIN_PAPER"),
    orchestrator: InboundWorkflowOrchestrator = Depends(get_inbound_orchestrator),
):
    try:
        return orchestrator.get_labels(
            shipment_id,
            split_id=split_id,
            page_type=page_type,
            label_type=label_type,
        )
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)


@router.post("/{shipment_id}/labels", response_model=LabelsResponse)
def request_labels(
    shipment_id: int,
    payload: LabelsRequest,
    orchestrator: InboundWorkflowOrchestrator = Depends(get_inbound_orchestrator),
):
    try:
        return orchestrator.get_labels(
            shipment_id,
            split_id=payload.split_id,
            page_type=payload.page_type,
            label_type=payload.label_type,
            package_ids=payload.package_ids or None,
        )
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)


@router.get("/{shipment_id}/amazon-status", response_model=AmazonStatusResponse)
def get_amazon_status(
    shipment_id: int,
    status_sync: InboundStatusSync = Depends(get_inbound_status_sync),
):
    try:
        return status_sync.refresh(shipment_id)
    except InboundWorkflowError as exc:
        _raise_workflow_failure(exc)
