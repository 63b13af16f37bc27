from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


_PAGE_TYPES = {"PACKAGE_LABEL", "BILL_OF_LADING", "PALLET_LABEL"}
_LABEL_TYPES = {"PLAIN_PAPER", "THERMAL"}


def _normalize_choice(value: str, allowed: set[str], field_name: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in allowed:
        raise ValueError(f"{field_name} must be one of {', '.join(sorted(allowed))}.")
    return normalized


class PlacementSelectionRequest(BaseModel):
    placement_option_id: str = Field(min_length=1, max_length=120)

    @field_validator("placement_option_id")
    @classmethod
    def strip_option_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("placement_option_id is required.")
        return value


class TransportSelection(BaseModel):
    shipment_id: str = Field(min_length=1, max_length=120)
    transportation_option_id: str = Field(min_length=1, max_length=120)
    delivery_window_option_id: str | None = Field(default=None, max_length=120)


class TransportSelectionRequest(BaseModel):
    selections: list[TransportSelection] = Field(min_length=1)


class LabelsRequest(BaseModel):
    split_id: str | None = None
    page_type: str = "PACKAGE_LABEL"
    label_type: str = "PLAIN_PAPER"
    package_ids: list[str] | None = None

    @field_validator("page_type")
    @classmethod
    def validate_page_type(cls, value: str) -> str:
        return _normalize_choice(value, _PAGE_TYPES, "page_type")

    @field_validator("label_type")
    @classmethod
    def validate_label_type(cls, value: str) -> str:
        return _normalize_choice(value, _LABEL_TYPES, "label_type")


class InboundSplitView(BaseModel):
    remote_shipment_id: str
    confirmation_id: str | None = None
    destination_fc: str | None = None
    status: str | None = None
    carrier: str | None = None
    transportation_option_id: str | None = None
    delivery_window_option_id: str | None = None
    delivery_window: str | None = None
    label_url: str | None = None


class InboundWorkflowResponse(BaseModel):
    """Shipment progress plus the payload of each phase that ran."""

    model_config = ConfigDict(extra="allow")

    shipment_id: int
    status: str | None = None
    workflow_phase: str
    inbound_plan_id: str | None = None
    packing_option_id: str | None = None
    placement_option_id: str | None = None
    last_operation_id: str | None = None
    workflow_error: str | None = None
    submitted_at: str | None = None
    splits: list[InboundSplitView] = []
    step: str | None = None
    awaiting_selection: bool = False
    phases: list[dict[str, Any]] = []


class LabelView(BaseModel):
    remote_shipment_id: str
    destination_fc: str | None = None
    download_url: str | None = None
    page_type: str | None = None
    label_type: str | None = None
    error: str | None = None


class LabelsResponse(BaseModel):
    shipment_id: int
    labels: list[LabelView]
    all_ready: bool
    page_type: str
    label_type: str


class SplitStatusView(BaseModel):
    remote_shipment_id: str
    remote_status: str | None = None
    status: str | None = None
    tracking_number: str | None = None
    destination_fc: str | None = None
    error: str | None = None


class AmazonStatusResponse(BaseModel):
    shipment_id: int
    status: str | None = None
    splits: list[SplitStatusView]
