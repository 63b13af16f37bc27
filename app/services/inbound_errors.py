from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from app.schemas.fba_inbound import OperationProblem


@dataclass
class InboundWorkflowError(Exception):
    code: str
    message: str
    status_code: int = 400
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_detail(self) -> dict:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.details.items():
            if value is not None:
                detail[key] = value
        return detail


class InboundShipmentNotFound(InboundWorkflowError):
    def __init__(self, shipment_id: int):
        super().__init__(
            code="SHIPMENT_NOT_FOUND",
            message=f"Shipment {shipment_id} not found.",
            status_code=404,
        )


class InboundPreconditionError(InboundWorkflowError):
    """Raised before any remote call; nothing was sent or persisted."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            code="PRECONDITION_FAILED",
            message=message,
            status_code=400,
            details=details,
        )


class InboundRemoteRejection(InboundWorkflowError):
    def __init__(
        self,
        message: str,
        *,
        operation_id: str | None = None,
        problems: Iterable[OperationProblem] | None = None,
        **details: Any,
    ):
        problem_rows = [
            {"code": p.code, "message": p.message, "severity": p.severity}
            for p in (problems or [])
        ]
        super().__init__(
            code="REMOTE_REJECTED",
            message=message,
            status_code=422,
            details={"operation_id": operation_id, "problems": problem_rows or None, **details},
        )


class InboundOperationPending(InboundWorkflowError):
    """The remote operation outlived the poll budget; it may still complete."""

    def __init__(self, operation_id: str, waited_seconds: float):
        super().__init__(
            code="OPERATION_PENDING",
            message=(
                f"Remote operation {operation_id} still pending after "
                f"{waited_seconds:.0f}s. Retry the same step."
            ),
            status_code=504,
            details={"operation_id": operation_id},
        )


class InboundNoOptionError(InboundWorkflowError):
    def __init__(self, message: str, **details: Any):
        super().__init__(
            code="NO_OPTION",
            message=message,
            status_code=409,
            details=details,
        )


class InboundWorkflowConflict(InboundWorkflowError):
    def __init__(self, message: str, **details: Any):
        super().__init__(
            code="WORKFLOW_CONFLICT",
            message=message,
            status_code=409,
            details=details,
        )


_ALREADY_CONFIRMED_MARKERS = (
    "already confirmed",
    "has already been confirmed",
    "cannot be processed",
    "already been accepted",
)


def is_already_confirmed(messages: Iterable[str | None]) -> bool:
    """
    Last-resort classifier for "this was done by an earlier attempt" answers.

    Callers check remote listings first; this only covers the window where a
    previous run's mutation landed remotely but was never persisted locally.
    """
    for message in messages:
        lowered = (message or "").lower()
        if any(marker in lowered for marker in _ALREADY_CONFIRMED_MARKERS):
            return True
    return False


_ACCEPTED_VALUES_RE = re.compile(r"Accepted values:\s*\[([^\]]+)\]", re.IGNORECASE)
_PROBLEM_SKU_RE = re.compile(r"ERROR:\s*(\S+)\s+does not require", re.IGNORECASE)


def parse_rejection_hints(message: str | None) -> dict[str, Any]:
    """Extract the offending SKU and accepted prep/label values from a rejection text."""
    text = message or ""
    accepted_match = _ACCEPTED_VALUES_RE.search(text)
    accepted_values = (
        [value.strip() for value in accepted_match.group(1).split(",") if value.strip()]
        if accepted_match
        else None
    )
    sku_match = _PROBLEM_SKU_RE.search(text)
    hints: dict[str, Any] = {
        "problem_sku": sku_match.group(1) if sku_match else None,
        "accepted_values": accepted_values,
    }
    if accepted_values:
        hints["hint"] = f"Set prep_owner/label_owner to one of: {', '.join(accepted_values)}"
    return hints
