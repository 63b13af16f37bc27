from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models.shipment import ShipmentBox, ShipmentBoxItem
from app.services.fba_inbound_client import FbaInboundApiError
from app.services.inbound_errors import (
    InboundNoOptionError,
    InboundOperationPending,
    InboundPreconditionError,
    InboundRemoteRejection,
)
from app.services.inbound_operation_poller import OperationPoller
from app.services.inbound_phase_executors import assign_boxes_to_groups
from app.services.inbound_workflow_orchestrator import InboundWorkflowOrchestrator

from conftest import FakeInboundApi


def _orchestrator(db_session, fake, fake_clock):
    poller = OperationPoller(
        fake,
        timeout_seconds=10,
        interval_seconds=1,
        backoff=2.0,
        max_interval_seconds=4,
        clock=fake_clock.monotonic,
        sleep=fake_clock.sleep,
    )
    return InboundWorkflowOrchestrator(db_session, client=fake, poller=poller)


# ----------------------------------------------------------------------
# pre-flight validation
# ----------------------------------------------------------------------


def test_missing_warehouse_phone_is_rejected_before_any_remote_call(orchestrator, fake_api, make_shipment):
    shipment = make_shipment(warehouse_fields={"contact_phone": None})

    with pytest.raises(InboundPreconditionError) as exc_info:
        orchestrator.run(shipment.id, "create_plan")

    assert exc_info.value.details["missing_fields"] == ["contact phone"]
    assert fake_api.calls == []


def test_unassigned_quantity_is_rejected(orchestrator, fake_api, make_shipment):
    shipment = make_shipment(items={"SKU-1": 10}, boxes=[{"SKU-1": 8}])

    with pytest.raises(InboundPreconditionError) as exc_info:
        orchestrator.run(shipment.id)

    assert exc_info.value.message == "Item SKU-1: 8 assigned to boxes, but 10 required"
    assert fake_api.calls == []


def test_missing_box_dimensions_are_rejected(orchestrator, fake_api, make_shipment):
    shipment = make_shipment(dimensions=None)

    with pytest.raises(InboundPreconditionError) as exc_info:
        orchestrator.run(shipment.id)

    assert exc_info.value.details["boxes"] == [1]
    assert fake_api.calls == []


def test_shipment_without_filled_boxes_is_rejected(orchestrator, fake_api, make_shipment):
    shipment = make_shipment(boxes=[{}])

    with pytest.raises(InboundPreconditionError) as exc_info:
        orchestrator.run(shipment.id)

    assert exc_info.value.details["missing_fields"] == ["boxes"]
    assert fake_api.calls == []


# ----------------------------------------------------------------------
# plan
# ----------------------------------------------------------------------


def test_create_plan_sends_items_and_source_address(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()

    result = orchestrator.run(shipment.id, "create_plan")

    assert result["workflow_phase"] == "plan_created"
    assert result["inbound_plan_id"] == "plan-1"
    payload = fake_api.plan_payload
    assert payload["marketplace_id"] == "ATVPDKIKX0DER"
    assert payload["items"] == [
        {"msku": "SKU-1", "quantity": 10, "prepOwner": "NONE", "labelOwner": "SELLER"}
    ]
    assert payload["source_address"]["addressLine1"] == "100 Dock Street"
    assert payload["source_address"]["stateOrProvinceCode"] == "OH"
    assert payload["contact_information"]["email"] == "dock@example.com"
    assert payload["name"].startswith("SHP-1001 - ")


def test_create_plan_is_idempotent(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()

    orchestrator.run(shipment.id, "create_plan")
    second = orchestrator.run(shipment.id, "create_plan")

    assert fake_api.count("create_inbound_plan") == 1
    assert second["phases"][0]["skipped"] is True
    assert second["inbound_plan_id"] == "plan-1"


def test_plan_rejection_surfaces_sku_and_accepted_values(orchestrator, fake_api, make_shipment, db_session):
    shipment = make_shipment()
    fake_api.op_results["create_inbound_plan"] = "FAILED"
    fake_api.op_problems["create_inbound_plan"] = [
        {
            "code": "InvalidInput",
            "message": "ERROR: SKU-1 does not require prepOwner but NONE was assigned. Accepted values: [AMAZON, SELLER]",
            "severity": "ERROR",
        }
    ]

    with pytest.raises(InboundRemoteRejection) as exc_info:
        orchestrator.run(shipment.id, "create_plan")

    detail = exc_info.value.to_detail()
    assert detail["code"] == "REMOTE_REJECTED"
    assert detail["problem_sku"] == "SKU-1"
    assert detail["accepted_values"] == ["AMAZON", "SELLER"]
    assert detail["operation_id"] == "op-1"

    db_session.expire_all()
    assert shipment.inbound_plan_id is None
    assert shipment.workflow_phase == "none"
    assert "does not require prepOwner" in shipment.workflow_error


def test_plan_poll_timeout_is_distinct_and_retryable(orchestrator, fake_api, make_shipment, db_session):
    shipment = make_shipment()
    fake_api.op_results["create_inbound_plan"] = "IN_PROGRESS"

    with pytest.raises(InboundOperationPending) as exc_info:
        orchestrator.run(shipment.id, "create_plan")

    assert exc_info.value.status_code == 504
    db_session.expire_all()
    assert shipment.inbound_plan_id == "plan-1"
    assert shipment.workflow_phase == "none"
    assert shipment.last_operation_id == "op-1"
    assert shipment.run_lease_token is None

    fake_api.operations["op-1"]["operationStatus"] = "SUCCESS"
    result = orchestrator.run(shipment.id, "create_plan")

    assert fake_api.count("create_inbound_plan") == 1
    assert result["workflow_phase"] == "plan_created"
    assert result["inbound_plan_id"] == "plan-1"
    assert result["phases"][0]["resumed"] is True


def test_resumed_plan_that_failed_is_recreated(orchestrator, fake_api, make_shipment, db_session):
    shipment = make_shipment()
    fake_api.op_results["create_inbound_plan"] = "IN_PROGRESS"
    with pytest.raises(InboundOperationPending):
        orchestrator.run(shipment.id, "create_plan")

    fake_api.operations["op-1"]["operationStatus"] = "FAILED"
    fake_api.operations["op-1"]["operationProblems"] = [{"code": "InvalidInput", "message": "Plan expired"}]
    with pytest.raises(InboundRemoteRejection):
        orchestrator.run(shipment.id, "create_plan")

    db_session.expire_all()
    assert shipment.inbound_plan_id is None

    fake_api.op_results.pop("create_inbound_plan")
    result = orchestrator.run(shipment.id, "create_plan")

    assert fake_api.count("create_inbound_plan") == 2
    assert result["workflow_phase"] == "plan_created"


def test_synchronous_plan_rejection_maps_to_remote_rejection(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()
    fake_api.reject["create_inbound_plan"] = FbaInboundApiError("InvalidInput: bad postal code", status_code=400)

    with pytest.raises(InboundRemoteRejection) as exc_info:
        orchestrator.run(shipment.id, "create_plan")

    assert exc_info.value.details["remote_message"] == "InvalidInput: bad postal code"


# ----------------------------------------------------------------------
# packing
# ----------------------------------------------------------------------


def test_packing_runs_after_plan_and_resumes_from_marker(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()

    orchestrator.run(shipment.id, "create_plan")
    packed = orchestrator.run(shipment.id, "set_packing")
    assert packed["workflow_phase"] == "packing_set"
    assert packed["packing_option_id"] == "pack-1"

    result = orchestrator.run(shipment.id, "all")

    assert fake_api.count("create_inbound_plan") == 1
    assert fake_api.count("set_packing_information") == 1
    assert fake_api.count("confirm_packing_option") == 1
    assert result["workflow_phase"] == "transport_confirmed"
    assert [phase["skipped"] for phase in result["phases"]] == [True, True, False, False]


def test_packing_payload_uses_box_contents(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()

    orchestrator.run(shipment.id, "create_plan")
    orchestrator.run(shipment.id, "set_packing")

    grouping = fake_api.package_groupings[0]
    assert grouping["packingGroupId"] == "pg-1"
    box = grouping["boxes"][0]
    assert box["weight"] == {"unit": "LB", "value": 5.0}
    assert box["dimensions"] == {"unitOfMeasurement": "IN", "length": 12.0, "width": 10.0, "height": 8.0}
    assert box["contentInformationSource"] == "BOX_CONTENT_PROVIDED"
    assert box["items"] == [{"msku": "SKU-1", "quantity": 10, "prepOwner": "NONE", "labelOwner": "SELLER"}]


def test_packing_adopts_already_accepted_option(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()
    orchestrator.run(shipment.id, "create_plan")
    fake_api.packing_generated = True
    fake_api.packing_options[0]["status"] = "ACCEPTED"

    orchestrator.run(shipment.id, "set_packing")

    assert fake_api.count("generate_packing_options") == 0
    assert fake_api.count("confirm_packing_option") == 0
    assert fake_api.count("set_packing_information") == 1


def test_every_box_lands_in_exactly_one_packing_group(db_session, make_shipment, fake_clock):
    fake = FakeInboundApi(skus=("SKU-A", "SKU-B"))
    fake.packing_offer[0]["packingGroups"] = ["pg-1", "pg-2"]
    fake.packing_group_items = {
        "pg-1": [{"msku": "SKU-A", "quantity": 6}],
        "pg-2": [{"msku": "SKU-B", "quantity": 4}],
    }
    shipment = make_shipment(
        items={"SKU-A": 6, "SKU-B": 4},
        boxes=[{"SKU-A": 3}, {"SKU-A": 3}, {"SKU-B": 4}],
    )
    orchestrator = _orchestrator(db_session, fake, fake_clock)

    result = orchestrator.run(shipment.id, "create_plan")
    result = orchestrator.run(shipment.id, "set_packing")

    groups = {row["packingGroupId"]: row["boxes"] for row in fake.package_groupings}
    assert [len(groups["pg-1"]), len(groups["pg-2"])] == [2, 1]
    assert sum(len(boxes) for boxes in groups.values()) == 3
    assert result["phases"][0]["packing_groups"] == {"pg-1": [1, 2], "pg-2": [3]}


def test_assign_boxes_falls_back_to_first_group():
    box = ShipmentBox(box_number=1)
    box.items.append(ShipmentBoxItem(sku="SKU-Z", quantity=2))
    other = ShipmentBox(box_number=2)
    other.items.append(ShipmentBoxItem(sku="SKU-B", quantity=1))

    assignment = assign_boxes_to_groups([box, other], {"pg-1": {"SKU-A"}, "pg-2": {"SKU-B"}})

    assert [b.box_number for b in assignment["pg-1"]] == [1]
    assert [b.box_number for b in assignment["pg-2"]] == [2]
    assert assign_boxes_to_groups([box], {}) == {}


# ----------------------------------------------------------------------
# placement / transport
# ----------------------------------------------------------------------


def test_placement_poll_timeout_leaves_marker_and_resumes(orchestrator, fake_api, make_shipment, db_session):
    shipment = make_shipment()
    orchestrator.run(shipment.id, "create_plan")
    orchestrator.run(shipment.id, "set_packing")
    fake_api.op_results["generate_placement_options"] = "IN_PROGRESS"

    with pytest.raises(InboundOperationPending):
        orchestrator.run(shipment.id, "confirm_placement")

    db_session.expire_all()
    assert shipment.workflow_phase == "packing_set"

    fake_api.op_results.pop("generate_placement_options")
    result = orchestrator.run(shipment.id, "confirm_placement")

    assert result["workflow_phase"] == "placement_confirmed"
    assert result["placement_option_id"] == "pl-cheap"
    assert fake_api.count("generate_placement_options") == 1


def test_expired_placement_listing_is_regenerated(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()
    orchestrator.run(shipment.id, "create_plan")
    orchestrator.run(shipment.id, "set_packing")
    expired_at = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
    fake_api.placement_generated = True
    fake_api.placement_options = [
        {"placementOptionId": "pl-stale", "fees": [], "shipmentIds": ["sh-1"], "status": "OFFERED", "expiration": expired_at},
        {"placementOptionId": "pl-gone", "fees": [], "shipmentIds": ["sh-1"], "status": "EXPIRED"},
    ]

    result = orchestrator.run(shipment.id, "confirm_placement")

    assert fake_api.count("generate_placement_options") == 1
    assert result["placement_option_id"] == "pl-cheap"


def test_expired_packing_listing_is_regenerated(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()
    orchestrator.run(shipment.id, "create_plan")
    fake_api.packing_generated = True
    fake_api.packing_options = [
        {
            "packingOptionId": "pack-old",
            "packingGroups": ["pg-1"],
            "status": "OFFERED",
            "expiration": (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat(),
        }
    ]

    result = orchestrator.run(shipment.id, "set_packing")

    assert fake_api.count("generate_packing_options") == 1
    assert result["packing_option_id"] == "pack-1"


def test_partial_transport_failure_confirms_the_rest(db_session, make_shipment, fake_clock):
    fake = FakeInboundApi(split_ids=("sh-1", "sh-2", "sh-3"))
    fake.transport_generation_failures = {"sh-2"}
    shipment = make_shipment()
    orchestrator = _orchestrator(db_session, fake, fake_clock)

    result = orchestrator.run(shipment.id)

    assert result["status"] == "submitted"
    assert result["workflow_phase"] == "transport_confirmed"
    statuses = {split["remote_shipment_id"]: split["status"] for split in result["splits"]}
    assert statuses == {"sh-1": "transport_confirmed", "sh-2": "pending", "sh-3": "transport_confirmed"}
    transport = result["phases"][-1]
    assert transport["skipped_splits"] == {"sh-2": "no transportation option"}
    assert [row["shipment_id"] for row in fake.transport_selections] == ["sh-1", "sh-3"]

    db_session.expire_all()
    first_submitted_at = shipment.submitted_at

    fake.transport_generation_failures.clear()
    retried = orchestrator.run(shipment.id, "confirm_transport")

    statuses = {split["remote_shipment_id"]: split["status"] for split in retried["splits"]}
    assert set(statuses.values()) == {"transport_confirmed"}
    assert [row["shipment_id"] for row in fake.transport_selections] == ["sh-1", "sh-3", "sh-2"]
    db_session.expire_all()
    assert shipment.submitted_at == first_submitted_at


def test_no_usable_transport_fails_with_interactive_hint(orchestrator, fake_api, make_shipment, db_session):
    shipment = make_shipment()
    fake_api.transport_generation_failures = {"sh-1"}

    with pytest.raises(InboundNoOptionError) as exc_info:
        orchestrator.run(shipment.id)

    assert exc_info.value.status_code == 409
    assert "interactive" in exc_info.value.details["hint"]
    db_session.expire_all()
    assert shipment.workflow_phase == "placement_confirmed"
    assert shipment.workflow_error == "No transportation options available for any shipment split."


def test_transport_confirmed_remotely_is_adopted(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()
    fake_api.shipments["sh-1"]["selectedTransportationOptionId"] = "sh-1-ltl"
    fake_api.shipments["sh-1"]["selectedDeliveryWindow"] = {
        "deliveryWindowOptionId": "sh-1-w2",
        "startDate": "2024-05-03T00:00:00Z",
        "endDate": "2024-05-10T00:00:00Z",
    }

    result = orchestrator.run(shipment.id)

    assert fake_api.count("confirm_transportation_options") == 0
    assert fake_api.count("generate_transportation_options") == 0
    split = result["splits"][0]
    assert split["transportation_option_id"] == "sh-1-ltl"
    assert split["delivery_window_option_id"] == "sh-1-w2"
    assert split["status"] == "transport_confirmed"
    assert result["phases"][-1]["adopted_splits"] == ["sh-1"]


# ----------------------------------------------------------------------
# labels
# ----------------------------------------------------------------------


def test_label_failure_on_one_split_does_not_block_others(db_session, make_shipment, fake_clock):
    fake = FakeInboundApi(split_ids=("sh-1", "sh-2"))
    fake.label_failures = {"sh-2"}
    shipment = make_shipment()
    orchestrator = _orchestrator(db_session, fake, fake_clock)
    orchestrator.run(shipment.id)

    result = orchestrator.get_labels(shipment.id, page_type="package_label", label_type="thermal")

    by_split = {row["remote_shipment_id"]: row for row in result["labels"]}
    assert by_split["sh-1"]["download_url"] == "https://labels.example.com/sh-1.pdf"
    assert by_split["sh-1"]["label_type"] == "THERMAL"
    assert "Labels unavailable" in by_split["sh-2"]["error"]
    assert result["all_ready"] is False

    label_calls = [args for name, args in fake.calls if name == "get_labels"]
    assert label_calls[0][1]["number_of_packages"] == 1

    statuses = {split.remote_shipment_id: split.status for split in shipment.splits}
    assert statuses == {"sh-1": "labels_ready", "sh-2": "transport_confirmed"}


def test_labels_for_single_split_and_pending_split(orchestrator, fake_api, make_shipment):
    shipment = make_shipment()
    orchestrator.run(shipment.id, "create_plan")
    orchestrator.run(shipment.id, "set_packing")
    orchestrator.run(shipment.id, "confirm_placement")

    result = orchestrator.get_labels(shipment.id, split_id="sh-1")

    assert result["labels"][0]["error"] == "Labels not available while split is 'pending'."
    assert fake_api.count("get_labels") == 0


def test_labels_reject_unknown_page_type(orchestrator, make_shipment):
    shipment = make_shipment()
    orchestrator.run(shipment.id)

    with pytest.raises(InboundPreconditionError):
        orchestrator.get_labels(shipment.id, page_type="POSTER")
