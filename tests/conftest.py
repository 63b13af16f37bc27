from __future__ import annotations

import copy
import os
import sys
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import importlib

fastapi_app = importlib.import_module("app.main").app
from app.db.base import Base
from app.db.session import get_db
from app.models.shipment import Shipment, ShipmentBox, ShipmentBoxItem, ShipmentItem
from app.models.warehouse import Warehouse
from app.schemas.fba_inbound import (
    DeliveryWindowOption,
    OperationStatus,
    PackingGroupItem,
    PackingOption,
    PlacementOption,
    ShipmentDetail,
    TransportationOption,
)
from app.services.fba_inbound_client import FbaInboundApiError
from app.services.inbound_operation_poller import OperationPoller
from app.services.inbound_workflow_orchestrator import InboundWorkflowOrchestrator

# Ensure all models are registered with SQLAlchemy metadata
import app.models  # noqa: F401


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db_session(engine):
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def _override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    with TestClient(fastapi_app) as test_client:
        yield test_client
    fastapi_app.dependency_overrides.clear()


# ----------------------------------------------------------------------
# fulfillment network fake
# ----------------------------------------------------------------------


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _fee(amount: float) -> dict[str, Any]:
    return {"type": "FEE", "target": "Placement Services", "value": {"amount": amount, "code": "USD"}}


class FakeInboundApi:
    """
    In-memory stand-in for FbaInboundClient.

    Operations finish immediately with SUCCESS unless `op_results` maps the
    calling method to "FAILED" or "IN_PROGRESS". `reject` maps a method name to
    an FbaInboundApiError raised synchronously.

    Generating packing or placement options replaces the listing with a fresh
    copy of `packing_offer` / `placement_offer`. With `rotate_option_ids`,
    every transport or delivery window generation hands out new option ids.
    """

    def __init__(self, split_ids: tuple[str, ...] = ("sh-1",), skus: tuple[str, ...] = ("SKU-1",)) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.operations: dict[str, dict[str, Any]] = {}
        self.op_results: dict[str, str] = {}
        self.op_problems: dict[str, list[dict[str, Any]]] = {}
        self.reject: dict[str, FbaInboundApiError] = {}
        self.transport_generation_failures: set[str] = set()
        self.label_failures: set[str] = set()
        self.plan_payload: dict[str, Any] | None = None
        self.package_groupings: list[dict[str, Any]] | None = None
        self.transport_selections: list[dict[str, str]] = []
        self.rotate_option_ids = False
        self.generations: dict[tuple[str, str], int] = {}

        self.packing_generated = False
        self.packing_offer = [{"packingOptionId": "pack-1", "packingGroups": ["pg-1"], "status": "OFFERED"}]
        self.packing_options = copy.deepcopy(self.packing_offer)
        self.packing_group_items = {"pg-1": [{"msku": sku, "quantity": 0} for sku in skus]}

        self.placement_generated = False
        self.placement_offer = [
            {"placementOptionId": "pl-expensive", "fees": [_fee(12.50)], "shipmentIds": list(split_ids), "status": "OFFERED"},
            {"placementOptionId": "pl-cheap", "fees": [_fee(9.00)], "shipmentIds": list(split_ids), "status": "OFFERED"},
            {"placementOptionId": "pl-cheap-2", "fees": [_fee(9.00)], "shipmentIds": list(split_ids), "status": "OFFERED"},
        ]
        self.placement_options = copy.deepcopy(self.placement_offer)

        self.shipments: dict[str, dict[str, Any]] = {}
        self.transport_options: dict[str, list[dict[str, Any]]] = {}
        self.window_options: dict[str, list[dict[str, Any]]] = {}
        for n, sid in enumerate(split_ids, start=1):
            self.shipments[sid] = {
                "shipmentId": sid,
                "shipmentConfirmationId": f"FBA00{n}",
                "status": "WORKING",
                "destination": {
                    "warehouseId": f"FC{n}",
                    "address": {"addressLine1": f"{n} Fulfillment Way", "city": "Reno"},
                },
            }
            self.transport_options[sid] = [
                {
                    "transportationOptionId": f"{sid}-ltl",
                    "shipmentId": sid,
                    "shippingMode": "FREIGHT_LTL",
                    "shippingSolution": "USE_YOUR_OWN_CARRIER",
                    "carrier": {"name": "Own Freight", "alphaCode": "OWNF"},
                    "quote": {"price": {"amount": 11.00, "code": "USD"}},
                },
                {
                    "transportationOptionId": f"{sid}-spd",
                    "shipmentId": sid,
                    "shippingMode": "GROUND_SMALL_PARCEL",
                    "shippingSolution": "AMAZON_PARTNERED_CARRIER",
                    "carrier": {"name": "UPS", "alphaCode": "UPSN"},
                    "quote": {"price": {"amount": 14.00, "code": "USD"}},
                },
            ]
            self.window_options[sid] = [
                {
                    "deliveryWindowOptionId": f"{sid}-w2",
                    "shipmentId": sid,
                    "startDate": "2024-05-03T00:00:00Z",
                    "endDate": "2024-05-10T00:00:00Z",
                    "availabilityType": "AVAILABLE",
                },
                {
                    "deliveryWindowOptionId": f"{sid}-w1",
                    "shipmentId": sid,
                    "startDate": "2024-05-01T00:00:00Z",
                    "endDate": "2024-05-08T00:00:00Z",
                    "availabilityType": "AVAILABLE",
                },
            ]

    # helpers ----------------------------------------------------------

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def count(self, name: str) -> int:
        return self.call_names().count(name)

    def _record(self, name: str, args: Any = None) -> None:
        self.calls.append((name, args))
        if name in self.reject:
            raise self.reject[name]

    def _rotate(self, kind: str, shipment_id: str, rows: list[dict[str, Any]], id_field: str) -> None:
        if not self.rotate_option_ids:
            return
        n = self.generations.get((kind, shipment_id), 0) + 1
        self.generations[(kind, shipment_id)] = n
        for row in rows:
            row[id_field] = f"{row[id_field].split('#')[0]}#{n}"

    def _op(self, name: str, status: str | None = None) -> str:
        operation_id = f"op-{len(self.operations) + 1}"
        self.operations[operation_id] = {
            "operationId": operation_id,
            "operation": name,
            "operationStatus": status or self.op_results.get(name, "SUCCESS"),
            "operationProblems": self.op_problems.get(name, []),
        }
        return operation_id

    # remote surface ---------------------------------------------------

    def get_inbound_operation_status(self, operation_id: str) -> OperationStatus:
        self.calls.append(("get_inbound_operation_status", operation_id))
        return OperationStatus.model_validate(self.operations[operation_id])

    def create_inbound_plan(self, **kwargs) -> tuple[str, str]:
        self._record("create_inbound_plan", kwargs)
        self.plan_payload = kwargs
        return self._op("create_inbound_plan"), "plan-1"

    def generate_packing_options(self, inbound_plan_id: str) -> str:
        self._record("generate_packing_options", inbound_plan_id)
        self.packing_generated = True
        self.packing_options = copy.deepcopy(self.packing_offer)
        return self._op("generate_packing_options")

    def list_packing_options(self, inbound_plan_id: str) -> list[PackingOption]:
        self._record("list_packing_options", inbound_plan_id)
        if not self.packing_generated:
            return []
        return [PackingOption.model_validate(row) for row in self.packing_options]

    def confirm_packing_option(self, inbound_plan_id: str, packing_option_id: str) -> str:
        self._record("confirm_packing_option", packing_option_id)
        for row in self.packing_options:
            if row["packingOptionId"] == packing_option_id:
                row["status"] = "ACCEPTED"
        return self._op("confirm_packing_option")

    def list_packing_group_items(self, inbound_plan_id: str, packing_group_id: str) -> list[PackingGroupItem]:
        self._record("list_packing_group_items", packing_group_id)
        return [PackingGroupItem.model_validate(row) for row in self.packing_group_items.get(packing_group_id, [])]

    def set_packing_information(self, inbound_plan_id: str, package_groupings: list[dict[str, Any]]) -> str:
        self._record("set_packing_information", package_groupings)
        self.package_groupings = package_groupings
        return self._op("set_packing_information")

    def generate_placement_options(self, inbound_plan_id: str) -> str:
        self._record("generate_placement_options", inbound_plan_id)
        self.placement_generated = True
        self.placement_options = copy.deepcopy(self.placement_offer)
        return self._op("generate_placement_options")

    def list_placement_options(self, inbound_plan_id: str) -> list[PlacementOption]:
        self._record("list_placement_options", inbound_plan_id)
        if not self.placement_generated:
            return []
        return [PlacementOption.model_validate(row) for row in self.placement_options]

    def confirm_placement_option(self, inbound_plan_id: str, placement_option_id: str) -> str:
        self._record("confirm_placement_option", placement_option_id)
        if any(row["status"] == "ACCEPTED" for row in self.placement_options):
            raise FbaInboundApiError("Placement option has already been confirmed.", status_code=400)
        for row in self.placement_options:
            if row["placementOptionId"] == placement_option_id:
                row["status"] = "ACCEPTED"
        return self._op("confirm_placement_option")

    def get_shipment(self, inbound_plan_id: str, shipment_id: str) -> ShipmentDetail:
        self._record("get_shipment", shipment_id)
        return ShipmentDetail.model_validate(self.shipments[shipment_id])

    def generate_transportation_options(self, inbound_plan_id: str, *, shipment_id: str, placement_option_id: str, ready_to_ship=None) -> str:
        self._record("generate_transportation_options", shipment_id)
        if shipment_id in self.transport_generation_failures:
            return self._op("generate_transportation_options", status="FAILED")
        self._rotate("transport", shipment_id, self.transport_options.get(shipment_id, []), "transportationOptionId")
        return self._op("generate_transportation_options")

    def list_transportation_options(self, inbound_plan_id: str, *, shipment_id=None, placement_option_id=None) -> list[TransportationOption]:
        self._record("list_transportation_options", shipment_id)
        return [TransportationOption.model_validate(row) for row in self.transport_options.get(shipment_id, [])]

    def confirm_transportation_options(self, inbound_plan_id: str, selections: list[dict[str, str]]) -> str:
        self._record("confirm_transportation_options", selections)
        self.transport_selections.extend(selections)
        for row in selections:
            self.shipments[row["shipment_id"]]["selectedTransportationOptionId"] = row["transportation_option_id"]
        return self._op("confirm_transportation_options")

    def generate_delivery_window_options(self, inbound_plan_id: str, shipment_id: str) -> str:
        self._record("generate_delivery_window_options", shipment_id)
        self._rotate("window", shipment_id, self.window_options.get(shipment_id, []), "deliveryWindowOptionId")
        return self._op("generate_delivery_window_options")

    def list_delivery_window_options(self, inbound_plan_id: str, shipment_id: str) -> list[DeliveryWindowOption]:
        self._record("list_delivery_window_options", shipment_id)
        return [DeliveryWindowOption.model_validate(row) for row in self.window_options.get(shipment_id, [])]

    def confirm_delivery_window_options(self, inbound_plan_id: str, shipment_id: str, delivery_window_option_id: str) -> str:
        self._record("confirm_delivery_window_options", (shipment_id, delivery_window_option_id))
        window = next(
            row for row in self.window_options[shipment_id] if row["deliveryWindowOptionId"] == delivery_window_option_id
        )
        self.shipments[shipment_id]["selectedDeliveryWindow"] = {
            "deliveryWindowOptionId": delivery_window_option_id,
            "startDate": window["startDate"],
            "endDate": window["endDate"],
        }
        return self._op("confirm_delivery_window_options")

    def get_labels(self, shipment_id: str, **kwargs) -> str:
        self._record("get_labels", (shipment_id, kwargs))
        if shipment_id in self.label_failures:
            raise FbaInboundApiError(f"Labels unavailable for {shipment_id}", status_code=400)
        return f"https://labels.example.com/{shipment_id}.pdf"


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_api():
    return FakeInboundApi()


@pytest.fixture
def poller(fake_api, fake_clock):
    return OperationPoller(
        fake_api,
        timeout_seconds=10,
        interval_seconds=1,
        backoff=2.0,
        max_interval_seconds=4,
        clock=fake_clock.monotonic,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def orchestrator(db_session, fake_api, poller):
    return InboundWorkflowOrchestrator(db_session, client=fake_api, poller=poller)


def build_shipment(
    db,
    *,
    items: dict[str, int] | None = None,
    boxes: list[dict[str, int]] | None = None,
    warehouse_fields: dict[str, Any] | None = None,
    dimensions: tuple | None = (12, 10, 8, 5),
    shipment_number: str = "SHP-1001",
) -> Shipment:
    items = {"SKU-1": 10} if items is None else items
    boxes = [dict(items)] if boxes is None else boxes
    fields = {
        "name": f"Main Warehouse {shipment_number}",
        "address_line1": "100 Dock Street",
        "city": "Columbus",
        "region": "OH",
        "postal_code": "43215",
        "country_code": "US",
        "contact_name": "Dock Lead",
        "contact_phone": "555-0100",
        "contact_email": "dock@example.com",
    }
    fields.update(warehouse_fields or {})
    warehouse = Warehouse(**fields)
    db.add(warehouse)
    db.flush()

    shipment = Shipment(
        shipment_number=shipment_number,
        source_warehouse_id=warehouse.id,
        destination_hint="US",
    )
    for sku, qty in items.items():
        shipment.items.append(ShipmentItem(sku=sku, required_qty=qty))
    for number, contents in enumerate(boxes, start=1):
        length, width, height, weight = dimensions if dimensions else (None, None, None, None)
        box = ShipmentBox(
            box_number=number,
            length_in=length,
            width_in=width,
            height_in=height,
            weight_lb=weight,
        )
        for sku, qty in contents.items():
            box.items.append(ShipmentBoxItem(sku=sku, quantity=qty))
        shipment.boxes.append(box)
    db.add(shipment)
    db.commit()
    return shipment


@pytest.fixture
def make_shipment(db_session):
    def _make(**kwargs) -> Shipment:
        return build_shipment(db_session, **kwargs)

    return _make
