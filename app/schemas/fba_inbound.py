"""
Typed views over the fulfillment network's inbound API payloads.

The remote side speaks camelCase JSON; these models accept it as-is
(`model_validate(payload)`) and expose snake_case attributes. Unknown keys are
ignored so new remote fields never break parsing.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RemoteModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class OperationProblem(RemoteModel):
    code: str = ""
    message: str = ""
    details: Optional[str] = None
    severity: Optional[str] = None


class OperationStatus(RemoteModel):
    operation_id: str
    operation_status: str
    operation: Optional[str] = None
    operation_problems: List[OperationProblem] = Field(default_factory=list)


class Money(RemoteModel):
    amount: Decimal = Decimal("0")
    code: Optional[str] = None


class Fee(RemoteModel):
    type: Optional[str] = None
    target: Optional[str] = None
    value: Optional[Money] = None


class PackingOption(RemoteModel):
    packing_option_id: str
    packing_groups: List[str] = Field(default_factory=list)
    status: Optional[str] = None
    expiration: Optional[datetime] = None


class PackingGroupItem(RemoteModel):
    msku: str
    quantity: int = 0


class PlacementOption(RemoteModel):
    placement_option_id: str
    fees: List[Fee] = Field(default_factory=list)
    discounts: List[Fee] = Field(default_factory=list)
    shipment_ids: List[str] = Field(default_factory=list)
    status: Optional[str] = None
    expiration: Optional[datetime] = None


class Carrier(RemoteModel):
    alpha_code: Optional[str] = None
    name: Optional[str] = None


class Quote(RemoteModel):
    price: Optional[Money] = None


class TransportationOption(RemoteModel):
    transportation_option_id: str
    shipment_id: Optional[str] = None
    shipping_mode: Optional[str] = None
    shipping_solution: Optional[str] = None
    carrier: Optional[Carrier] = None
    quote: Optional[Quote] = None


class DeliveryWindowOption(RemoteModel):
    delivery_window_option_id: str
    # Listings are per shipment; the client stamps the id when the payload omits it.
    shipment_id: Optional[str] = None
    start_date: datetime
    end_date: datetime
    availability_type: Optional[str] = None


class SelectedDeliveryWindow(RemoteModel):
    delivery_window_option_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ShipmentDestination(RemoteModel):
    address: Optional[dict] = None
    warehouse_id: Optional[str] = None


class ShipmentDetail(RemoteModel):
    shipment_id: str
    shipment_confirmation_id: Optional[str] = None
    status: Optional[str] = None
    tracking_id: Optional[str] = None
    destination: Optional[ShipmentDestination] = None
    items: List[PackingGroupItem] = Field(default_factory=list)
    selected_transportation_option_id: Optional[str] = None
    selected_delivery_window: Optional[SelectedDeliveryWindow] = None
