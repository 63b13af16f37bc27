from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence

from app.schemas.fba_inbound import (
    DeliveryWindowOption,
    PackingOption,
    PlacementOption,
    TransportationOption,
)

PARTNERED_SMALL_PARCEL_MODE = "GROUND_SMALL_PARCEL"
PARTNERED_CARRIER_SOLUTION = "AMAZON_PARTNERED_CARRIER"
AVAILABLE_WINDOW = "AVAILABLE"
SPENT_OPTION_STATUSES = {"EXPIRED"}

_NO_QUOTE = Decimal("Infinity")


def option_is_live(option: PackingOption | PlacementOption, now: datetime | None = None) -> bool:
    """Still confirmable: not marked expired and, when it carries one, expiration in the future."""
    if (option.status or "").upper() in SPENT_OPTION_STATUSES:
        return False
    if option.expiration is None:
        return True
    expiration = option.expiration
    if expiration.tzinfo is None:
        expiration = expiration.replace(tzinfo=timezone.utc)
    return expiration > (now or datetime.now(timezone.utc))


def placement_total_fee(option: PlacementOption) -> Decimal:
    return sum(
        (fee.value.amount for fee in option.fees if fee.value is not None),
        Decimal("0"),
    )


def cheapest_placement(options: Sequence[PlacementOption]) -> PlacementOption | None:
    """Lowest summed fee; `min` keeps the first of equal totals."""
    if not options:
        return None
    return min(options, key=placement_total_fee)


def is_partnered_small_parcel(option: TransportationOption) -> bool:
    return (
        option.shipping_mode == PARTNERED_SMALL_PARCEL_MODE
        and option.shipping_solution == PARTNERED_CARRIER_SOLUTION
    )


def transport_quote(option: TransportationOption) -> Decimal:
    if option.quote is None or option.quote.price is None:
        return _NO_QUOTE
    return option.quote.price.amount


def cheapest_partnered_transport(
    options: Sequence[TransportationOption],
    shipment_id: str,
) -> TransportationOption | None:
    """
    Cheapest partnered small-parcel quote for the split; when the network
    offers no partnered option, the cheapest of whatever it did offer.
    """
    candidates = [opt for opt in options if opt.shipment_id == shipment_id]
    if not candidates:
        return None
    partnered = [opt for opt in candidates if is_partnered_small_parcel(opt)]
    return min(partnered or candidates, key=transport_quote)


def earliest_delivery_window(
    options: Sequence[DeliveryWindowOption],
    shipment_id: str,
) -> DeliveryWindowOption | None:
    candidates = [opt for opt in options if opt.shipment_id == shipment_id]
    if not candidates:
        return None
    available = [
        opt for opt in candidates if (opt.availability_type or AVAILABLE_WINDOW).upper() == AVAILABLE_WINDOW
    ]
    return min(available or candidates, key=lambda opt: opt.start_date)
