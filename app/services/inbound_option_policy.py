"""
Decision step for the inbound phases.

Phases ask the policy to pick among freshly listed candidates. The automatic
policy applies the built-in selectors. The interactive policy answers with the
caller's earlier choice, or with AWAIT_CALLER when the candidates must go back
to the caller first.
"""

from __future__ import annotations

from typing import Sequence

from app.schemas.fba_inbound import (
    DeliveryWindowOption,
    PlacementOption,
    TransportationOption,
)
from app.services.inbound_errors import InboundPreconditionError
from app.services.inbound_option_selectors import (
    cheapest_partnered_transport,
    cheapest_placement,
    earliest_delivery_window,
)


class _AwaitCaller:
    def __repr__(self) -> str:
        return "AWAIT_CALLER"


AWAIT_CALLER = _AwaitCaller()


class AutomaticOptionPolicy:
    def requested_transport(self, shipment_id: str) -> str | None:
        return None

    def requested_window(self, shipment_id: str) -> str | None:
        return None

    def choose_placement(self, options: Sequence[PlacementOption]):
        return cheapest_placement(options)

    def choose_transport(self, shipment_id: str, options: Sequence[TransportationOption]):
        return cheapest_partnered_transport(options, shipment_id)

    def choose_delivery_window(self, shipment_id: str, options: Sequence[DeliveryWindowOption]):
        return earliest_delivery_window(options, shipment_id)


class InteractiveOptionPolicy:
    """
    `transport_choices=None` means "nothing chosen yet": every split awaits the
    caller. A dict (even empty) means the caller has answered; splits missing
    from it are left pending. Delivery windows fall back to the earliest one.

    `requested_*` expose the caller's ids so a phase can reuse a listing that
    still offers them; regenerating would hand out new ids.
    """

    def __init__(
        self,
        *,
        placement_option_id: str | None = None,
        transport_choices: dict[str, str] | None = None,
        window_choices: dict[str, str] | None = None,
    ) -> None:
        self.placement_option_id = (placement_option_id or "").strip() or None
        self.transport_choices = transport_choices
        self.window_choices = window_choices or {}

    def requested_transport(self, shipment_id: str) -> str | None:
        return (self.transport_choices or {}).get(shipment_id)

    def requested_window(self, shipment_id: str) -> str | None:
        return self.window_choices.get(shipment_id)

    def choose_placement(self, options: Sequence[PlacementOption]):
        if not self.placement_option_id:
            return AWAIT_CALLER
        for option in options:
            if option.placement_option_id == self.placement_option_id:
                return option
        raise InboundPreconditionError(
            f"Placement option {self.placement_option_id} is not offered for this plan.",
            offered=[option.placement_option_id for option in options],
        )

    def choose_transport(self, shipment_id: str, options: Sequence[TransportationOption]):
        if self.transport_choices is None:
            return AWAIT_CALLER
        wanted = self.transport_choices.get(shipment_id)
        if not wanted:
            return None
        for option in options:
            if option.transportation_option_id == wanted and option.shipment_id == shipment_id:
                return option
        raise InboundPreconditionError(
            f"Transportation option {wanted} is not offered for shipment {shipment_id}.",
            offered=[o.transportation_option_id for o in options if o.shipment_id == shipment_id],
        )

    def choose_delivery_window(self, shipment_id: str, options: Sequence[DeliveryWindowOption]):
        wanted = self.window_choices.get(shipment_id)
        if not wanted:
            return earliest_delivery_window(options, shipment_id)
        for option in options:
            if option.delivery_window_option_id == wanted:
                return option
        raise InboundPreconditionError(
            f"Delivery window {wanted} is not offered for shipment {shipment_id}.",
            offered=[o.delivery_window_option_id for o in options],
        )
