from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable

import requests

from app.core.config import settings
from app.schemas.fba_inbound import (
    DeliveryWindowOption,
    OperationProblem,
    OperationStatus,
    PackingGroupItem,
    PackingOption,
    PlacementOption,
    ShipmentDetail,
    TransportationOption,
)
from app.services.fba_inbound_auth import FbaInboundAuthError, resolve_fba_access_token

logger = logging.getLogger(__name__)

API_VERSION = "2024-03-20"
INBOUND_PREFIX = f"/inbound/fba/{API_VERSION}"
LABELS_PREFIX = "/fba/inbound/v0"

MARKETPLACES = {
    "US": "ATVPDKIKX0DER",
    "CA": "A2EUQ1WTGCTBG2",
    "MX": "A1AM78C64UM0Y8",
    "UK": "A1F83G8C2ARO7P",
    "DE": "A1PA6795UKMFR9",
}


class FbaInboundApiError(Exception):
    """Transport-level failure: non-2xx answer or unreadable body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        problems: list[OperationProblem] | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.problems = problems or []
        self.payload = payload


def resolve_marketplace_id(hint: str | None) -> str:
    code = (hint or settings.FBA_DEFAULT_MARKETPLACE or "US").strip().upper()
    return MARKETPLACES.get(code, MARKETPLACES["US"])


def _problems_from_error_body(body: Any) -> list[OperationProblem]:
    if not isinstance(body, dict):
        return []
    raw_errors = body.get("errors") or []
    if not isinstance(raw_errors, list):
        return []
    return [OperationProblem.model_validate(row) for row in raw_errors if isinstance(row, dict)]


class FbaInboundClient:
    """
    Thin wrapper around the fulfillment network's inbound API.

    "generate*" / "confirm*" / create / set calls return an operation id that
    must be polled; "list*" / "get*" calls return data synchronously.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        token_resolver: Callable[[], str | None] = resolve_fba_access_token,
        http: Any = None,
    ) -> None:
        self._base_url = (base_url or settings.FBA_INBOUND_API_URL).rstrip("/")
        self._timeout_seconds = float(timeout_seconds or settings.FBA_INBOUND_TIMEOUT_SECONDS)
        self._token_resolver = token_resolver
        self._http = http or requests

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        try:
            token = self._token_resolver()
        except FbaInboundAuthError as exc:
            raise FbaInboundApiError(f"Access token unavailable: {exc}", status_code=401) from exc
        if token:
            headers["x-amz-access-token"] = token
        return headers

    def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._http.request(
                method,
                url,
                params=params or None,
                json=body,
                headers=self._headers(),
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise FbaInboundApiError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            raise FbaInboundApiError(
                f"{method} {path} returned invalid JSON.",
                status_code=response.status_code,
            ) from exc

        if response.status_code >= 400:
            problems = _problems_from_error_body(payload)
            message = "; ".join(f"{p.code}: {p.message}" for p in problems) or (
                f"HTTP {response.status_code}"
            )
            logger.warning(
                "fba_inbound_call_failed method=%s path=%s status=%s message=%s",
                method,
                path,
                response.status_code,
                message,
            )
            raise FbaInboundApiError(
                message,
                status_code=response.status_code,
                problems=problems,
                payload=payload,
            )
        if not isinstance(payload, dict):
            raise FbaInboundApiError(
                f"{method} {path} returned a non-object JSON payload.",
                status_code=response.status_code,
            )
        return payload

    def _list_all(
        self,
        path: str,
        key: str,
        params: dict[str, Any] | None = None,
        *,
        id_key: str | None = None,
    ) -> list[dict]:
        """
        Follow pagination tokens and drop rows already seen on an earlier page.

        Rows are matched on `id_key` when they carry it (the same option can come
        back with a refreshed expiration); otherwise on the whole row.
        """
        rows: list[dict] = []
        seen: set[str] = set()
        query = dict(params or {})
        while True:
            payload = self._call("GET", path, params=query)
            for row in payload.get(key) or []:
                row_id = row.get(id_key) if id_key and isinstance(row, dict) else None
                if row_id:
                    fingerprint = f"id:{row_id}"
                else:
                    fingerprint = repr(sorted(row.items())) if isinstance(row, dict) else repr(row)
                if fingerprint in seen:
                    continue
                seen.add(fingerprint)
                rows.append(row)
            next_token = (payload.get("pagination") or {}).get("nextToken")
            if not next_token:
                return rows
            query["paginationToken"] = next_token

    @staticmethod
    def _operation_id(payload: dict[str, Any]) -> str:
        operation_id = str(payload.get("operationId") or "").strip()
        if not operation_id:
            raise FbaInboundApiError("Inbound API response missing operationId.", payload=payload)
        return operation_id

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def get_inbound_operation_status(self, operation_id: str) -> OperationStatus:
        payload = self._call("GET", f"{INBOUND_PREFIX}/operations/{operation_id}")
        return OperationStatus.model_validate(payload)

    def create_inbound_plan(
        self,
        *,
        marketplace_id: str,
        source_address: dict[str, Any],
        items: list[dict[str, Any]],
        contact_information: dict[str, Any],
        name: str,
    ) -> tuple[str, str]:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans",
            body={
                "destinationMarketplaces": [marketplace_id],
                "sourceAddress": source_address,
                "items": items,
                "contactInformation": contact_information,
                "name": name,
            },
        )
        plan_id = str(payload.get("inboundPlanId") or "").strip()
        if not plan_id:
            raise FbaInboundApiError("createInboundPlan response missing inboundPlanId.", payload=payload)
        return self._operation_id(payload), plan_id

    def get_inbound_plan(self, inbound_plan_id: str) -> dict[str, Any]:
        return self._call("GET", f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}")

    def generate_packing_options(self, inbound_plan_id: str) -> str:
        payload = self._call("POST", f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/packingOptions")
        return self._operation_id(payload)

    def list_packing_options(self, inbound_plan_id: str) -> list[PackingOption]:
        rows = self._list_all(
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/packingOptions",
            "packingOptions",
            id_key="packingOptionId",
        )
        return [PackingOption.model_validate(row) for row in rows]

    def confirm_packing_option(self, inbound_plan_id: str, packing_option_id: str) -> str:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/packingOptions/{packing_option_id}/confirmation",
        )
        return self._operation_id(payload)

    def list_packing_group_items(self, inbound_plan_id: str, packing_group_id: str) -> list[PackingGroupItem]:
        rows = self._list_all(
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/packingGroups/{packing_group_id}/items",
            "items",
            id_key="msku",
        )
        return [PackingGroupItem.model_validate(row) for row in rows]

    def set_packing_information(self, inbound_plan_id: str, package_groupings: list[dict[str, Any]]) -> str:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/packingInformation",
            body={"packageGroupings": package_groupings},
        )
        return self._operation_id(payload)

    def generate_placement_options(self, inbound_plan_id: str) -> str:
        payload = self._call("POST", f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/placementOptions")
        return self._operation_id(payload)

    def list_placement_options(self, inbound_plan_id: str) -> list[PlacementOption]:
        rows = self._list_all(
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/placementOptions",
            "placementOptions",
            id_key="placementOptionId",
        )
        return [PlacementOption.model_validate(row) for row in rows]

    def confirm_placement_option(self, inbound_plan_id: str, placement_option_id: str) -> str:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/placementOptions/{placement_option_id}/confirmation",
        )
        return self._operation_id(payload)

    def get_shipment(self, inbound_plan_id: str, shipment_id: str) -> ShipmentDetail:
        payload = self._call("GET", f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/shipments/{shipment_id}")
        return ShipmentDetail.model_validate(payload)

    def generate_transportation_options(
        self,
        inbound_plan_id: str,
        *,
        shipment_id: str,
        placement_option_id: str,
        ready_to_ship: date | None = None,
    ) -> str:
        ready = ready_to_ship or date.today()
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/transportationOptions",
            body={
                "placementOptionId": placement_option_id,
                "shipmentTransportationConfigurations": [
                    {
                        "shipmentId": shipment_id,
                        "readyToShipWindow": {"start": f"{ready.isoformat()}T00:00:00Z"},
                    }
                ],
            },
        )
        return self._operation_id(payload)

    def list_transportation_options(
        self,
        inbound_plan_id: str,
        *,
        shipment_id: str | None = None,
        placement_option_id: str | None = None,
    ) -> list[TransportationOption]:
        params: dict[str, Any] = {}
        if shipment_id:
            params["shipmentId"] = shipment_id
        if placement_option_id:
            params["placementOptionId"] = placement_option_id
        rows = self._list_all(
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/transportationOptions",
            "transportationOptions",
            params,
            id_key="transportationOptionId",
        )
        return [TransportationOption.model_validate(row) for row in rows]

    def confirm_transportation_options(
        self,
        inbound_plan_id: str,
        selections: list[dict[str, str]],
    ) -> str:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/transportationOptions/confirmation",
            body={
                "transportationSelections": [
                    {
                        "shipmentId": row["shipment_id"],
                        "transportationOptionId": row["transportation_option_id"],
                    }
                    for row in selections
                ]
            },
        )
        return self._operation_id(payload)

    def generate_delivery_window_options(self, inbound_plan_id: str, shipment_id: str) -> str:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/shipments/{shipment_id}/deliveryWindowOptions",
        )
        return self._operation_id(payload)

    def list_delivery_window_options(self, inbound_plan_id: str, shipment_id: str) -> list[DeliveryWindowOption]:
        rows = self._list_all(
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/shipments/{shipment_id}/deliveryWindowOptions",
            "deliveryWindowOptions",
            id_key="deliveryWindowOptionId",
        )
        options = []
        for row in rows:
            option = DeliveryWindowOption.model_validate(row)
            if not option.shipment_id:
                option.shipment_id = shipment_id
            options.append(option)
        return options

    def confirm_delivery_window_options(
        self,
        inbound_plan_id: str,
        shipment_id: str,
        delivery_window_option_id: str,
    ) -> str:
        payload = self._call(
            "POST",
            f"{INBOUND_PREFIX}/inboundPlans/{inbound_plan_id}/shipments/{shipment_id}"
            f"/deliveryWindowOptions/{delivery_window_option_id}/confirmation",
        )
        return self._operation_id(payload)

    def get_labels(
        self,
        shipment_id: str,
        *,
        page_type: str = "PACKAGE_LABEL",
        label_type: str = "PLAIN_PAPER",
        number_of_packages: int | None = None,
        package_ids: list[str] | None = None,
    ) -> str:
        params: dict[str, Any] = {"PageType": page_type, "LabelType": label_type}
        if number_of_packages:
            params["NumberOfPackages"] = number_of_packages
        if package_ids:
            params["PackageLabelsToPrint"] = ",".join(package_ids)
        payload = self._call("GET", f"{LABELS_PREFIX}/shipments/{shipment_id}/labels", params=params)
        download_url = str((payload.get("payload") or {}).get("DownloadURL") or "").strip()
        if not download_url:
            raise FbaInboundApiError("getLabels response missing DownloadURL.", payload=payload)
        return download_url
